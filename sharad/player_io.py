"""Player I/O boundary.

The core only needs something that can read a line of player input and show
text; TerminalIO is the console implementation used by the launcher.
"""

from __future__ import annotations

import asyncio
import shutil
import textwrap
import threading
from typing import Protocol


class PlayerIO(Protocol):
    async def read_input(self, prompt: str) -> str: ...

    async def show_narrative(self, text: str) -> None: ...

    async def show_notice(self, text: str) -> None: ...


class TerminalIO:
    """Console I/O. Each read runs input() on a daemon thread so a pending
    read never blocks the event loop or interpreter shutdown."""

    def __init__(self, width: int | None = None) -> None:
        self._width = width or min(shutil.get_terminal_size().columns, 100)

    async def read_input(self, prompt: str) -> str:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def deliver(line: str) -> None:
            if not future.done():
                future.set_result(line)

        def reader() -> None:
            try:
                line = input(prompt)
            except EOFError:
                line = "exit"
            loop.call_soon_threadsafe(deliver, line)

        threading.Thread(target=reader, daemon=True).start()
        return await future

    async def show_narrative(self, text: str) -> None:
        print("-" * self._width)
        for paragraph in text.split("\n"):
            print(textwrap.fill(paragraph, self._width) if paragraph.strip() else "")
        print("-" * self._width)

    async def show_notice(self, text: str) -> None:
        print(textwrap.fill(f"* {text}", self._width))
