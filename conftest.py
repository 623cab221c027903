import asyncio
from pathlib import Path

import pytest

from sharad.config import Config
from sharad.errors import TransportError
from sharad.models import GameState
from sharad.orchestrator import Session
from sharad.schema import SchemaRegistry
from sharad.state import CreateCharacter, CreateItem, StateStore
from sharad.storage import Storage


class StubTransport:
    """Replays scripted responses in order.

    Each entry is a string (returned), an exception (raised) or "hang"
    (waits until cancelled). Received contexts are kept for assertions.
    """

    def __init__(self, script=()):
        self.script = list(script)
        self.contexts = []

    async def send(self, context):
        self.contexts.append(context)
        if not self.script:
            return ""
        step = self.script.pop(0)
        if step == "hang":
            await asyncio.Event().wait()
        if isinstance(step, BaseException):
            raise step
        return step

    @property
    def call_count(self):
        return len(self.contexts)


class ScriptedIO:
    """PlayerIO that feeds scripted lines and records everything shown."""

    def __init__(self, lines=()):
        self.lines = list(lines)
        self.prompts = []
        self.narratives = []
        self.notices = []

    async def read_input(self, prompt):
        self.prompts.append(prompt)
        return self.lines.pop(0) if self.lines else "exit"

    async def show_narrative(self, text):
        self.narratives.append(text)

    async def show_notice(self, text):
        self.notices.append(text)


def timeout_error():
    return TransportError("Model backend timed out after 1s", "timeout")


@pytest.fixture
def registry():
    return SchemaRegistry()


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def rin_store():
    """Rin exists and holds a sword."""
    store = StateStore()
    store.apply([
        CreateCharacter(id="rin", name="Rin", attributes={"hp": 10}),
        CreateItem(id="sword", item_type="sword", owner="rin"),
    ])
    return store


@pytest.fixture
def config():
    return Config(max_retries=2, backoff_base=0.0, request_timeout=5)


@pytest.fixture
def storage(tmp_path: Path):
    return Storage(tmp_path / "data")


@pytest.fixture
def make_session(config):
    """Build a Session around a StubTransport. Sleeps are recorded, not awaited."""

    def factory(script=(), *, store=None, io=None, storage=None, session_id="test", **overrides):
        transport = StubTransport(script)
        delays = []

        async def sleep(delay):
            delays.append(delay)

        session = Session(
            session_id=session_id,
            transport=transport,
            config=config.model_copy(update=overrides),
            store=store or StateStore(GameState()),
            io=io,
            storage=storage,
            sleep=sleep,
        )
        session.transport = transport
        session.delays = delays
        return session

    return factory
