"""Configuration: provider selection, retry policy, context window, language.

Sources, later wins:
  1. defaults below
  2. a JSON file (``--config``), which may only contain recognised keys
  3. SHARAD_<FIELD> environment variables (e.g. SHARAD_MAX_RETRIES=5);
     the launcher loads a .env file into the environment first
"""

import json
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sharad.errors import ConfigError
from sharad.llm import ProviderFormat

ENV_PREFIX = "SHARAD_"


class Config(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider_url: str = "http://localhost:5001"
    provider_format: ProviderFormat = "koboldcpp"
    model: str = ""
    api_key: str = ""
    request_timeout: float = Field(120.0, gt=0)
    max_retries: int = Field(3, ge=0)
    backoff_base: float = Field(1.0, ge=0)  # seconds; doubles per retry
    backoff_max: float = Field(30.0, ge=0)
    context_window: int = Field(10, ge=0)  # prior turns sent with each request
    language: str = "English"
    debug: bool = False
    data_dir: Path = Path("data")

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)


def load_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> Config:
    """Read config, returning defaults merged with file and environment values."""
    values: dict = {}
    if path is not None:
        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")
        try:
            stored = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e
        if not isinstance(stored, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        values.update(stored)

    env = os.environ if env is None else env
    for name in Config.model_fields:
        key = ENV_PREFIX + name.upper()
        if key in env:
            values[name] = env[key]

    try:
        return Config.model_validate(values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def save_config(config: Config, path: Path) -> None:
    """Persist config (api_key included) as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2))
