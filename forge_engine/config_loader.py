"""
Config loader — builds an EngineConfig at the process edge.

The orchestration core only ever sees an injected EngineConfig. This module
is where the outside world comes in:
- ``forge_engine.toml`` read with stdlib tomllib
- a handful of ``FORGE_*`` environment variables via pydantic-settings
  (config file location, session secret, sessions directory)
"""
import logging
import tomllib
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings

from forge_engine.config import EngineConfig

logger = logging.getLogger("forge.engine.config_loader")

CONFIG_FILENAME = "forge_engine.toml"


class EngineSettings(BaseSettings):
    """Environment-provided values that never belong in a config file."""

    model_config = {"env_prefix": "FORGE_", "extra": "ignore"}

    config_path: Path | None = None
    session_secret: str | None = Field(default=None, repr=False)
    sessions_dir: Path | None = None
    log_level: str = "INFO"


def load_toml(path: str | Path) -> dict[str, Any]:
    """
    Load a TOML file using stdlib tomllib.

    Raises:
        FileNotFoundError: If path doesn't exist
        tomllib.TOMLDecodeError: If TOML is malformed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"TOML file not found: {path}")

    with open(path, "rb") as f:
        data = tomllib.load(f)

    logger.debug("Loaded TOML config: %s (%d keys)", path.name, len(data))
    return data


def find_config_file(explicit: str | Path | None = None) -> Path | None:
    """
    Locate the engine config file.

    Looks in:
    1. Explicit path (if provided)
    2. ./forge_engine.toml
    3. ./config/forge_engine.toml
    """
    if explicit:
        return Path(explicit)

    for candidate in (Path(CONFIG_FILENAME), Path("config") / CONFIG_FILENAME):
        if candidate.exists():
            logger.info("Found engine config: %s", candidate)
            return candidate

    logger.debug("No %s found — using defaults", CONFIG_FILENAME)
    return None


def load_engine_config(
    config_path: str | Path | None = None,
    settings: EngineSettings | None = None,
) -> EngineConfig:
    """
    Build an EngineConfig from the config file plus environment settings.

    The file may hold an ``[engine]`` table or top-level keys. Environment
    values win over the file for the secret and sessions directory.
    """
    settings = settings or EngineSettings()
    path = find_config_file(config_path or settings.config_path)

    data: dict[str, Any] = {}
    if path is not None:
        raw = load_toml(path)
        data = dict(raw.get("engine", raw))

    sessions = dict(data.get("sessions", {}))
    if settings.session_secret:
        sessions["secret"] = settings.session_secret
    if settings.sessions_dir:
        sessions["sessions_dir"] = settings.sessions_dir
    if sessions:
        data["sessions"] = sessions

    return EngineConfig.model_validate(data)
