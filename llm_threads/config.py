"""Typed runtime configuration for llm_threads."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MODEL_ENV = "LLM_THREADS_MODEL"
APPEND_RETRIES_ENV = "LLM_THREADS_APPEND_RETRIES"
SUBMIT_RETRIES_ENV = "LLM_THREADS_SUBMIT_RETRIES"
MAX_RETRIES_ENV = "LLM_THREADS_MAX_RETRIES"
PARALLEL_ACTIONS_ENV = "LLM_THREADS_PARALLEL_ACTIONS"
BASE_DELAY_ENV = "LLM_THREADS_BASE_DELAY"
MAX_DELAY_ENV = "LLM_THREADS_MAX_DELAY"
TIMEOUT_ENV = "LLM_THREADS_TIMEOUT"
STREAM_QUEUE_SIZE_ENV = "LLM_THREADS_STREAM_QUEUE_SIZE"
KEYS_FILE_ENV = "LLM_THREADS_KEYS_FILE"

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_KEYS_FILE = Path.home() / ".secrets" / "api_keys.env"


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected integer. Defaulting to %d.", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Invalid %s=%r; expected >= %d. Defaulting to %d.", name, raw, minimum, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r; expected number. Defaulting to %s.", name, raw, default)
        return default
    if value < 0:
        logger.warning("Invalid %s=%r; expected >= 0. Defaulting to %s.", name, raw, default)
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    if lowered == "":
        return default
    logger.warning(
        "Invalid %s=%r; expected on/off boolean. Defaulting to %s.",
        name,
        raw,
        "on" if default else "off",
    )
    return default


@dataclass(frozen=True)
class ClientConfig:
    """Runtime policy/config resolved once and passed explicitly through calls."""

    default_model: str = DEFAULT_MODEL
    append_retries: int = 2
    submit_retries: int = 2
    max_retries: int = 2
    parallel_actions: bool = True
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 60.0
    stream_queue_size: int = 64

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Build typed config from environment variables."""
        return cls(
            default_model=os.environ.get(MODEL_ENV, "").strip() or DEFAULT_MODEL,
            append_retries=_env_int(APPEND_RETRIES_ENV, 2),
            submit_retries=_env_int(SUBMIT_RETRIES_ENV, 2),
            max_retries=_env_int(MAX_RETRIES_ENV, 2),
            parallel_actions=_env_bool(PARALLEL_ACTIONS_ENV, True),
            base_delay=_env_float(BASE_DELAY_ENV, 1.0),
            max_delay=_env_float(MAX_DELAY_ENV, 30.0),
            timeout=_env_float(TIMEOUT_ENV, 60.0),
            stream_queue_size=_env_int(STREAM_QUEUE_SIZE_ENV, 64, minimum=1),
        )


def load_api_keys(keys_file: str | Path | None = None) -> list[str]:
    """Load API keys from an env file into os.environ.

    Reads from ``keys_file``, the LLM_THREADS_KEYS_FILE env var, or
    ~/.secrets/api_keys.env. Skips comments, empty lines, and keys already set
    in the environment. Returns the names of the keys loaded.
    """
    path = Path(keys_file or os.environ.get(KEYS_FILE_ENV, str(DEFAULT_KEYS_FILE)))
    if not path.is_file():
        return []
    loaded: list[str] = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("\"'")
        if key and key not in os.environ:
            os.environ[key] = value
            loaded.append(key)
    if loaded:
        logger.debug("llm_threads: loaded %d API keys from %s", len(loaded), path)
    return loaded
