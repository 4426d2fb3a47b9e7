"""Runtime configuration loader.

Defaults live here as module constants. A machine can override them with a
JSON file (``~/.reviw/config.json`` or the path in ``REVIW_CONFIG``) and with
``REVIW_*`` environment variables; the environment wins over the file. The
CLI applies its own flags on top by rebuilding a validated ``ReviewConfig``.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REVIW_HOME = Path.home() / ".reviw"
DEFAULT_LOCK_DIR = REVIW_HOME / "locks"
DEFAULT_CONFIG_FILE = REVIW_HOME / "config.json"

DEFAULT_PORT = 3000
DEFAULT_HOST = "127.0.0.1"
DEFAULT_SCENE_THRESHOLD = 0.05
DEFAULT_STABLE_THRESHOLD = 0.97
MAX_PORT_ATTEMPTS = 100
MAX_BODY_BYTES = 2 * 1024 * 1024

# env var -> config field
ENV_OVERRIDES = {
    "REVIW_LOCK_DIR": "lock_dir",
    "REVIW_PORT": "base_port",
    "REVIW_HOST": "host",
    "REVIW_SCENE_THRESHOLD": "scene_threshold",
    "REVIW_STABLE_THRESHOLD": "stable_threshold",
    "REVIW_FFMPEG": "ffmpeg_path",
}

_CONFIG_CACHE: Optional["ReviewConfig"] = None


class ReviewConfig(BaseModel):
    """Settings shared by the supervisor, servers and the timeline extractor."""

    lock_dir: Path = Field(default=DEFAULT_LOCK_DIR, description="Directory holding per-file lock files")
    base_port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    host: str = DEFAULT_HOST
    scene_threshold: float = Field(
        default=DEFAULT_SCENE_THRESHOLD, gt=0.0, lt=1.0,
        description="ffmpeg scene score a frame must exceed to be extracted",
    )
    stable_threshold: float = Field(
        default=DEFAULT_STABLE_THRESHOLD, gt=0.0, le=1.0,
        description="Similarity at or above which a frame joins the open run",
    )
    ffmpeg_path: str = "ffmpeg"
    thumbnail_width: int = Field(default=320, ge=16)
    max_port_attempts: int = Field(default=MAX_PORT_ATTEMPTS, ge=1)
    max_body_bytes: int = Field(default=MAX_BODY_BYTES, ge=1024)


def _read_config_file(path: Path) -> dict[str, Any]:
    """Load the JSON override file, or return {} if missing or unreadable."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("ignoring unreadable config file %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("ignoring config file %s: top level is not an object", path)
        return {}
    return data


def _env_values() -> dict[str, str]:
    values = {}
    for env_name, field in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name, "")
        if raw:
            values[field] = raw
    return values


def _drop_invalid(values: dict[str, Any], fallback: dict[str, Any], source: str) -> dict[str, Any]:
    """Replace fields that fail validation with their ``fallback`` value, or drop them."""
    try:
        ReviewConfig(**values)
    except ValidationError as exc:
        bad = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
        logger.warning("ignoring invalid %s values for %s", source, ", ".join(sorted(bad)))
        values = {k: v for k, v in values.items() if k not in bad}
        values.update({k: fallback[k] for k in bad if k in fallback})
    return values


def load_config(config_file: Optional[Path] = None) -> ReviewConfig:
    """Build a fresh ReviewConfig from defaults, the JSON file and the environment.

    An invalid env value falls back to the file's value for that field, and an
    invalid file value to the default. Other overrides still apply.
    """
    path = config_file or Path(os.environ.get("REVIW_CONFIG", "") or DEFAULT_CONFIG_FILE)
    values = _drop_invalid(_read_config_file(path), {}, "config file")
    values = _drop_invalid({**values, **_env_values()}, values, "environment")
    return ReviewConfig(**values)


def get_config() -> ReviewConfig:
    """Return the process-wide config, loading it on first use."""
    global _CONFIG_CACHE
    if _CONFIG_CACHE is None:
        _CONFIG_CACHE = load_config()
    return _CONFIG_CACHE


def reset_config_cache() -> None:
    """Forget the cached config (tests)."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = None
