from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/msgstore/config.json").expanduser()
DEFAULT_DB_PATH = "~/.msgstore.sqlite"

CONFIG_ENV_OVERRIDES = {
    "db_path": "MSGSTORE_DB",
    "default_max_buffer_period_s": "MSGSTORE_MAX_BUFFER_PERIOD_S",
    "backend_timeout_ms": "MSGSTORE_BACKEND_TIMEOUT_MS",
    "query_page_size": "MSGSTORE_QUERY_PAGE_SIZE",
    "hide_inactive": "MSGSTORE_HIDE_INACTIVE",
}

_INT_KEYS = {"default_max_buffer_period_s", "backend_timeout_ms", "query_page_size"}
_BOOL_KEYS = {"hide_inactive"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("MSGSTORE_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class MsgstoreConfig:
    db_path: str = DEFAULT_DB_PATH
    default_max_buffer_period_s: int = 60
    # Busy timeout handed to the backend; expiry surfaces as StorageUnavailable.
    backend_timeout_ms: int = 5000
    query_page_size: int = 200
    # Legacy stores tagged retired messages "inactive" instead of deleting them.
    hide_inactive: bool = False


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_positive_int(value: object, default: int, *, key: str) -> int:
    parsed = _parse_int(value, default, key=key)
    if parsed <= 0:
        warnings.warn(f"Invalid positive int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    return parsed


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> MsgstoreConfig:
    cfg = MsgstoreConfig()
    try:
        data = read_config_file(path)
    except ValueError as exc:
        warnings.warn(
            f"Invalid config file {get_config_path(path)}: {exc}", RuntimeWarning, stacklevel=2
        )
        data = {}
    cfg = _apply_dict(cfg, data)
    # Environment values go through the same parsing as file values.
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: MsgstoreConfig, data: dict[str, Any]) -> MsgstoreConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_positive_int(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        setattr(cfg, key, str(value))
    return cfg

