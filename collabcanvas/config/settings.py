from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

CONFIG_CANDIDATES: Sequence[Path] = (
    Path("collabcanvas.json"),
    Path("config/collabcanvas.json"),
)
ENV_PREFIX = "COLLABCANVAS_"
STORAGE_BACKENDS = ("memory", "json")


@dataclass(frozen=True)
class SyncSettings:
    lease_timeout: float = 5.0
    lock_reap_interval: float = 2.0
    presence_max_age: float = 120.0
    presence_reap_interval: float = 30.0
    cursor_interval: float = 1.0 / 30.0
    cursor_min_distance: float = 2.0
    paste_offset: float = 80.0
    undo_depth: int = 200
    data_dir: str = "data/collabcanvas"
    storage_backend: str = "memory"

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def merged(self, overrides: Mapping[str, Any]) -> "SyncSettings":
        """Return a copy with the recognised, well-typed keys of ``overrides`` applied."""
        values: Dict[str, Any] = {}
        for item in fields(self):
            if item.name not in overrides:
                continue
            coerced = _coerce(getattr(self, item.name), overrides[item.name])
            if coerced is not None:
                values[item.name] = coerced
        backend = values.get("storage_backend")
        if backend is not None and backend not in STORAGE_BACKENDS:
            values.pop("storage_backend")
        return replace(self, **values)


def _coerce(current: Any, value: Any) -> Any:
    if isinstance(value, bool):
        return None
    try:
        if isinstance(current, int) and not isinstance(current, bool):
            result = int(value)
            return result if result >= 0 else None
        if isinstance(current, float):
            result = float(value)
            return result if result >= 0 else None
    except (TypeError, ValueError):
        return None
    if isinstance(value, str) and value:
        return value
    return None


_CACHE: Optional[SyncSettings] = None
_CACHE_SIGNATURE: Optional[tuple] = None


def config_signature() -> tuple:
    """File mtimes plus every ``COLLABCANVAS_`` variable; changes when a reload is due."""
    values: list = []
    for path in CONFIG_CANDIDATES:
        try:
            values.append(path.stat().st_mtime)
        except FileNotFoundError:
            values.append(0.0)
    values.extend(
        sorted((key, value) for key, value in os.environ.items() if key.startswith(ENV_PREFIX))
    )
    return tuple(values)


def read_config(path: Path) -> Dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for item in fields(SyncSettings):
        raw = os.environ.get(ENV_PREFIX + item.name.upper())
        if raw is not None and raw.strip():
            overrides[item.name] = raw.strip()
    return overrides


def load_settings(*, refresh: bool = False) -> SyncSettings:
    """Defaults, then the ``sync`` section of each config file, then env vars."""
    global _CACHE, _CACHE_SIGNATURE
    signature = config_signature()
    if not refresh and _CACHE is not None and signature == _CACHE_SIGNATURE:
        return _CACHE

    settings = SyncSettings()
    for path in CONFIG_CANDIDATES:
        section = read_config(path).get("sync")
        if isinstance(section, dict):
            settings = settings.merged(section)
    settings = settings.merged(_env_overrides())

    _CACHE = settings
    _CACHE_SIGNATURE = signature
    return settings


def refresh_cache() -> SyncSettings:
    return load_settings(refresh=True)


__all__ = [
    "CONFIG_CANDIDATES",
    "ENV_PREFIX",
    "SyncSettings",
    "config_signature",
    "load_settings",
    "read_config",
    "refresh_cache",
]
