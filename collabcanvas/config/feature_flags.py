from __future__ import annotations

"""
Feature switches for the collaboration surface.

Flags resolve in three layers: ``FEATURE_DEFAULTS``, then the ``features``
section of each config file, then ``COLLABCANVAS_FEATURE_<NAME>`` environment
variables.  Every override that changes a flag is logged when the flags are
reloaded.
"""

import logging
import os
from typing import Dict, Optional

from .settings import CONFIG_CANDIDATES, ENV_PREFIX, config_signature, read_config

LOGGER = logging.getLogger(__name__)

FEATURE_DEFAULTS: Dict[str, bool] = {
    "enable_collaboration": True,
    "enable_presence": True,
    "enable_share_codes": True,
}

FEATURE_ENV_PREFIX = ENV_PREFIX + "FEATURE_"
_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})

_CACHE: Optional[Dict[str, bool]] = None
_CACHE_SIGNATURE: Optional[tuple] = None


def _parse_switch(raw: str) -> Optional[bool]:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    return None


def _env_features() -> Dict[str, bool]:
    overrides: Dict[str, bool] = {}
    for key, raw in os.environ.items():
        if not key.startswith(FEATURE_ENV_PREFIX):
            continue
        name = key[len(FEATURE_ENV_PREFIX):].lower()
        parsed = _parse_switch(raw)
        if parsed is None:
            LOGGER.warning("Ignoring %s=%r: expected a boolean switch", key, raw)
            continue
        overrides[name] = parsed
    return overrides


def _apply(flags: Dict[str, bool], overrides: Dict[str, bool], source: str) -> None:
    for name, value in overrides.items():
        if flags.get(name) != value:
            LOGGER.info("Feature %s set to %s by %s", name, value, source)
        flags[name] = value


def load_feature_flags(*, refresh: bool = False) -> Dict[str, bool]:
    global _CACHE, _CACHE_SIGNATURE
    signature = config_signature()
    if not refresh and _CACHE is not None and signature == _CACHE_SIGNATURE:
        return dict(_CACHE)

    flags: Dict[str, bool] = dict(FEATURE_DEFAULTS)
    for path in CONFIG_CANDIDATES:
        section = read_config(path).get("features")
        if not isinstance(section, dict):
            continue
        _apply(
            flags,
            {key: value for key, value in section.items() if isinstance(value, bool)},
            str(path),
        )
    _apply(flags, _env_features(), "environment")

    _CACHE = flags
    _CACHE_SIGNATURE = signature
    return dict(flags)


def is_enabled(name: str, *, default: bool | None = None, refresh: bool = False) -> bool:
    flags = load_feature_flags(refresh=refresh)
    if name in flags:
        return flags[name]
    return bool(default) if default is not None else False


def refresh_cache() -> Dict[str, bool]:
    return load_feature_flags(refresh=True)


__all__ = [
    "FEATURE_DEFAULTS",
    "FEATURE_ENV_PREFIX",
    "is_enabled",
    "load_feature_flags",
    "refresh_cache",
]
