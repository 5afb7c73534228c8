"""Feature flag helpers for runtime configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Literal, TypedDict, cast


FeatureFlagKey = Literal[
    "nfc_payments_enabled",
    "anti_cloning_enabled",
    "event_time_window_enabled",
]


class FeatureFlagValues(TypedDict):
    nfc_payments_enabled: bool
    anti_cloning_enabled: bool
    event_time_window_enabled: bool


@dataclass(frozen=True)
class FeatureFlagDefinition:
    env_var: str
    default: bool


_FEATURE_FLAG_DEFINITIONS: Dict[FeatureFlagKey, FeatureFlagDefinition] = {
    "nfc_payments_enabled": FeatureFlagDefinition("FEATURE_NFC_PAYMENTS_ENABLED", True),
    "anti_cloning_enabled": FeatureFlagDefinition("FEATURE_ANTI_CLONING_ENABLED", True),
    "event_time_window_enabled": FeatureFlagDefinition("FEATURE_EVENT_TIME_WINDOW_ENABLED", True),
}


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    value = value.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"", "0", "false", "no", "off"}:
        return False
    return default


@lru_cache(maxsize=None)
def get_feature_flags() -> FeatureFlagValues:
    """Return the cached flag state read from the environment."""
    values: Dict[FeatureFlagKey, bool] = {
        key: _parse_bool(os.getenv(definition.env_var), definition.default)
        for key, definition in _FEATURE_FLAG_DEFINITIONS.items()
    }
    return cast(FeatureFlagValues, values)


def is_feature_enabled(flag: FeatureFlagKey) -> bool:
    return get_feature_flags()[flag]


def nfc_payments_enabled() -> bool:
    """Master switch for cashless band payments."""
    return is_feature_enabled("nfc_payments_enabled")


def anti_cloning_enabled() -> bool:
    return is_feature_enabled("anti_cloning_enabled")


def event_time_window_enabled() -> bool:
    """Whether scans outside the event's start/end window are rejected."""
    return is_feature_enabled("event_time_window_enabled")


def refresh_feature_flag_cache() -> None:
    get_feature_flags.cache_clear()
