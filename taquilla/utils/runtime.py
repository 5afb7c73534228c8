"""Runtime environment checks used to gate development-only behaviour."""

import os
import sys
from typing import Optional, Set
from urllib.parse import urlparse

_LOOPBACK_HOSTS: Set[str] = {"localhost", "127.0.0.1", "::1"}


def _hostname_of(value: str) -> Optional[str]:
    value = (value or "").strip()
    if not value:
        return None
    if "://" not in value:
        value = f"http://{value}"
    return urlparse(value).hostname


def _dev_hosts() -> Set[str]:
    hosts = set(_LOOPBACK_HOSTS)
    for host in os.getenv("DEV_MODE_ALLOWED_HOSTS", "").split(","):
        host = host.strip().lower()
        if host:
            hosts.add(host)
    return hosts


def running_under_pytest() -> bool:
    """Return True once pytest has been imported or a test is executing."""
    if os.getenv("PYTEST_RUNNING") == "1":
        return True
    return "PYTEST_CURRENT_TEST" in os.environ or "pytest" in sys.modules


def dev_mode_requested() -> bool:
    return os.getenv("DEV_MODE", "false").lower() == "true"


def dev_mode_active() -> bool:
    """Return True when DEV_MODE is on and the deployment is local.

    A box office deployment that accidentally ships ``DEV_MODE=true`` would let
    anyone act as the development user, so a non-local ``APP_BASE_URL`` is a
    hard configuration error rather than a silent downgrade.
    """
    if not dev_mode_requested():
        return False

    hostname = _hostname_of(os.getenv("APP_BASE_URL", ""))
    allowed = _dev_hosts()
    if hostname:
        if hostname.lower() not in allowed:
            raise RuntimeError(
                f"DEV_MODE=true is not permitted for APP_BASE_URL host '{hostname}'. "
                f"Allowed hosts: {sorted(allowed)}"
            )
        return True

    if os.getenv("ALLOW_DEV_MODE", "false").lower() != "true" and not running_under_pytest():
        raise RuntimeError(
            "DEV_MODE=true requires APP_BASE_URL to point at localhost "
            "or ALLOW_DEV_MODE=true."
        )
    return True
