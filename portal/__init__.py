"""Partner referral portal backed by a hosted auth and table provider."""

from __future__ import annotations

from typing import Any

from .config import PortalSettings, load_settings


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the portal web application."""

    from .web import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "PortalSettings",
    "load_settings",
    "create_app",
]
