"""Configuration management for the partner portal."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml


_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_flag(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSE_VALUES


def _parse_timeout(value: object) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    timeout = float(value)  # type: ignore[arg-type]
    if timeout <= 0:
        raise ValueError("Provider timeout must be a positive number of seconds")
    return timeout


@dataclass(frozen=True)
class PortalSettings:
    """Connection details for the hosted provider and cookie settings."""

    provider_url: str
    provider_key: str
    session_secret: Optional[str] = None
    secure_cookies: bool = False
    provider_timeout: Optional[float] = None

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "PortalSettings":
        """Create :class:`PortalSettings` from raw dictionary data."""
        required_fields = {"provider_url", "provider_key"}
        missing = {name for name in required_fields if not str(data.get(name) or "").strip()}
        if missing:
            raise ValueError(
                f"Missing required portal configuration fields: {', '.join(sorted(missing))}"
            )

        secret = data.get("session_secret")
        return PortalSettings(
            provider_url=str(data["provider_url"]).strip().rstrip("/"),
            provider_key=str(data["provider_key"]).strip(),
            session_secret=str(secret) if secret else None,
            secure_cookies=_parse_flag(data.get("secure_cookies"), False),
            provider_timeout=_parse_timeout(data.get("provider_timeout")),
        )


_ENV_OVERRIDES = {
    "PORTAL_PROVIDER_URL": "provider_url",
    "PORTAL_PROVIDER_KEY": "provider_key",
    "PORTAL_SESSION_SECRET": "session_secret",
    "PORTAL_SESSION_SECURE": "secure_cookies",
    "PORTAL_PROVIDER_TIMEOUT": "provider_timeout",
}


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the optional YAML configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "portal.yaml").resolve(strict=False)
    return candidate


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> PortalSettings:
    """Load settings from YAML (when present) with environment overrides."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = resolve_config_path(env.get("PORTAL_CONFIG"))

    raw: Dict[str, object] = {}
    if config_path.is_file():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Portal configuration file must contain a mapping")
        provider = loaded.get("provider") or {}
        if not isinstance(provider, dict):
            raise ValueError("The 'provider' section must be a mapping")
        session = loaded.get("session") or {}
        if not isinstance(session, dict):
            raise ValueError("The 'session' section must be a mapping")
        raw.update(
            provider_url=provider.get("url"),
            provider_key=provider.get("key"),
            provider_timeout=provider.get("timeout"),
            session_secret=session.get("secret"),
            secure_cookies=session.get("secure"),
        )

    for variable, key in _ENV_OVERRIDES.items():
        value = env.get(variable)
        if value is not None and value.strip():
            raw[key] = value

    return PortalSettings.from_dict(raw)


__all__ = ["PortalSettings", "load_settings", "resolve_config_path"]
