"""
Process-wide configuration for Aparto.

Assembled once at startup from the environment (app.py loads .env first)
and passed to collaborators. Nothing downstream reads os.environ for keys
or VAPID details on a per-call basis.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

DEFAULT_OVERPASS_MIRRORS = (
    "https://overpass-api.de/api/interpreter",
    "https://overpass.private.coffee/api/interpreter",
)

# Nishimachi International School, 2-14-7 Motoazabu, Minato City, Tokyo.
DEFAULT_COMMUTE_DESTINATION = (35.6528, 139.7286)


@dataclass(frozen=True)
class VapidConfig:
    public_key: str = ""
    private_key: str = ""
    subject: str = "mailto:admin@aparto.app"

    @property
    def enabled(self) -> bool:
        return bool(self.public_key and self.private_key)


@dataclass(frozen=True)
class AppConfig:
    db_path: str = "aparto.db"
    vapid: VapidConfig = field(default_factory=VapidConfig)
    google_maps_api_key: str = ""
    overpass_mirrors: Tuple[str, ...] = DEFAULT_OVERPASS_MIRRORS
    commute_destination: Tuple[float, float] = DEFAULT_COMMUTE_DESTINATION
    poll_secret: str = ""
    poll_interval_seconds: int = 0
    http_timeout: int = 20  # seconds, every outbound call
    rate_limit_default: str = "60/minute"

    def missing_keys(self) -> list:
        """Names of optional-but-expected settings that are unset."""
        missing = []
        if not self.google_maps_api_key:
            missing.append("GOOGLE_MAPS_API_KEY")
        if not self.vapid.public_key:
            missing.append("VAPID_PUBLIC_KEY")
        if not self.vapid.private_key:
            missing.append("VAPID_PRIVATE_KEY")
        return missing


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _float_env(env, name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _int_env(env, name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_config(env=None) -> AppConfig:
    """Build an AppConfig from a mapping (defaults to os.environ)."""
    env = os.environ if env is None else env
    return AppConfig(
        db_path=env.get("APARTO_DB_PATH", "aparto.db"),
        vapid=VapidConfig(
            public_key=env.get("VAPID_PUBLIC_KEY", ""),
            private_key=env.get("VAPID_PRIVATE_KEY", ""),
            subject=env.get("VAPID_EMAIL") or "mailto:admin@aparto.app",
        ),
        google_maps_api_key=env.get("GOOGLE_MAPS_API_KEY", ""),
        overpass_mirrors=_split_csv(env.get("OVERPASS_MIRRORS")) or DEFAULT_OVERPASS_MIRRORS,
        commute_destination=(
            _float_env(env, "COMMUTE_DEST_LAT", DEFAULT_COMMUTE_DESTINATION[0]),
            _float_env(env, "COMMUTE_DEST_LNG", DEFAULT_COMMUTE_DESTINATION[1]),
        ),
        poll_secret=env.get("POLL_SECRET", ""),
        poll_interval_seconds=_int_env(env, "POLL_INTERVAL_SECONDS", 0),
        http_timeout=_int_env(env, "HTTP_TIMEOUT", 20),
        rate_limit_default=env.get("RATE_LIMIT_DEFAULT", "60/minute"),
    )
