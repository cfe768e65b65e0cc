from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

DEFAULT_SETTINGS_FILE = Path("~/.marketchat/settings.json")

_ENV_KEYS = {
    "url": "SUPABASE_URL",
    "anon_key": "SUPABASE_ANON_KEY",
    "access_token": "SUPABASE_ACCESS_TOKEN",
    "user_id": "MARKETCHAT_USER_ID",
    "username": "MARKETCHAT_USERNAME",
}


@dataclass
class MessagingConfig:
    initial_page_size: int = 50
    page_size: int = 20
    typing_timeout_s: float = 5.0
    heartbeat_interval_s: float = 25.0
    join_timeout_s: float = 10.0
    request_timeout_s: float = 10.0


@dataclass
class SupabaseSettings:
    url: str = ""
    anon_key: str = ""
    access_token: str | None = None
    user_id: str | None = None
    username: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SupabaseSettings":
        env = os.environ if environ is None else environ
        values = {name: env[key] for name, key in _ENV_KEYS.items() if env.get(key)}
        return cls(**values)

    @classmethod
    def from_file(cls, path: Path | str = DEFAULT_SETTINGS_FILE) -> "SupabaseSettings":
        return cls(**_known_fields(load_settings(path)))

    def merged(self, **overrides: Any) -> "SupabaseSettings":
        """Return a copy with every non-empty override applied."""

        changes = {key: value for key, value in _known_fields(overrides).items() if value not in (None, "")}
        return replace(self, **changes)

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def realtime_url(self) -> str:
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/realtime/v1/websocket"

    def auth_headers(self) -> Dict[str, str]:
        headers = {"apikey": self.anon_key}
        token = self.access_token or self.anon_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers


def load_settings(path: Path | str = DEFAULT_SETTINGS_FILE) -> Dict[str, Any]:
    """Load a JSON settings file, treating a missing or malformed file as empty."""

    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def _known_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(SupabaseSettings)}
    return {key: value for key, value in values.items() if key in names}
