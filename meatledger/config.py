from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import streamlit as st

CONFIG_FILE_NAME = "settings.json"
ENV_DATA_DIR = "MEATLEDGER_DATA_DIR"
SESSION_KEY = "meatledger_data_dir"

# Keys in settings.json that may override the defaults below.
_TUNABLES = {
    "currency": str,
    "vat_rate_percent": float,
    "unaccounted_tolerance_kg": float,
    "lock_timeout_s": float,
    "log_level": str,
}


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    currency: str = "USD"
    vat_rate_percent: float = 15.0
    unaccounted_tolerance_kg: float = 0.5
    lock_timeout_s: float = 5.0
    log_level: str = "INFO"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"


def _default_data_dir() -> Path:
    # Not a hard-coded absolute path: uses the user's home directory.
    return Path.home() / ".meatledger"


def _load_persisted_settings(data_dir: Path) -> dict:
    cfg = data_dir / CONFIG_FILE_NAME
    if cfg.exists():
        try:
            return json.loads(cfg.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logging.getLogger(__name__).warning("Ignoring unreadable settings file %s", cfg)
            return {}
    return {}


def _tunables_from(payload: dict) -> dict:
    out = {}
    for key, cast in _TUNABLES.items():
        if key in payload and payload[key] is not None:
            try:
                out[key] = cast(payload[key])
            except (TypeError, ValueError):
                raise ValueError(f"Invalid value for '{key}' in {CONFIG_FILE_NAME}: {payload[key]!r}")
    return out


def persist_data_dir(data_dir_str: str) -> None:
    data_dir = Path(data_dir_str).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    cfg = data_dir / CONFIG_FILE_NAME
    payload = _load_persisted_settings(data_dir)
    payload["data_dir"] = str(data_dir)
    cfg.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    # Update session for immediate effect
    st.session_state[SESSION_KEY] = str(data_dir)


def load_settings(data_dir: Optional[str | Path] = None) -> Settings:
    # Priority order:
    # 1) Explicit argument (session state when called from get_settings)
    # 2) Environment variable
    # 3) Persisted settings in default folder
    # 4) Default folder
    if data_dir is not None:
        resolved = Path(data_dir).expanduser().resolve()
    elif os.getenv(ENV_DATA_DIR):
        resolved = Path(os.getenv(ENV_DATA_DIR, "")).expanduser().resolve()
    else:
        default_dir = _default_data_dir()
        persisted = _load_persisted_settings(default_dir)
        resolved = Path(persisted.get("data_dir", default_dir)).expanduser().resolve()

    resolved.mkdir(parents=True, exist_ok=True)
    overrides = _tunables_from(_load_persisted_settings(resolved))
    return Settings(data_dir=resolved, db_path=resolved / "app.db", **overrides)


@st.cache_resource
def get_settings() -> Settings:
    return load_settings(st.session_state.get(SESSION_KEY))


def configure_logging(settings: Settings) -> None:
    root = logging.getLogger()
    if any(getattr(h, "_meatledger", False) for h in root.handlers):
        return

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    file_handler = logging.FileHandler(settings.log_dir / "meatledger.log", encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler._meatledger = True

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    console._meatledger = True

    root.addHandler(file_handler)
    root.addHandler(console)
    root.setLevel(getattr(logging, str(settings.log_level).upper(), logging.INFO))
