from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path


@dataclass(frozen=True)
class ExtractionSettings:
    gemini_api_key: Optional[str] = None
    vision_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    gemini_daily_limit: int = 50
    gemini_monthly_limit: int = 1500
    vision_daily_limit: int = 100
    vision_monthly_limit: int = 1000
    timeout_seconds: float = 30.0


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "InventoryReconciliation") -> AppPaths:
    if sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    db = base / "inventory.db"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)

    return AppPaths(base_dir=base, db_path=db, logs_dir=logs)


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    return int(raw) if raw else default


def load_extraction_settings(env: Mapping[str, str] | None = None) -> ExtractionSettings:
    env = os.environ if env is None else env
    timeout_raw = (env.get("IRE_EXTRACTION_TIMEOUT") or "").strip()
    return ExtractionSettings(
        gemini_api_key=(env.get("GEMINI_API_KEY") or "").strip() or None,
        vision_api_key=(env.get("GOOGLE_CLOUD_API_KEY") or "").strip() or None,
        gemini_model=(env.get("IRE_GEMINI_MODEL") or "").strip() or "gemini-2.0-flash",
        gemini_daily_limit=_env_int(env, "IRE_GEMINI_DAILY_LIMIT", 50),
        gemini_monthly_limit=_env_int(env, "IRE_GEMINI_MONTHLY_LIMIT", 1500),
        vision_daily_limit=_env_int(env, "IRE_VISION_DAILY_LIMIT", 100),
        vision_monthly_limit=_env_int(env, "IRE_VISION_MONTHLY_LIMIT", 1000),
        timeout_seconds=float(timeout_raw) if timeout_raw else 30.0,
    )
