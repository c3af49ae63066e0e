from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
SETTINGS_FILE = DATA_DIR / "engine_settings.json"
DATABASE_URL = os.environ.get(
    "STAFFING_DATABASE_URL",
    f"sqlite:///{(DATA_DIR / 'staffing.db').as_posix()}",
)

DEFAULT_HORIZON_DAYS = 14
COLD_START_HORIZON_DAYS = 30
INSERT_BATCH_SIZE = 100
GLOBAL_ROLES = {"super_admin"}


def baseline_settings() -> Dict[str, Any]:
    return {
        "default_horizon_days": DEFAULT_HORIZON_DAYS,
        "cold_start_horizon_days": COLD_START_HORIZON_DAYS,
        "insert_batch_size": INSERT_BATCH_SIZE,
        "global_roles": sorted(GLOBAL_ROLES),
    }


def _coerce_positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def load_settings() -> Dict[str, Any]:
    """Return engine settings with the JSON overrides merged over the baseline."""
    baseline = baseline_settings()
    if not SETTINGS_FILE.exists():
        return baseline
    try:
        data = json.loads(SETTINGS_FILE.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError
    except (OSError, ValueError):
        return baseline

    settings = dict(baseline)
    for key in ("default_horizon_days", "cold_start_horizon_days", "insert_batch_size"):
        if key in data:
            settings[key] = _coerce_positive_int(data[key], baseline[key])
    roles = data.get("global_roles")
    if isinstance(roles, list):
        cleaned = sorted({str(role).strip().lower() for role in roles if str(role).strip()})
        if cleaned:
            settings["global_roles"] = cleaned
    return settings


def save_settings(data: Dict[str, Any]) -> None:
    SETTINGS_FILE.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")


def reset_settings_to_defaults() -> None:
    save_settings(baseline_settings())


def default_horizon_days() -> int:
    return int(load_settings()["default_horizon_days"])


def cold_start_horizon_days() -> int:
    return int(load_settings()["cold_start_horizon_days"])


def insert_batch_size() -> int:
    return int(load_settings()["insert_batch_size"])


def global_roles() -> set[str]:
    return set(load_settings()["global_roles"])
