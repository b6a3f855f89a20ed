"""
CaseRouter Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "caserouter.db"
_user_default_db = Path.home() / ".caserouter" / "caserouter.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("CASEROUTER_DB"):
    DB_PATH = os.getenv("CASEROUTER_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = os.getenv("CASEROUTER_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("CASEROUTER_PORT", config_data.get("PORT", "39780")))

# Sliding inactivity window (hours). expires_at = last_activity_at + QUERY_TTL_HOURS.
QUERY_TTL_HOURS = int(os.getenv("CASEROUTER_QUERY_TTL_HOURS", config_data.get("QUERY_TTL_HOURS", "24")))

# Expiry sweep cadence (seconds)
SWEEP_INTERVAL = int(os.getenv("CASEROUTER_SWEEP_INTERVAL", config_data.get("SWEEP_INTERVAL", "60")))
SWEEP_ENABLED = os.getenv("CASEROUTER_SWEEP_ENABLED", "true").lower() in {"1", "true", "yes"}

# Auto-reject transfer requests left unanswered for this many minutes (0 = disabled)
TRANSFER_TIMEOUT_MINUTES = int(os.getenv("CASEROUTER_TRANSFER_TIMEOUT_MINUTES", config_data.get("TRANSFER_TIMEOUT_MINUTES", "0")))
TRANSFER_TIMEOUT_ENABLED = TRANSFER_TIMEOUT_MINUTES > 0

# Compare-and-swap attempts before a contended query write gives up
CAS_RETRIES = int(os.getenv("CASEROUTER_CAS_RETRIES", "5"))

# Per-connection outbound event buffer; events beyond this are dropped for that connection
CONNECTION_QUEUE_SIZE = int(os.getenv("CASEROUTER_CONNECTION_QUEUE_SIZE", "100"))

# Optional JSON file overriding who may initiate / receive / supervise transfers
POLICY_FILE = os.getenv("CASEROUTER_POLICY_FILE", config_data.get("POLICY_FILE", ""))

ROUTER_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "QUERY_TTL_HOURS": QUERY_TTL_HOURS,
        "SWEEP_INTERVAL": SWEEP_INTERVAL,
        "TRANSFER_TIMEOUT_MINUTES": TRANSFER_TIMEOUT_MINUTES,
        "POLICY_FILE": POLICY_FILE,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
