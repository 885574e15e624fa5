"""
ThreadForge Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "threadforge.db"
_user_default_db = Path.home() / ".threadforge" / "threadforge.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _setting(name: str, default):
    return os.getenv(f"THREADFORGE_{name}", config_data.get(name, default))


if os.getenv("THREADFORGE_DB"):
    DB_PATH = os.getenv("THREADFORGE_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = _setting("HOST", "127.0.0.1")
PORT = int(_setting("PORT", "39780"))
VERSION = "0.1.0"

# A turn that yields no increment for this many seconds is forced to Failed.
# Model calls are long-running, so this is minutes, not seconds.
TURN_IDLE_TIMEOUT = float(_setting("TURN_IDLE_TIMEOUT", "300"))
# How often the stale-session sweep runs (seconds)
SESSION_SWEEP_INTERVAL = int(_setting("SESSION_SWEEP_INTERVAL", "60"))

# Context window fed to the model (user/assistant messages only)
MEMORY_WINDOW_SIZE = int(_setting("MEMORY_WINDOW_SIZE", "40"))
SUB_AGENT_MEMORY_WINDOW = int(_setting("SUB_AGENT_MEMORY_WINDOW", "20"))

# Retry policy for rate-limited / transient model failures
MODEL_MAX_RETRIES = int(_setting("MODEL_MAX_RETRIES", "2"))
MODEL_BACKOFF_BASE = float(_setting("MODEL_BACKOFF_BASE", "2.0"))
MODEL_REQUEST_TIMEOUT = float(_setting("MODEL_REQUEST_TIMEOUT", "300"))
# "http" talks to the provider endpoints below; "echo" answers locally (dev / e2e)
MODEL_BACKEND = str(_setting("MODEL_BACKEND", "http")).lower()

# Upper bound a lead turn may block on a delegated sub-agent reply
SUB_AGENT_WAIT_TIMEOUT = float(_setting("SUB_AGENT_WAIT_TIMEOUT", "120"))

# Message history paging
MESSAGE_PAGE_DEFAULT = int(_setting("MESSAGE_PAGE_DEFAULT", "50"))
MESSAGE_PAGE_MAX = int(_setting("MESSAGE_PAGE_MAX", "200"))

# Provider endpoints. Every provider is reached through an OpenAI-compatible
# chat completions endpoint (native or gateway).
PROVIDER_ENDPOINTS = {
    "openai": {
        "base_url": _setting("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        "api_key": _setting("OPENAI_API_KEY", ""),
    },
    "anthropic": {
        "base_url": _setting("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1"),
        "api_key": _setting("ANTHROPIC_API_KEY", ""),
    },
    "gemini": {
        "base_url": _setting("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai"),
        "api_key": _setting("GEMINI_API_KEY", ""),
    },
}

# Bearer token -> owner id. Empty means single-user development mode.
_raw_tokens = _setting("API_TOKENS", {})
if isinstance(_raw_tokens, str):
    try:
        _raw_tokens = json.loads(_raw_tokens) if _raw_tokens.strip() else {}
    except ValueError:
        _raw_tokens = {}
API_TOKENS: dict[str, str] = dict(_raw_tokens)
DEV_OWNER_ID = "local"


def get_config_dict() -> dict:
    """Current values of the settings that can be edited at runtime (applied on restart)."""
    return {
        "HOST": HOST,
        "PORT": PORT,
        "TURN_IDLE_TIMEOUT": TURN_IDLE_TIMEOUT,
        "MEMORY_WINDOW_SIZE": MEMORY_WINDOW_SIZE,
        "MODEL_MAX_RETRIES": MODEL_MAX_RETRIES,
        "SUB_AGENT_WAIT_TIMEOUT": SUB_AGENT_WAIT_TIMEOUT,
    }


def save_config_dict(new_data: dict) -> dict:
    config_file = _config_file
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
    return current
