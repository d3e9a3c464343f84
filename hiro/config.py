"""
Centralized Configuration - Single source of truth for all settings.

All environment variables are read here, validated, and exposed as module-level
constants. Other modules import from here instead of reading os.environ directly.

Usage:
    from hiro.config import DB_PATH, OPENROUTER_BASE_URL, LOG_LEVEL
"""

import os
import sys

# ─── PATHS ───────────────────────────────────────────────────

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOGS_DIR = os.path.join(PROJECT_ROOT, "logs")

# ─── DATABASE ────────────────────────────────────────────────

DB_PATH = os.environ.get("HIRO_DB_PATH", os.path.join(PROJECT_ROOT, "hiro.db"))
DB_JOURNAL_MODE = os.environ.get("HIRO_JOURNAL_MODE", "WAL")

# ─── LLM (OpenRouter) ────────────────────────────────────────

OPENROUTER_BASE_URL = os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
OPENROUTER_SITE_URL = os.environ.get("OPENROUTER_SITE_URL", "https://hiro.app")
OPENROUTER_SITE_NAME = os.environ.get("OPENROUTER_SITE_NAME", "Hiro")
OPENROUTER_TIMEOUT = int(os.environ.get("OPENROUTER_TIMEOUT_SECONDS", "60"))
LLM_PRIMARY_MODEL = os.environ.get("LLM_PRIMARY_MODEL", "google/gemini-2.0-flash-exp:free")
LLM_FALLBACK_MODELS = [
    m.strip() for m in os.environ.get(
        "LLM_FALLBACK_MODELS",
        "openai/gpt-oss-20b:free,"
        "mistralai/mistral-small-3.1-24b-instruct:free,"
        "deepseek/deepseek-chat-v3.1:free",
    ).split(",") if m.strip()
]

# ─── FACEBOOK ────────────────────────────────────────────────

FB_GRAPH_URL = os.environ.get("FB_GRAPH_URL", "https://graph.facebook.com/v19.0")

# ─── SECURITY ────────────────────────────────────────────────

ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY", "")
APP_ENV = os.environ.get("APP_ENV", "production").lower()
CRON_SECRET = os.environ.get("CRON_SECRET", "")

# ─── API ─────────────────────────────────────────────────────

API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "8000"))
CORS_ORIGINS = os.environ.get(
    "HIRO_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000"
).split(",")

# ─── JOBS ────────────────────────────────────────────────────

SYNC_PROGRESS_INTERVAL = int(os.environ.get("SYNC_PROGRESS_INTERVAL", "10"))
CAMPAIGN_BATCH_SIZE = int(os.environ.get("CAMPAIGN_BATCH_SIZE", "50"))
API_KEY_COOLDOWN_HOURS = int(os.environ.get("API_KEY_COOLDOWN_HOURS", "24"))

# ─── LOGGING ─────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "text" or "json"
LOG_FILE = os.environ.get("LOG_FILE", "")  # empty = stdout only

# ─── VALIDATION ──────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_LOG_FORMATS = {"text", "json"}
_VALID_JOURNAL_MODES = {"WAL", "DELETE", "MEMORY", "OFF"}

_errors = []

if LOG_LEVEL not in _VALID_LOG_LEVELS:
    _errors.append(f"LOG_LEVEL must be one of {_VALID_LOG_LEVELS}, got '{LOG_LEVEL}'")

if LOG_FORMAT not in _VALID_LOG_FORMATS:
    _errors.append(f"LOG_FORMAT must be one of {_VALID_LOG_FORMATS}, got '{LOG_FORMAT}'")

if DB_JOURNAL_MODE not in _VALID_JOURNAL_MODES:
    _errors.append(f"HIRO_JOURNAL_MODE must be one of {_VALID_JOURNAL_MODES}, got '{DB_JOURNAL_MODE}'")

if OPENROUTER_TIMEOUT < 1:
    _errors.append(f"OPENROUTER_TIMEOUT_SECONDS must be positive, got {OPENROUTER_TIMEOUT}")

if SYNC_PROGRESS_INTERVAL < 1:
    _errors.append(f"SYNC_PROGRESS_INTERVAL must be positive, got {SYNC_PROGRESS_INTERVAL}")

if CAMPAIGN_BATCH_SIZE < 1:
    _errors.append(f"CAMPAIGN_BATCH_SIZE must be positive, got {CAMPAIGN_BATCH_SIZE}")

if ENCRYPTION_KEY and len(ENCRYPTION_KEY) != 64:
    _errors.append("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")

if _errors:
    for e in _errors:
        print(f"[config] ERROR: {e}", file=sys.stderr)
    # Don't crash during import - not every entry point needs every setting


def validate(strict: bool = False) -> list:
    """Validate all configuration settings.

    Args:
        strict: If True, raise ValueError on any errors.

    Returns:
        List of error messages (empty if all valid).
    """
    if strict and _errors:
        raise ValueError(f"Configuration errors: {'; '.join(_errors)}")
    return list(_errors)


def print_config():
    """Print current configuration (safe - no secrets)."""
    print("=" * 50)
    print("Hiro Configuration")
    print("=" * 50)
    print(f"  DB_PATH:                {DB_PATH}")
    print(f"  DB_JOURNAL_MODE:        {DB_JOURNAL_MODE}")
    print(f"  OPENROUTER_BASE_URL:    {OPENROUTER_BASE_URL}")
    print(f"  LLM_PRIMARY_MODEL:      {LLM_PRIMARY_MODEL}")
    print(f"  LLM_FALLBACK_MODELS:    {', '.join(LLM_FALLBACK_MODELS)}")
    print(f"  OPENROUTER_TIMEOUT:     {OPENROUTER_TIMEOUT}s")
    print(f"  FB_GRAPH_URL:           {FB_GRAPH_URL}")
    print(f"  ENCRYPTION_KEY:         {'set' if ENCRYPTION_KEY else 'NOT SET'}")
    print(f"  APP_ENV:                {APP_ENV}")
    print(f"  API_HOST:               {API_HOST}")
    print(f"  API_PORT:               {API_PORT}")
    print(f"  LOG_LEVEL:              {LOG_LEVEL}")
    print(f"  LOG_FORMAT:             {LOG_FORMAT}")
    print(f"  SYNC_PROGRESS_INTERVAL: {SYNC_PROGRESS_INTERVAL}")
    print(f"  CAMPAIGN_BATCH_SIZE:    {CAMPAIGN_BATCH_SIZE}")
    print(f"  API_KEY_COOLDOWN_HOURS: {API_KEY_COOLDOWN_HOURS}")
    print(f"  PROJECT_ROOT:           {PROJECT_ROOT}")
    print("=" * 50)
