"""
DocSpace Flow Hub - Configuration

All settings come from environment variables (a .env file is loaded by
server.py before this module is imported). Values are read once at import
time; tests override them by constructing the services with explicit
arguments instead of patching the environment.
"""

import os
from typing import List


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_list(name: str, default: str = "") -> List[str]:
    return [v.strip() for v in os.environ.get(name, default).split(",") if v.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# =============================================================================
# DOCSPACE CONNECTION
# =============================================================================

DOCSPACE_BASE_URL = os.environ.get("DOCSPACE_BASE_URL", "").rstrip("/")
# Service credential used when no user token is supplied and as the 403 fallback
DOCSPACE_AUTH_TOKEN = (
    os.environ.get("DOCSPACE_AUTHORIZATION")
    or os.environ.get("DOCSPACE_AUTH_TOKEN")
    or os.environ.get("DOCSPACE_API_KEY", "")
)
DOCSPACE_REQUEST_TIMEOUT = float(os.environ.get("DOCSPACE_REQUEST_TIMEOUT", "30"))


# =============================================================================
# ROOM / FOLDER RESOLUTION
# =============================================================================

FORMS_ROOM_ID = os.environ.get("DOCSPACE_FORMS_ROOM_ID", "").strip()
FORMS_ROOM_TITLE = os.environ.get("DOCSPACE_FORMS_ROOM_TITLE", "Forms Room")
FORMS_ROOM_TITLE_FALLBACKS = _env_list("DOCSPACE_FORMS_ROOM_TITLE_FALLBACKS", "Approval Room,Forms")
FORMS_TEMPLATES_FOLDER_TITLE = os.environ.get("DOCSPACE_FORMS_TEMPLATES_FOLDER_TITLE", "Templates")
IN_PROCESS_FOLDER_TITLES = _env_list("DOCSPACE_IN_PROCESS_FOLDER_TITLES", "In Process,In progress")
COMPLETE_FOLDER_TITLES = _env_list("DOCSPACE_COMPLETE_FOLDER_TITLES", "Complete,Completed")
BULK_LINKS_FOLDER_TITLE = os.environ.get("DOCSPACE_BULK_LINKS_FOLDER_TITLE", "Bulk links")

# DocSpace FolderType codes; these survive renaming and localization
FOLDER_TYPE_TRASH = _env_int("DOCSPACE_FOLDER_TYPE_TRASH", 3)
FOLDER_TYPE_TEMPLATES = _env_int("DOCSPACE_FOLDER_TYPE_TEMPLATES", 12)
FOLDER_TYPE_COMPLETE = _env_int("DOCSPACE_FOLDER_TYPE_COMPLETE", 25)
FOLDER_TYPE_IN_PROCESS = _env_int("DOCSPACE_FOLDER_TYPE_IN_PROCESS", 26)


# =============================================================================
# RECONCILIATION / BULK
# =============================================================================

RECONCILE_ATTEMPTS = _env_int("RECONCILE_ATTEMPTS", 8)
RECONCILE_DELAY_MS = _env_int("RECONCILE_DELAY_MS", 450)
BULK_MAX_COUNT = _env_int("BULK_MAX_COUNT", 50)
BULK_LINK_TITLE = os.environ.get("BULK_LINK_TITLE", "Approval link")
FILL_LINK_TITLE = os.environ.get("FILL_LINK_TITLE", "Link to fill out")


# =============================================================================
# WEBHOOKS
# =============================================================================

WEBHOOK_SECRET = os.environ.get("DOCSPACE_WEBHOOK_SECRET", "")
# When true an unsigned delivery is rejected even if no secret is configured
WEBHOOK_REQUIRE_SIGNATURE = _env_flag("WEBHOOK_REQUIRE_SIGNATURE")


# =============================================================================
# STORE PERSISTENCE
# =============================================================================

# json | mongo | off
STORE_BACKEND = os.environ.get("STORE_BACKEND", "json").lower()
STORE_PATH = os.environ.get("STORE_PATH", "data/store.json")
STORE_SAVE_DEBOUNCE_MS = _env_int("STORE_SAVE_DEBOUNCE_MS", 200)
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "flow_hub")

CORS_ORIGINS = _env_list("CORS_ORIGINS", "*")
SERVER_HOST = os.environ.get("HOST", "0.0.0.0")
SERVER_PORT = _env_int("PORT", 8001)


def validate_config(requires_auth: bool = True) -> List[str]:
    """Return a list of human-readable configuration problems."""
    errors = []
    if not DOCSPACE_BASE_URL:
        errors.append("DOCSPACE_BASE_URL is not set")
    if requires_auth and not DOCSPACE_AUTH_TOKEN:
        errors.append("DOCSPACE_AUTH_TOKEN (or DOCSPACE_AUTHORIZATION) is not set")
    if not WEBHOOK_SECRET:
        errors.append("DOCSPACE_WEBHOOK_SECRET is not set; webhook signatures are not verified")
    return errors
