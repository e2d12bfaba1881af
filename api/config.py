import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


_raw = os.getenv("DATABASE_URL", "sqlite:///./data/relay.db")
# Use psycopg 3 driver; avoid psycopg2 (no build required)
if _raw.startswith("postgresql://") and not _raw.startswith("postgresql+"):
    _raw = _raw.replace("postgresql://", "postgresql+psycopg://", 1)
DATABASE_URL = _raw

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# API keys: x-api-key for public routes (optional), x-admin-key for /admin
API_KEY = os.getenv("WA_API_KEY", "")
ADMIN_KEY = os.getenv("WA_ADMIN_KEY", "")

# WhatsApp HTTP bridge (Evolution API compatible)
WA_BRIDGE_URL = os.getenv("WA_BRIDGE_URL", "http://localhost:8080")
WA_BRIDGE_INSTANCE = os.getenv("WA_BRIDGE_INSTANCE", "relay")
WA_BRIDGE_API_KEY = os.getenv("WA_BRIDGE_API_KEY", "")
WA_WEBHOOK_TOKEN = os.getenv("WA_WEBHOOK_TOKEN", "")
WA_HTTP_TIMEOUT_SEC = float(os.getenv("WA_HTTP_TIMEOUT_SEC", "20"))
WA_STATUS_POLL_SEC = float(os.getenv("WA_STATUS_POLL_SEC", "15"))
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "27")

# Documents
CONTACTS_FILE = os.getenv("CONTACTS_FILE", "./data/contacts.json")
MESSAGES_FILE = os.getenv("MESSAGES_FILE", "./data/messages.json")
MESSAGES_MAX = int(os.getenv("MESSAGES_MAX", "20000"))
MESSAGES_MEMORY_LIMIT = int(os.getenv("MESSAGES_MEMORY_LIMIT", "1500"))
AUTOMATIONS_FILE = os.getenv("AUTOMATIONS_FILE", "./data/automations.json")

# Automation webhook defaults (used until the admin config says otherwise)
AUTOMATION_WEBHOOK_URL = os.getenv("AUTOMATION_WEBHOOK_URL", "").strip()
AUTOMATION_SHARED_SECRET = os.getenv("AUTOMATION_SHARED_SECRET", "").strip()
AUTOMATION_GROUP_PREFIX = os.getenv("AUTOMATION_GROUP_PREFIX", "!bot")

# Signed media links in forwarded events
MEDIA_SIGNING_SECRET = os.getenv("MEDIA_SIGNING_SECRET", "").strip()
MEDIA_URL_TTL_SECONDS = int(os.getenv("MEDIA_URL_TTL_SECONDS", str(60 * 60 * 24 * 2)))

# Delivery pacing
WA_BASE_DELAY_MS = int(os.getenv("WA_BASE_DELAY_MS", "900"))
WA_JITTER_MS = int(os.getenv("WA_JITTER_MS", "600"))
WA_PER_JID_GAP_MS = int(os.getenv("WA_PER_JID_GAP_MS", "1500"))
WA_GLOBAL_MIN_GAP_MS = int(os.getenv("WA_GLOBAL_MIN_GAP_MS", "0"))
WA_MAX_RETRIES = int(os.getenv("WA_MAX_RETRIES", "3"))
WA_RETRY_BACKOFF_MS = int(os.getenv("WA_RETRY_BACKOFF_MS", "1500"))
WA_CONNECT_POLL_MS = int(os.getenv("WA_CONNECT_POLL_MS", "1000"))

# HTTP rate limit for public routes
RATE_LIMIT_WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", "60000"))
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "120"))

# Auto reply
AUTO_REPLY_ENABLED = _env_bool("AUTO_REPLY_ENABLED", "false")
AUTO_REPLY_SCOPE = os.getenv("AUTO_REPLY_SCOPE", "both")  # dm | group | both
AUTO_REPLY_MATCH_TYPE = os.getenv("AUTO_REPLY_MATCH_TYPE", "contains")  # contains | equals | regex
AUTO_REPLY_MATCH_VALUE = os.getenv("AUTO_REPLY_MATCH_VALUE", "help")
AUTO_REPLY_TEXT = os.getenv("AUTO_REPLY_TEXT", "Hi 👋 How can I help?")
AUTO_REPLY_COOLDOWN_MS = int(os.getenv("AUTO_REPLY_COOLDOWN_MS", "30000"))
AUTO_REPLY_GROUP_PREFIX = os.getenv("AUTO_REPLY_GROUP_PREFIX", "!bot")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
DEV_CALLBACK_RECEIVER = _env_bool("DEV_CALLBACK_RECEIVER")
