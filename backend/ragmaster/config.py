# ragmaster/config.py
import os
from dotenv import load_dotenv

load_dotenv()

def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))

def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))

# ─── Auth / database ─────────────────────────────────────────────────────────
SUPABASE_URL        = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_ANON_KEY   = os.getenv("SUPABASE_ANON_KEY", "")
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET", "")
JWT_ALG             = os.getenv("JWT_ALG", "HS256")
DB_AUTO_CREATE      = os.getenv("DB_AUTO_CREATE", "false").lower() == "true"

# ─── Generative AI ───────────────────────────────────────────────────────────
GEMINI_MODEL       = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_BASE_URL    = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com").rstrip("/")
LLM_MAX_ATTEMPTS   = _int("LLM_MAX_ATTEMPTS", 3)
LLM_BACKOFF_BASE   = _float("LLM_BACKOFF_BASE", 1.0)
LLM_BACKOFF_JITTER = _float("LLM_BACKOFF_JITTER", 0.5)
FILE_POLL_ATTEMPTS = _int("FILE_POLL_ATTEMPTS", 30)
FILE_POLL_INTERVAL = _float("FILE_POLL_INTERVAL", 2.0)
HTTP_TIMEOUT       = _float("HTTP_TIMEOUT", 60.0)

# Price per million tokens (USD), used by the stats estimate.
INPUT_TOKEN_PRICE  = 0.10
OUTPUT_TOKEN_PRICE = 0.40

DEFAULT_SYSTEM_INSTRUCTION = (
    "RÔLE: Assistant officiel du Ministère de la Solidarité (Maroc). "
    "Mission: Informer sur les services sociaux (RSU, RNP, Handicap) "
    "en se basant UNIQUEMENT sur le contexte fourni."
)
DEFAULT_MARKETING_INSTRUCTION = (
    "You are a world-class digital strategy consultant for public service communication."
)

# ─── WhatsApp / Meta ─────────────────────────────────────────────────────────
WHATSAPP_API_VERSION    = os.getenv("WHATSAPP_API_VERSION", "v19.0")
GRAPH_BASE_URL          = os.getenv("GRAPH_BASE_URL", "https://graph.facebook.com").rstrip("/")
AUDIO_MAX_BYTES         = _int("AUDIO_MAX_BYTES", 20 * 1024 * 1024)
IMAGE_MAX_BYTES         = _int("IMAGE_MAX_BYTES", 10 * 1024 * 1024)
BROADCAST_DELAY_SECONDS = _float("BROADCAST_DELAY_SECONDS", 0.1)
WINDOW_ERROR_CODE       = 131047

# ─── Server ──────────────────────────────────────────────────────────────────
CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
PORT               = _int("PORT", 3000)
LOG_LEVEL          = os.getenv("LOG_LEVEL", "INFO").upper()

# Environment names of the credentials that may also live in app_settings.
# The environment wins; the settings row is the fallback.
CREDENTIAL_ENV = {
    "gemini_api_key":           "GEMINI_API_KEY",
    "whatsapp_token":           "WHATSAPP_TOKEN",
    "whatsapp_phone_number_id": "WHATSAPP_PHONE_NUMBER_ID",
    "verify_token":             "VERIFY_TOKEN",
    "fb_app_secret":            "FB_APP_SECRET",
}

def env_credential(column: str) -> str:
    # read at call time so a changed environment is honoured without restart
    return os.getenv(CREDENTIAL_ENV[column], "")
