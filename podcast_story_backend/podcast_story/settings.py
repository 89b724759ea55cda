import os
import tempfile
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_SCRIPT_MODEL = os.getenv("OPENAI_SCRIPT_MODEL", "gpt-5")
OPENAI_SHOT_MODEL = os.getenv("OPENAI_SHOT_MODEL", "gpt-5-nano")

REPLICATE_API_TOKEN = os.getenv("REPLICATE_API_TOKEN", "")
REPLICATE_MODEL_VERSION = os.getenv("REPLICATE_MODEL_VERSION", "")

ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY", "")

# S3-compatible object storage (DigitalOcean Spaces, R2, S3)
BLOB_ENDPOINT = os.getenv("BLOB_ENDPOINT", "")
BLOB_REGION = os.getenv("BLOB_REGION", "sfo3")
BLOB_BUCKET = os.getenv("BLOB_BUCKET", "")
BLOB_KEY = os.getenv("BLOB_KEY", "")
BLOB_SECRET = os.getenv("BLOB_SECRET", "")
BLOB_CDN_URL = os.getenv("BLOB_CDN_URL", "").rstrip("/")

KV_REST_API_URL = os.getenv("KV_REST_API_URL", "")
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "")

CLOUDFLARE_ACCOUNT_ID = os.getenv("CLOUDFLARE_ACCOUNT_ID", "")
CLOUDFLARE_TOKEN = os.getenv("CLOUDFLARE_TOKEN", "")

# Base URL vendors can reach for webhooks; polling only when empty
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")

# Accept a story once all shots are terminal and at least this share succeeded
MIN_IMAGE_SUCCESS_RATE = float(os.getenv("MIN_IMAGE_SUCCESS_RATE", "0.90"))

MAX_CONCURRENT_CALLS = int(os.getenv("MAX_CONCURRENT_CALLS", "10"))
MAX_CONCURRENT_IMAGES = int(os.getenv("MAX_CONCURRENT_IMAGES", "10"))
SHOT_SECONDS = int(os.getenv("SHOT_SECONDS", "5"))

IMAGE_POLL_INTERVAL_MS = int(os.getenv("IMAGE_POLL_INTERVAL_MS", "1500"))
IMAGE_POLL_MAX_ATTEMPTS = int(os.getenv("IMAGE_POLL_MAX_ATTEMPTS", "80"))
ANCHOR_POLL_INTERVAL_MS = int(os.getenv("ANCHOR_POLL_INTERVAL_MS", "2000"))
ANCHOR_WAIT_MAX_ATTEMPTS = int(os.getenv("ANCHOR_WAIT_MAX_ATTEMPTS", "90"))

CAPTION_POLL_INTERVAL_MS = int(os.getenv("CAPTION_POLL_INTERVAL_MS", "5000"))
CAPTION_POLL_MAX_ATTEMPTS = int(os.getenv("CAPTION_POLL_MAX_ATTEMPTS", "60"))

MUSIC_LENGTH_MS = int(os.getenv("MUSIC_LENGTH_MS", "300000"))

VIDEO_WIDTH = int(os.getenv("VIDEO_WIDTH", "1920"))
VIDEO_HEIGHT = int(os.getenv("VIDEO_HEIGHT", "1080"))
FPS = int(os.getenv("FPS", "30"))
INTRO_FADE_SEC = int(os.getenv("INTRO_FADE_SEC", "5"))
OUTRO_FADE_SEC = int(os.getenv("OUTRO_FADE_SEC", "10"))

TEMP_ROOT = os.getenv("TEMP_ROOT", os.path.join(tempfile.gettempdir(), "podcast-story"))

# Comma-separated list of allowed origins for CORS (e.g., "https://app.vercel.app,https://www.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]


def has_all_keys() -> bool:
    keys_present = all([OPENAI_API_KEY, REPLICATE_API_TOKEN, ELEVENLABS_API_KEY])
    if not keys_present:
        missing = []
        if not OPENAI_API_KEY: missing.append("OPENAI_API_KEY")
        if not REPLICATE_API_TOKEN: missing.append("REPLICATE_API_TOKEN")
        if not ELEVENLABS_API_KEY: missing.append("ELEVENLABS_API_KEY")
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return keys_present


def validate_success_rate(rate: float) -> float:
    if not 0 < rate <= 1:
        raise ValueError(f"MIN_IMAGE_SUCCESS_RATE must be in (0, 1], got {rate}")
    return rate


def validate_settings():
    """Fail at startup on misconfiguration instead of on every evaluation."""
    validate_success_rate(MIN_IMAGE_SUCCESS_RATE)
    for name, value in (
        ("MAX_CONCURRENT_CALLS", MAX_CONCURRENT_CALLS),
        ("MAX_CONCURRENT_IMAGES", MAX_CONCURRENT_IMAGES),
        ("SHOT_SECONDS", SHOT_SECONDS),
        ("IMAGE_POLL_MAX_ATTEMPTS", IMAGE_POLL_MAX_ATTEMPTS),
        ("ANCHOR_WAIT_MAX_ATTEMPTS", ANCHOR_WAIT_MAX_ATTEMPTS),
        ("CAPTION_POLL_MAX_ATTEMPTS", CAPTION_POLL_MAX_ATTEMPTS),
    ):
        if value < 1:
            raise ValueError(f"{name} must be >= 1, got {value}")
