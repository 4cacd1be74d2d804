import os

# === Configuration ===
PROJECT_ID = os.environ.get("GCP_PROJECT_ID", "")
BUCKET_NAME = os.environ.get("GCS_BUCKET_NAME", "")

# Cloud Tasks
REGION = os.environ.get("GCP_REGION", "us-central1")
QUEUE_NAME = os.environ.get("CLOUD_TASKS_QUEUE", "book-condenser-queue")
FUNCTION_URL = os.environ.get("FUNCTION_URL", "")  # URL of this Cloud Function
SERVICE_ACCOUNT_EMAIL = os.environ.get(
    "TASKS_SERVICE_ACCOUNT",
    f"{PROJECT_ID}@appspot.gserviceaccount.com" if PROJECT_ID else ""
)

# API Key
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")

# Cloud Logging can be switched off for local runs and tests
CLOUD_LOGGING_ENABLED = os.environ.get("CLOUD_LOGGING_ENABLED", "true").lower() not in ("0", "false", "no")

# === GCS-based Configuration Loader ===
# Load dynamic configuration from GCS (with caching and env fallback)
_config_loader = None

def get_config_loader():
    """Get or create the global config loader instance."""
    global _config_loader
    if _config_loader is None and BUCKET_NAME:
        from services.config_loader import ConfigLoader
        _config_loader = ConfigLoader(BUCKET_NAME, cache_ttl=300)
    return _config_loader

# Load configuration with GCS priority and env fallback
def get_config_value(key_path: str, env_var: str = None, default=None):
    """
    Get configuration value with priority: GCS config > ENV var > default.

    Args:
        key_path: Dot-notation path in GCS config (e.g., 'gemini.model_id')
        env_var: Optional environment variable name to check as fallback
        default: Default value if not found
    """
    loader = get_config_loader()

    # Try GCS config first
    if loader:
        value = loader.get(key_path)
        if value is not None:
            return value

    # Fall back to environment variable
    if env_var:
        env_value = os.environ.get(env_var)
        if env_value is not None:
            return env_value

    # Return default
    return default

# === Notifications ===
# External notifier endpoint (chat bot, websocket fan-out, ...). Empty = log only.
NOTIFY_URL = get_config_value("notifications.webhook_url", "NOTIFY_URL", "")

# === Gemini Configuration ===
GEMINI_MODEL = get_config_value(
    "gemini.model_id",
    "GEMINI_MODEL",
    "gemini-2.5-flash"
)

GEMINI_TEMPERATURE = float(get_config_value(
    "gemini.temperature",
    "GEMINI_TEMPERATURE",
    "0.3"
))

GEMINI_MAX_OUTPUT_TOKENS = int(get_config_value(
    "gemini.max_output_tokens",
    "GEMINI_MAX_OUTPUT_TOKENS",
    "8192"
))

# Per-request timeout; the client never retries on its own
GEMINI_TIMEOUT_SECONDS = float(get_config_value(
    "gemini.timeout_seconds",
    "GEMINI_TIMEOUT_SECONDS",
    "120"
))

# === Processing Configuration ===
# Only the head of the book is sent for metadata / chapter detection (cost control)
METADATA_PROMPT_CHARS = int(get_config_value(
    "processing.metadata_prompt_chars",
    "METADATA_PROMPT_CHARS",
    "3000"
))

SEGMENTATION_PROMPT_CHARS = int(get_config_value(
    "processing.segmentation_prompt_chars",
    "SEGMENTATION_PROMPT_CHARS",
    "8000"
))

MIN_PDF_BYTES = int(get_config_value(
    "processing.min_pdf_bytes",
    "MIN_PDF_BYTES",
    str(1024)
))

MAX_PDF_BYTES = int(get_config_value(
    "processing.max_pdf_bytes",
    "MAX_PDF_BYTES",
    str(100 * 1024 * 1024)
))

MAX_CONCURRENT_CHAPTERS = int(get_config_value(
    "processing.max_concurrent_chapters",
    "MAX_CONCURRENT_CHAPTERS",
    "10"
))

# "cloud_tasks" for the deployed function, "local" for a thread pool in-process
DISPATCH_MODE = get_config_value(
    "processing.dispatch_mode",
    "DISPATCH_MODE",
    "cloud_tasks"
)

# Blob root for DISPATCH_MODE=local
LOCAL_STORAGE_DIR = get_config_value(
    "processing.local_storage_dir",
    "LOCAL_STORAGE_DIR",
    ".local_storage"
)

# Seconds between consecutive chapter tasks (0 = enqueue all at once)
CHAPTER_TASK_STAGGER_SECONDS = int(get_config_value(
    "processing.chapter_task_stagger_seconds",
    "CHAPTER_TASK_STAGGER_SECONDS",
    "0"
))

# === Retry Configuration ===
RETRY_MAX_ATTEMPTS = int(get_config_value(
    "retry.max_attempts",
    "RETRY_MAX_ATTEMPTS",
    "3"
))

RETRY_BASE_DELAY = float(get_config_value(
    "retry.base_delay_seconds",
    "RETRY_BASE_DELAY",
    "1.0"
))

RETRY_MAX_DELAY = float(get_config_value(
    "retry.max_delay_seconds",
    "RETRY_MAX_DELAY",
    "8.0"
))

# === Storage / Job lifetime ===
DOWNLOAD_URL_TTL = int(get_config_value(
    "storage.download_url_ttl_seconds",
    "DOWNLOAD_URL_TTL",
    str(24 * 60 * 60)
))

UPLOAD_URL_TTL = int(get_config_value(
    "storage.upload_url_ttl_seconds",
    "UPLOAD_URL_TTL",
    str(60 * 60)
))

JOB_EXPIRY_DAYS = int(get_config_value(
    "jobs.expiry_days",
    "JOB_EXPIRY_DAYS",
    "7"
))
