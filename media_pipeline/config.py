import os
import logging
import logging.config
from pathlib import Path

# Base Paths
APP_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = APP_DIR.parent

# Environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"
DEBUG = not IS_PRODUCTION

# Logging Setup
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_FILE_PATH = os.getenv(
    "LOG_FILE_PATH",
    str((PROJECT_ROOT / "logs" / "media_pipeline.log").resolve()),
)

LOG_DIR = Path(LOG_FILE_PATH).parent
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": LOG_FORMAT,
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": LOG_LEVEL,
            "formatter": "standard",
            "stream": "ext://sys.stdout",
        },
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "level": LOG_LEVEL,
            "formatter": "standard",
            "filename": LOG_FILE_PATH,
            "maxBytes": 10 * 1024 * 1024,  # 10 MB
            "backupCount": 5,
            "encoding": "utf8",
        },
    },
    "loggers": {
        "media_pipeline": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "uvicorn.error": {"level": "INFO"},
        "uvicorn.access": {"level": "INFO"},
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
}

logging.config.dictConfig(LOGGING_CONFIG)
logger = logging.getLogger("media_pipeline")


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# -----------------------------------------------------------------------------
# Working directories
# -----------------------------------------------------------------------------

DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
UPLOAD_DIR = DATA_DIR / "uploads"
PROCESSED_DIR = DATA_DIR / "processed"
# Image watermarks may only be read from here
WATERMARK_DIR = Path(os.getenv("WATERMARK_DIR", str(DATA_DIR / "watermarks")))

UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
PROCESSED_DIR.mkdir(parents=True, exist_ok=True)

# Multipart uploads are streamed in chunks of this size
UPLOAD_CHUNK_SIZE = 1024 * 1024
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 500 * 1024 * 1024)

# -----------------------------------------------------------------------------
# Workers & queue
# -----------------------------------------------------------------------------

IMAGE_WORKER_CONCURRENCY = _env_int("IMAGE_WORKER_CONCURRENCY", 2 if IS_PRODUCTION else 1)
VIDEO_WORKER_CONCURRENCY = _env_int("VIDEO_WORKER_CONCURRENCY", 1)

MAX_ATTEMPTS = _env_int("MAX_ATTEMPTS", 3)
RETRY_BASE_DELAY_SECONDS = _env_float("RETRY_BASE_DELAY_SECONDS", 5.0)
RETRY_MAX_DELAY_SECONDS = _env_float("RETRY_MAX_DELAY_SECONDS", 60.0)

IMAGE_JOB_TIMEOUT_SECONDS = _env_float("IMAGE_JOB_TIMEOUT_SECONDS", 300.0)  # 5 minutes
VIDEO_JOB_TIMEOUT_SECONDS = _env_float("VIDEO_JOB_TIMEOUT_SECONDS", 1800.0)  # 30 minutes
IMAGE_STALLED_INTERVAL_SECONDS = _env_float("IMAGE_STALLED_INTERVAL_SECONDS", 30.0)
VIDEO_STALLED_INTERVAL_SECONDS = _env_float("VIDEO_STALLED_INTERVAL_SECONDS", 60.0)

# Finished jobs kept for status queries
KEEP_COMPLETED_JOBS = _env_int("KEEP_COMPLETED_JOBS", 100)
KEEP_FAILED_JOBS = _env_int("KEEP_FAILED_JOBS", 50)

SHUTDOWN_DRAIN_SECONDS = _env_float("SHUTDOWN_DRAIN_SECONDS", 30.0)

# -----------------------------------------------------------------------------
# Cleanup
# -----------------------------------------------------------------------------

CLEANUP_INTERVAL_SECONDS = _env_float("CLEANUP_INTERVAL_SECONDS", 30.0)
OUTPUT_RETENTION_HOURS = _env_float("OUTPUT_RETENTION_HOURS", 24.0)

# -----------------------------------------------------------------------------
# Health thresholds
# -----------------------------------------------------------------------------

MEMORY_WARNING_RATIO = _env_float("MEMORY_WARNING_RATIO", 0.7)
MEMORY_CRITICAL_RATIO = _env_float("MEMORY_CRITICAL_RATIO", 0.9)
BACKLOG_WARNING = _env_int("BACKLOG_WARNING", 100)
BACKLOG_CRITICAL = _env_int("BACKLOG_CRITICAL", 1000)
FAILURE_RATE_WARNING = _env_float("FAILURE_RATE_WARNING", 0.10)
FAILURE_RATE_CRITICAL = _env_float("FAILURE_RATE_CRITICAL", 0.25)
FAILURE_RATE_MIN_SAMPLE = _env_int("FAILURE_RATE_MIN_SAMPLE", 10)

# -----------------------------------------------------------------------------
# Artifact storage
# -----------------------------------------------------------------------------

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "r2" if IS_PRODUCTION else "local").lower()

# Cloudflare R2 (S3-compatible object storage)
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_ENDPOINT_URL = os.getenv(
    "R2_ENDPOINT_URL",
    f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com" if R2_ACCOUNT_ID else "",
)
R2_KEY_PREFIX = os.getenv("R2_KEY_PREFIX", "processed")
PRESIGNED_URL_EXPIRY_SECONDS = _env_int("PRESIGNED_URL_EXPIRY_SECONDS", 3600)

# -----------------------------------------------------------------------------
# External tools
# -----------------------------------------------------------------------------

FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")
FFPROBE_TIMEOUT_SECONDS = _env_float("FFPROBE_TIMEOUT_SECONDS", 30.0)

# -----------------------------------------------------------------------------
# HTTP
# -----------------------------------------------------------------------------

ALLOWED_HOSTS = _split_csv(os.getenv("ALLOWED_HOSTS", "*"))

CORS_ORIGINS = _split_csv(
    os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:8000",
    )
)
