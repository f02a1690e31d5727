"""
Security Constants

Upload allow-lists, size bounds and format mappings for both media kinds.
"""

KB = 1024
MB = 1024 * 1024

MAX_FILENAME_LENGTH = 255

# Request ID header
REQUEST_ID_HEADER = "X-Request-ID"

# Extensions that are never accepted, whatever media type is declared
DANGEROUS_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".scr", ".pif", ".com",
    ".js", ".vbs", ".sh", ".php",
})

# -----------------------------------------------------------------------------
# Images
# -----------------------------------------------------------------------------

IMAGE_MIN_SIZE = 100
IMAGE_MAX_SIZE = 50 * MB

IMAGE_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/avif",
    "image/tiff",
    "image/bmp",
    "image/gif",
    "image/heic",
    "image/heif",
})

IMAGE_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".webp", ".avif",
    ".tiff", ".tif", ".bmp", ".gif", ".heic", ".heif",
})

# Declared media type -> extensions it may arrive with
IMAGE_MIME_EXTENSIONS = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/jpg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/webp": (".webp",),
    "image/avif": (".avif",),
    "image/tiff": (".tiff", ".tif"),
    "image/bmp": (".bmp",),
    "image/gif": (".gif",),
    "image/heic": (".heic", ".heif"),
    "image/heif": (".heif", ".heic"),
}

# Source media type -> output formats it may be converted to
IMAGE_CONVERSION_MATRIX = {
    "image/jpeg": ("jpeg", "png", "webp", "avif"),
    "image/jpg": ("jpeg", "png", "webp", "avif"),
    "image/png": ("jpeg", "png", "webp", "avif"),
    "image/webp": ("jpeg", "png", "webp", "avif"),
    "image/avif": ("jpeg", "png", "webp", "avif"),
    "image/bmp": ("jpeg", "png", "webp"),
    "image/gif": ("jpeg", "png", "webp"),
    "image/tiff": ("jpeg", "png"),
    "image/heic": ("jpeg", "png"),
    "image/heif": ("jpeg", "png"),
}

IMAGE_SIGNATURE_WINDOW = 1 * KB

# -----------------------------------------------------------------------------
# Videos
# -----------------------------------------------------------------------------

VIDEO_MIN_SIZE = 1 * KB
VIDEO_MAX_SIZE = 500 * MB

VIDEO_MIME_TYPES = frozenset({
    "video/mp4",
    "video/mpeg",
    "video/quicktime",
    "video/x-msvideo",
    "video/avi",
    "video/webm",
    "video/x-ms-wmv",
    "video/3gpp",
    "video/x-flv",
    "video/x-matroska",
    "video/x-m4v",
})

VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm",
    ".mkv", ".m4v", ".3gp", ".mpeg", ".mpg",
})

VIDEO_MIME_EXTENSIONS = {
    "video/mp4": (".mp4", ".m4v"),
    "video/mpeg": (".mpeg", ".mpg"),
    "video/quicktime": (".mov",),
    "video/x-msvideo": (".avi",),
    "video/avi": (".avi",),
    "video/webm": (".webm",),
    "video/x-ms-wmv": (".wmv",),
    "video/3gpp": (".3gp",),
    "video/x-flv": (".flv",),
    "video/x-matroska": (".mkv",),
    "video/x-m4v": (".m4v",),
}

VIDEO_SIGNATURE_WINDOW = 2 * KB

VIDEO_MIN_DURATION = 1.0
VIDEO_MAX_DURATION = 7200.0  # 2 hours
VIDEO_MIN_WIDTH = 240
VIDEO_MIN_HEIGHT = 180
VIDEO_MAX_WIDTH = 4096
VIDEO_MAX_HEIGHT = 2160
VIDEO_MIN_ASPECT_RATIO = 0.1
VIDEO_MAX_ASPECT_RATIO = 10.0
