# constants.py
# ------------------------------------------------------------------------------------
#  Fixed values for the Ideogram relay: endpoints, enum values accepted by the
#  upstream API, request defaults and limits, pricing estimates and error codes.
# ------------------------------------------------------------------------------------

API_BASE_URL = "https://api.ideogram.ai"
GENERATE_ENDPOINT = "/v1/ideogram-v3/generate"
EDIT_ENDPOINT = "/edit"
API_KEY_HEADER = "Api-Key"

# "x" separator, not ":" (e.g. "16x9")
ASPECT_RATIOS = (
    "1x1", "16x9", "9x16", "4x3", "3x4", "3x2", "2x3", "4x5",
    "5x4", "1x2", "2x1", "1x3", "3x1", "10x16", "16x10",
)

# fastest -> best
RENDERING_SPEEDS = ("FLASH", "TURBO", "DEFAULT", "QUALITY")
MAGIC_PROMPT_OPTIONS = ("AUTO", "ON", "OFF")
STYLE_TYPES = ("AUTO", "GENERAL", "REALISTIC", "DESIGN", "FICTION")
EDIT_STYLE_TYPES = STYLE_TYPES + ("RENDER_3D", "ANIME")
MODELS = ("V_2", "V_2_TURBO")

PREDICTION_STATUSES = ("queued", "processing", "completed", "failed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
PREDICTION_TYPES = ("generate", "edit")

DEFAULT_ASPECT_RATIO = "1x1"
DEFAULT_NUM_IMAGES = 1
DEFAULT_RENDERING_SPEED = "DEFAULT"
DEFAULT_MAGIC_PROMPT = "AUTO"
DEFAULT_STYLE_TYPE = "AUTO"
DEFAULT_EDIT_MODEL = "V_2"

PROMPT_MAX_LENGTH = 10000
NUM_IMAGES_MIN = 1
NUM_IMAGES_MAX = 8
SEED_MAX = 2147483647
MAX_IMAGE_BYTES = 10 * 1024 * 1024
SUPPORTED_IMAGE_TYPES = ("image/png", "image/jpeg", "image/webp")

# Credit estimates; the API itself returns no cost information.
CREDITS_PER_IMAGE = {"FLASH": 0.04, "TURBO": 0.08, "DEFAULT": 0.1, "QUALITY": 0.2}
EDIT_CREDITS_PER_IMAGE = {"FLASH": 0.06, "TURBO": 0.1, "DEFAULT": 0.12, "QUALITY": 0.24}
USD_PER_CREDIT = 0.05

RETRYABLE_STATUS_CODES = frozenset({429, 500, 503})

RETRY_MAX_ATTEMPTS = 3
RETRY_INITIAL_DELAY = 1.0
RETRY_MAX_DELAY = 10.0
RETRY_BACKOFF_MULTIPLIER = 2.0

# seconds
DEFAULT_REQUEST_TIMEOUT = 30.0
LONG_REQUEST_TIMEOUT = 120.0
IMAGE_DOWNLOAD_TIMEOUT = 60.0

# Prediction queue (seconds)
MAX_QUEUE_SIZE = 100
PREDICTION_TIMEOUT = 300.0
CLEANUP_AGE = 24 * 60 * 60.0
CLEANUP_INTERVAL = 60 * 60.0
PROGRESS_INTERVAL = 5.0
PROGRESS_STEP = 20
PROGRESS_CEILING = 90
PROGRESS_ON_START = 10

# ETA model
ETA_BASE_SECONDS = 30
ETA_PER_EXTRA_IMAGE = 10
ETA_SPEED_MULTIPLIERS = {"FLASH": 0.5, "TURBO": 0.75, "DEFAULT": 1.0, "QUALITY": 2.0}

SERVICE_NAME = "ideogram-relay"
SERVICE_VERSION = "1.0.0"


class ErrorCode:
    INVALID_API_KEY = "INVALID_API_KEY"
    MISSING_API_KEY = "MISSING_API_KEY"

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_PROMPT = "INVALID_PROMPT"
    INVALID_ASPECT_RATIO = "INVALID_ASPECT_RATIO"
    INVALID_IMAGE = "INVALID_IMAGE"
    INVALID_MASK = "INVALID_MASK"
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"

    API_ERROR = "API_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"

    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"

    PREDICTION_NOT_FOUND = "PREDICTION_NOT_FOUND"
    PREDICTION_ALREADY_COMPLETED = "PREDICTION_ALREADY_COMPLETED"
    QUEUE_FULL = "QUEUE_FULL"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    CANCELLED = "CANCELLED"

    STORAGE_ERROR = "STORAGE_ERROR"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
