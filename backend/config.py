"""Application-wide configuration constants."""

from pathlib import Path

# --- Identity ---
APP_NAME = "localsend-fetch"
CONFIG_DIR = Path.home() / ".config" / APP_NAME

# --- Discovery ---
MULTICAST_GROUP = "224.0.0.167"
LOCALSEND_PORT = 53317
PROTOCOL_VERSION = "2.1"
DISCOVERY_TIMEOUT = 5  # seconds
ANNOUNCE_INTERVAL = 2  # seconds
MULTICAST_TTL = 1

# --- Control API ---
API_HOST = "127.0.0.1"
API_PORT = 8765

# --- Download ---
PREPARE_DOWNLOAD_PATH = "/api/localsend/v2/prepare-download"
DOWNLOAD_PATH = "/api/localsend/v2/download"
CHUNK_SIZE = 131072  # 128 KB
HTTP_TIMEOUT = 30  # seconds, per request connect/read
USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"

# --- Storage ---
DEFAULT_SAVE_DIR = str(
    Path.home() / "Downloads" / "LocalSend"
)
