"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

# --- Identity ---
APP_ID = "dropline-v1"
DEVICE_NAME = os.environ.get("DROPLINE_DEVICE_NAME", platform.node())
DEVICE_TYPE = "desktop"

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = int(os.environ.get("DROPLINE_API_PORT", "8765"))

# Serve the signaling/relay hub from this agent as well
HUB_ENABLED = os.environ.get("DROPLINE_HUB", "1") == "1"
SIGNAL_URL = os.environ.get(
    "DROPLINE_SIGNAL_URL", f"ws://127.0.0.1:{API_PORT}/signal"
)
RECONNECT_DELAY = 2  # seconds

# Address advertised to peers for direct connections (None = autodetect)
DIRECT_HOST = os.environ.get("DROPLINE_DIRECT_HOST") or None
DIRECT_PORT_MIN = 50000
DIRECT_PORT_MAX = 65000
DIRECT_CONNECT_TIMEOUT = 5  # seconds

# --- Transfer ---
DIRECT_CHUNK_SIZE = 64 * 1024  # 64 KB
RELAY_CHUNK_SIZE = 256 * 1024  # 256 KB
BUFFER_HIGH_WATER = 16 * 1024 * 1024  # 16 MB
SEND_BUFFER_LIMIT = 64 * 1024 * 1024  # adapters refuse frames above this
YIELD_INTERVAL = 1024 * 1024  # 1 MB
SPEED_LIMIT = 0  # bytes/sec, 0 = unlimited
BACKPRESSURE_POLL = 0.01  # seconds
SEND_RETRY_DELAY = 0.05  # seconds

PROGRESS_INTERVAL = 0.2  # seconds
SPEED_SMOOTHING = 0.7

CONSOLIDATE_THRESHOLD = 50 * 1024 * 1024  # 50 MB
OFFER_TIMEOUT = 60  # seconds
RECEIVE_STALL_TIMEOUT = 30  # seconds

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "DROPLINE_SAVE_DIR", str(Path.home() / "Downloads" / "Dropline")
)
