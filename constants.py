import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))

# Only WebSocket upgrades whose Origin header matches exactly are accepted
ALLOWED_ORIGIN = os.getenv("ALLOWED_ORIGIN", "http://localhost:8080")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 256))
MAX_FRAME_BYTES = int(os.getenv("MAX_FRAME_BYTES", 500 * 1024 * 1024))
ROOM_IDLE_GRACE_SECONDS = float(os.getenv("ROOM_IDLE_GRACE_SECONDS", 30))
ROOM_ID_LENGTH = int(os.getenv("ROOM_ID_LENGTH", 8))
