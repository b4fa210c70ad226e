import os
from dotenv import load_dotenv

load_dotenv()

# ============================================
# Remote Dispatch API
# ============================================
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8080/api")
WS_URL = os.getenv("WS_URL", "ws://localhost:8080/ws/live-updates")

# Ceiling for every gateway call; a timed-out call is a NetworkError
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "30"))

# ============================================
# Live Feed Timing (seconds)
# ============================================
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "30"))
RECONNECT_DELAY = float(os.getenv("RECONNECT_DELAY", "5"))
ENABLE_WEBSOCKET = os.getenv("ENABLE_WEBSOCKET", "true").lower() in ("1", "true", "yes")
FEED_PAGE_SIZE = int(os.getenv("FEED_PAGE_SIZE", "100"))

# ============================================
# Session Storage
# ============================================
SESSION_STORE_PATH = os.getenv(
    "SESSION_STORE_PATH",
    os.path.join(os.path.expanduser("~"), ".ambulance_console", "session.json"),
)

TOKEN_KEY = "token"
USER_KEY = "user"
ROLE_KEY = "role"
LEGACY_CREDENTIAL_KEYS = ("authToken", "userRole")

# ============================================
# Console Views
# ============================================
DEFAULT_PAGE_SIZE = 10
USER_DETAILS_PAGE_SIZE = 5
RECENT_REQUESTS_LIMIT = 5
NOTIFICATION_HISTORY = int(os.getenv("NOTIFICATION_HISTORY", "50"))

# ============================================
# Logging
# ============================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
