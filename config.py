import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///device.sqlite3")
PROXY_URL = os.getenv("PROXY_URL", "http://localhost:3000/api").rstrip("/")
PHOTO_SERVER_URL = os.getenv("PHOTO_SERVER_URL", "http://localhost:8004/api").rstrip("/")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
HOST = os.getenv("HOST", "0.0.0.0"); PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGIN = os.getenv("ALLOWED_ORIGIN", "*")

EPICOR_URLS = {
    "test": os.getenv("EPICOR_URL_TEST", "https://epictestapp.samator.com/KineticTest2/api/v2/efx/SGI/SMTTruckCheckApp"),
    "pilot": os.getenv("EPICOR_URL_PILOT", "https://epicprodapp.samator.com/KineticPilot/api/v2/efx/SGI/SMTTruckCheckApp"),
    "live": os.getenv("EPICOR_URL_LIVE", "https://epicprodapp.samator.com/Kinetic/api/v2/efx/SGI/SMTTruckCheckApp"),
    "dummy": PHOTO_SERVER_URL + "/dummy",
}
EPICOR_API_KEY = os.getenv("EPICOR_API_KEY", "")

# bcrypt hash of the operator secret; force login is disabled while empty
FORCE_LOGIN_SECRET_HASH = os.getenv("FORCE_LOGIN_SECRET_HASH", "")

PHOTO_REQUIRED_SITES = [s.strip().upper() for s in os.getenv("PHOTO_REQUIRED_SITES", "").split(",") if s.strip()]

SESSION_DURATION_HOURS = 8.5
EXTENSION_WINDOW_MIN = 60
ACTIVITY_THROTTLE_MIN = 5
SESSION_WARNING_MIN = 10
SESSION_CHECK_SEC = 60
TOKEN_CHECK_SEC = 5 * 60

PHOTO_MAX_DIMENSION = 800
PHOTO_QUALITY = 70

SCAN_HISTORY = 10
AUTO_ADVANCE_SEC = 1.5
POOR_ACCURACY_M = 100
