import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_PATH = os.getenv("DATABASE_PATH", "dispatch.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "true").lower() in ("1", "true", "yes", "on")

# Access tokens (issued by the external auth layer, verified here)
JWT_SECRET = os.getenv("JWT_SECRET", "emergency-connect-secret-key")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

# Push channel
WS_AUTH_CLOSE_CODE = int(os.getenv("WS_AUTH_CLOSE_CODE", "1008"))
WS_REPLACED_CLOSE_CODE = int(os.getenv("WS_REPLACED_CLOSE_CODE", "4000"))

# Proximity filtering: planar radius in raw degrees (~10km at 0.1)
NEARBY_RADIUS_DEGREES = float(os.getenv("NEARBY_RADIUS_DEGREES", "0.1"))
AMBULANCE_SPEED_KMH = float(os.getenv("AMBULANCE_SPEED_KMH", "40"))

# Connection Session defaults (seconds)
RECONNECT_BASE_INTERVAL = float(os.getenv("RECONNECT_BASE_INTERVAL", "1.0"))
RECONNECT_MAX_INTERVAL = float(os.getenv("RECONNECT_MAX_INTERVAL", "30.0"))
RECONNECT_DECAY = float(os.getenv("RECONNECT_DECAY", "1.5"))
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", "30.0"))
CONNECTION_TIMEOUT = float(os.getenv("CONNECTION_TIMEOUT", "10.0"))
