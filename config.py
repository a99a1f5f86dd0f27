import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    FLASK_PORT = int(os.getenv("FLASK_PORT", 5000))
    AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://auth-service:8080")
    # Database Config
    DB_USER = os.getenv("POSTGRES_USER", "fleet")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "fleet")
    DB_HOST = os.getenv("POSTGRES_HOST", "localhost")
    DB_NAME = os.getenv("POSTGRES_DB", "fleetdb")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        f"postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Device-facing shared secret
    DEVICE_API_KEY = os.getenv("DEVICE_API_KEY")
    ADMIN_USER_IDS = [u.strip() for u in os.getenv("ADMIN_USER_IDS", "").split(",") if u.strip()]
    # Command queue / liveness
    OFFLINE_AFTER_SECONDS = int(os.getenv("OFFLINE_AFTER_SECONDS", 300))
    COMMAND_DRAIN_LIMIT = int(os.getenv("COMMAND_DRAIN_LIMIT", 10))
    COMMAND_LIST_LIMIT = int(os.getenv("COMMAND_LIST_LIMIT", 100))
    BROADCAST_DELIVERY = os.getenv("BROADCAST_DELIVERY", "per_device") # per_device | first_claim
    # Geolocation enrichment
    GEOIP_ENABLED = os.getenv("GEOIP_ENABLED", "true").lower() in ("1", "true", "yes")
    GEOIP_URL = os.getenv("GEOIP_URL", "http://ip-api.com/json/{ip}")
    GEOIP_TIMEOUT = float(os.getenv("GEOIP_TIMEOUT", 3))
