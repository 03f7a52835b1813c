import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./crm_scheduling.db")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Frontend origins allowed by CORS
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

# Geocoding Configuration
# "nominatim" (OpenStreetMap, no key) or "mapbox" (requires MAPBOX_API_KEY)
GEOCODING_PROVIDER = os.getenv("GEOCODING_PROVIDER", "nominatim").lower()
NOMINATIM_BASE_URL = os.getenv("NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org").rstrip(
    "/"
)
# Required by Nominatim policy (include a way to contact you)
NOMINATIM_USER_AGENT = os.getenv("NOMINATIM_USER_AGENT", "CRMScheduling/1.0 (ops@example.com)")
MAPBOX_API_KEY = os.getenv("MAPBOX_API_KEY")
MAPBOX_BASE_URL = os.getenv("MAPBOX_BASE_URL", "https://api.mapbox.com").rstrip("/")
# ISO country code used to bias lookups ("fr" for the field teams)
GEOCODING_COUNTRY = os.getenv("GEOCODING_COUNTRY", "fr")
# Hard upper bound for a single provider call; booking creation never waits longer
GEOCODING_TIMEOUT_SECONDS = float(os.getenv("GEOCODING_TIMEOUT_SECONDS", "5.0"))
GEOCODING_CACHE_SECONDS = int(os.getenv("GEOCODING_CACHE_SECONDS", "86400"))
GEOCODING_RPM = int(os.getenv("GEOCODING_RPM", "60"))
