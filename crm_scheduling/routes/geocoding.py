"""
Address geocoding proxy.

Lets the booking form resolve an address before submitting, through the same
gateway (provider, cache, timeout) the booking service uses.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import get_current_user
from ..config import GEOCODING_RPM
from ..models import User
from ..rate_limiter import create_rate_limiter
from ..services.geocoding import GeocodeResult, Geocoder, GeocodingFailure, get_geocoder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/geocoding", tags=["Geocoding"])

# Provider quotas are per API key, keep well under them
rate_limit_geocode = create_rate_limiter(
    limit=GEOCODING_RPM,
    window_seconds=60,
    key_prefix="geocode",
    use_ip=True,
)


@router.get("/geocode", response_model=GeocodeResult)
def geocode_address(
    address: str = Query(..., min_length=3, max_length=500),
    current_user: User = Depends(get_current_user),
    geocoder: Geocoder = Depends(get_geocoder),
    _: None = Depends(rate_limit_geocode),
):
    """Resolve an address to coordinates, postal code and city"""
    try:
        return geocoder.geocode(address)
    except GeocodingFailure as e:
        logger.warning(f"⚠️ Geocoding failed for user_id: {current_user.id}: {e}")
        raise HTTPException(status_code=502, detail=str(e)) from e
