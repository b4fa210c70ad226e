import logging
import math
from typing import Optional, Tuple

import httpx

logger = logging.getLogger("ambulance_console")

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
USER_AGENT = "RapidCare Ambulance App/1.0 (contact@rapidcare.com)"

# Mock coordinates are spread around this origin
ORIGIN_LAT = 6.5244
ORIGIN_LNG = 3.3792


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def location_hash(location: str) -> int:
    """Signed 32-bit string hash (h * 31 + c), stable across runs."""
    h = 0
    for ch in location:
        h = _int32(_int32(h << 5) - h + ord(ch))
    return h


def mock_coordinates(location: str) -> Tuple[float, float]:
    h = location_hash(location)
    lat = ORIGIN_LAT + math.fmod(h, 2000) / 20000
    lng = ORIGIN_LNG + math.fmod(h >> 10, 2000) / 20000
    return lat, lng


async def geocode_with_nominatim(address: str, client: Optional[httpx.AsyncClient] = None) -> Optional[Tuple[float, float]]:
    """Look an address up on OpenStreetMap. Any failure yields None."""
    params = {"format": "json", "q": address, "limit": 1}
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10)
    try:
        response = await client.get(NOMINATIM_URL, params=params, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
        results = response.json()
        if results:
            return float(results[0]["lat"]), float(results[0]["lon"])
        return None
    except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
        logger.error(f"Nominatim geocoding error: {e}")
        return None
    finally:
        if owns_client:
            await client.aclose()


def reverse_geocode(lat: float, lng: float) -> str:
    return f"{lat:.4f}, {lng:.4f}"
