import logging
import requests
from sqlalchemy.exc import SQLAlchemyError
from config import GEO_API_URL, GEO_TIMEOUT
from models.geo_cache import GeoCache

logger = logging.getLogger(__name__)

UNKNOWN_GEO = {"country": "Unknown", "lat": 0, "lon": 0}


def resolve_geo_location(session, ip, url=GEO_API_URL, timeout=GEO_TIMEOUT):
    """
    Resolve country/lat/lon for a bare IP.

    The geo_cache table is checked first; a hit makes no HTTP call. On a miss the
    geo-IP API is queried and a successful answer is persisted. Failures return
    UNKNOWN_GEO, which is never cached so the next cycle retries.

    Call sequentially: the geo-IP API is rate limited.
    """
    cached = session.get(GeoCache, ip)
    if cached is not None:
        return cached.to_dict()

    try:
        resp = requests.get(f"{url}/{ip}", timeout=timeout)
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(f"GeoIP failed for {ip}: {e}")
        return dict(UNKNOWN_GEO)

    if not isinstance(data, dict) or data.get("status") != "success":
        logger.warning(f"GeoIP lookup unsuccessful for {ip}: {data.get('message') if isinstance(data, dict) else data}")
        return dict(UNKNOWN_GEO)

    geo = {"ip": ip, "country": data.get("country"), "lat": data.get("lat"), "lon": data.get("lon")}
    try:
        session.add(GeoCache(**geo))
        session.commit()
    except SQLAlchemyError as e:
        # Another cycle may have cached the same IP meanwhile; the answer is still good
        session.rollback()
        logger.warning(f"Could not cache geo for {ip}: {e}")
    return geo
