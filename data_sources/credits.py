import logging
import requests
from config import CREDITS_API_URL, CREDITS_TIMEOUT

logger = logging.getLogger(__name__)

def get_credits(url=CREDITS_API_URL, timeout=CREDITS_TIMEOUT):
    """
    Fetch pod credits in one bulk request and map them by pod_id.
    Any failure (network, HTTP status, malformed JSON) yields an empty mapping;
    callers treat a missing pod as 0 credits.
    """
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Failed to fetch credits from '{url}': {e}")
        return {}

    credits_map = {}
    items = data.get('pods_credits') if isinstance(data, dict) else None
    if not isinstance(items, list):
        logger.warning(f"Unexpected credits payload from '{url}'")
        return credits_map

    for item in items:
        if not isinstance(item, dict):
            continue
        pod_id = item.get('pod_id')
        credits = item.get('credits')
        if not isinstance(pod_id, str) or not pod_id:
            continue
        # bool is an int subclass but never a credit balance
        if isinstance(credits, (int, float)) and not isinstance(credits, bool):
            credits_map[pod_id] = int(credits)

    logger.info(f"Fetched credits for {len(credits_map)} pods")
    return credits_map
