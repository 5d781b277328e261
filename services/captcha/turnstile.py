"""
Cloudflare Turnstile verification for registration.

Disabled when MOBI_TURNSTILE_SECRET_KEY is unset. A network failure counts as a
pass; a non-200 answer or a rejected token does not.
"""
import logging
from typing import Optional

import aiohttp

from services.config import config

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


def is_turnstile_enabled() -> bool:
    return bool(config.TURNSTILE_SECRET_KEY)


async def verify_turnstile(token: Optional[str], remote_ip: Optional[str] = None) -> bool:
    """
    Verify a Turnstile token.

    Args:
        token: token submitted by the frontend widget
        remote_ip: client IP, passed along when known

    Returns:
        bool: whether the check passed
    """
    if not is_turnstile_enabled():
        logger.debug("[Turnstile] secret key not configured, skipping")
        return True

    if not token:
        logger.warning("⚠️ [Turnstile] empty token")
        return False

    data = {"secret": config.TURNSTILE_SECRET_KEY, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip

    try:
        timeout = aiohttp.ClientTimeout(total=5)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(TURNSTILE_VERIFY_URL, data=data) as resp:
                if resp.status != 200:
                    logger.error(f"❌ [Turnstile] API returned {resp.status}")
                    return False
                result = await resp.json()
    except aiohttp.ClientError as e:
        logger.error(f"❌ [Turnstile] request failed: {e}")
        return True

    if result.get("success"):
        logger.info(f"✅ [Turnstile] passed (IP: {remote_ip or 'unknown'})")
        return True
    logger.warning(f"❌ [Turnstile] rejected: {result.get('error-codes', [])}")
    return False
