import logging

import httpx

from panelauth.core import config

logger = logging.getLogger(__name__)

SITEVERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


async def verify_turnstile(token: str, remote_ip: str | None = None) -> bool:
    data = {"secret": config.TURNSTILE_SECRET_KEY, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(SITEVERIFY_URL, data=data)
            resp.raise_for_status()
            return bool(resp.json().get("success"))
    except httpx.HTTPError:
        logger.exception("Turnstile verification request failed")
        return False
