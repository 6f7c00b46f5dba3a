from typing import Optional

import httpx
from loguru import logger

from ..core.settings import settings


class DonationSink:
    """Posts donated tokens to the donation endpoint."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.donation_sink_url

    async def post(self, token: str) -> bool:
        timeout = httpx.Timeout(
            settings.donation_timeout, connect=settings.donation_connect_timeout
        )
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(self.url, json={"token": token})
            logger.debug(f"Donation sink answered {resp.status_code}")
            return resp.is_success
        except httpx.HTTPError as e:
            # the token is gone either way, there is nothing to roll back
            logger.warning(f"Donation sink {self.url} not reachable: {e}")
            return False
