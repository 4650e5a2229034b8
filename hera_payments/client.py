"""Client-side status polling for a pushed payment.

Used by the storefront backend and by operators from a shell: after an STK
push the buyer has a couple of minutes to enter their PIN, so the status
endpoint is polled at a fixed interval until it reports a terminal outcome.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
import httpx
from hera_core import get_logger

logger = get_logger(__name__)


class PollOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    TIMEOUT = "TIMEOUT"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    data: Optional[Dict[str, Any]] = None


class StatusPoller:
    def __init__(
        self,
        base_url: str,
        token: str,
        interval: float = 30.0,
        max_attempts: int = 20,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._transport = transport
        self.timeout = timeout

    async def _fetch(self, client: httpx.AsyncClient, checkout_id: str) -> Optional[Dict[str, Any]]:
        try:
            resp = await client.get(f"/payment-status/{checkout_id}")
        except httpx.TransportError as e:
            logger.warning(f"Status check failed for {checkout_id}: {e}")
            return None
        if resp.is_server_error:
            logger.warning(f"Status check for {checkout_id} returned {resp.status_code}")
            return None
        # Unknown checkout id or bad token will not fix itself
        resp.raise_for_status()
        return resp.json().get("data") or {}

    async def wait(self, checkout_id: str) -> PollResult:
        """Poll until SUCCESS, FAILED or expiry; TIMEOUT after max_attempts checks."""
        last = None
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            for attempt in range(1, self.max_attempts + 1):
                data = await self._fetch(client, checkout_id)
                if data is not None:
                    last = data
                    status = data.get("status")
                    if status == PollOutcome.SUCCESS.value:
                        return PollResult(PollOutcome.SUCCESS, attempt, data)
                    if status == PollOutcome.FAILED.value:
                        return PollResult(PollOutcome.FAILED, attempt, data)
                    if data.get("expired"):
                        return PollResult(PollOutcome.EXPIRED, attempt, data)
                if attempt < self.max_attempts:
                    await self._sleep(self.interval)

        logger.info(f"Gave up polling {checkout_id} after {self.max_attempts} attempts")
        return PollResult(PollOutcome.TIMEOUT, self.max_attempts, last)
