import asyncio
import logging
from typing import List, Sequence

import aiohttp

from .errors import NetworkError, VerificationRejected
from .models import TransferCandidate, TransferEvent

logger = logging.getLogger(__name__)


class IndexerVerifier:
    """Confirms candidates with the external verification service (HTTP 200 = accepted)."""

    def __init__(self, session: aiohttp.ClientSession, url: str, token: str = "",
                 timeout: float = 15.0, concurrency: int = 8):
        self._session = session
        self.url = url
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["X-Algo-API-Token"] = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self.concurrency = max(1, concurrency)

    async def _submit(self, c: TransferCandidate) -> None:
        try:
            async with self._session.request("POST", self.url, json=c.to_payload(),
                                             headers=self._headers, timeout=self._timeout) as resp:
                if resp.status != 200:
                    body = await resp.read()
                    raise VerificationRejected(resp.status, body.decode("utf-8", errors="replace"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"verify POST failed: {e!r}") from e

    async def verify(self, c: TransferCandidate) -> bool:
        try:
            await self._submit(c)
        except VerificationRejected as e:
            logger.info(f"[verify] rejected app={c.contract_id} token={c.token_id} (HTTP {e.status})")
            return False
        except NetworkError as e:
            logger.warning(f"[verify] unreachable for app={c.contract_id} token={c.token_id}: {e}")
            return False
        return True

    async def verify_all(self, candidates: Sequence[TransferCandidate]) -> List[TransferEvent]:
        """Verify every candidate (bounded fan-out) and keep the accepted ones in input order."""
        sem = asyncio.Semaphore(self.concurrency)

        async def task(c):
            async with sem:
                return c, await self.verify(c)

        pairs = await asyncio.gather(*[task(c) for c in candidates])
        return [TransferEvent.from_candidate(c) for c, ok in pairs if ok]
