"""
Pyth price service for fetching price feeds from the Hermes HTTP API.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import aiohttp
import structlog

from compounder.core.exceptions import OracleError
from compounder.services.compounding.types import PriceBatch, PriceSample


logger = structlog.get_logger(__name__)


def _normalize_feed_id(feed_id: str) -> str:
    feed_id = feed_id.lower()
    return feed_id[2:] if feed_id.startswith("0x") else feed_id


def parse_price_update(feed_id: str, payload: Dict[str, Any]) -> PriceSample:
    """
    Turn a Hermes `latest` response into a PriceSample for one feed.

    Prices and confidence come as integer strings scaled by 10^expo.
    """
    wanted = _normalize_feed_id(feed_id)
    for update in payload.get("parsed") or []:
        if _normalize_feed_id(update.get("id", "")) != wanted:
            continue
        price = update["price"]
        scale = 10 ** int(price["expo"])
        return PriceSample(
            feed_id=feed_id,
            price=int(price["price"]) * scale,
            confidence=int(price["conf"]) * scale,
            timestamp=datetime.fromtimestamp(int(price["publish_time"]), tz=timezone.utc)
        )
    raise OracleError(f"Feed {feed_id} missing from oracle response", {"feed_id": feed_id})


class PythPriceService:
    """Service for fetching prices from Pyth Hermes."""

    def __init__(
        self,
        hermes_url: str = "https://hermes.pyth.network",
        request_timeout_seconds: float = 5.0,
        batch_deadline_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = hermes_url.rstrip("/")
        self.request_timeout = aiohttp.ClientTimeout(total=request_timeout_seconds)
        self.batch_deadline_seconds = batch_deadline_seconds
        self._session = session
        self._owns_session = session is None
        self.logger = logger.bind(service="pyth_price_service")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.request_timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def get_price(self, feed_id: str) -> PriceSample:
        """
        Get the latest price for one feed.

        Raises:
            OracleError: request failed, timed out or the feed was missing
        """
        session = await self._get_session()
        url = f"{self.base_url}/v2/updates/price/latest"
        params = [("ids[]", feed_id), ("parsed", "true")]

        try:
            async with session.get(url, params=params, timeout=self.request_timeout) as response:
                if response.status != 200:
                    body = await response.text()
                    raise OracleError(
                        f"Oracle returned HTTP {response.status}",
                        {"feed_id": feed_id, "status": response.status, "body": body[:200]}
                    )
                payload = await response.json()
        except asyncio.TimeoutError as e:
            raise OracleError("Oracle request timed out", {"feed_id": feed_id}) from e
        except aiohttp.ClientError as e:
            raise OracleError(f"Oracle request failed: {e}", {"feed_id": feed_id}) from e

        try:
            return parse_price_update(feed_id, payload)
        except (KeyError, TypeError, ValueError) as e:
            raise OracleError(f"Malformed oracle response: {e}", {"feed_id": feed_id}) from e

    async def get_prices(self, feed_ids: Iterable[str]) -> PriceBatch:
        """
        Query every feed independently under a shared deadline.

        Feeds that fail or miss the deadline map to None and are listed
        in `failures`; the batch itself never raises.
        """
        feed_ids = list(dict.fromkeys(feed_ids))
        batch = PriceBatch()
        if not feed_ids:
            return batch

        tasks = {feed_id: asyncio.create_task(self.get_price(feed_id)) for feed_id in feed_ids}
        _, pending = await asyncio.wait(tasks.values(), timeout=self.batch_deadline_seconds)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for feed_id, task in tasks.items():
            if task in pending:
                batch.samples[feed_id] = None
                batch.failures[feed_id] = "deadline exceeded"
            elif task.exception() is not None:
                batch.samples[feed_id] = None
                batch.failures[feed_id] = str(task.exception())
            else:
                batch.samples[feed_id] = task.result()

        if batch.failures:
            self.logger.warning(
                "Some price feeds failed",
                failed_feeds=batch.failed_feeds,
                total_feeds=len(feed_ids)
            )
        return batch
