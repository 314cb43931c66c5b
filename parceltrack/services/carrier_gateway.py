"""
Carrier gateway: reads shipment lifecycle state from the carrier's order API.

Click & Drop: GET {base}/api/v1/orders/{id1;id2;...}
Authorization: Bearer <token>
Returns a JSON array with one entry per known identifier; unknown identifiers are
omitted, so callers must treat a missing identifier as "unknown", not as an error.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import quote

import httpx

from parceltrack.config import settings
from parceltrack.errors import CarrierUnavailable
from parceltrack.services.http_client import get_with_retry

logger = logging.getLogger(__name__)

IDENTIFIER_SEPARATOR = ";"


@dataclass(frozen=True)
class ShipmentSnapshot:
    """Carrier view of one shipment at the time of the query."""
    shipment_id: str
    printed_on: Optional[str] = None
    manifested_on: Optional[str] = None
    shipped_on: Optional[str] = None
    tracking_number: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "shipmentId": self.shipment_id,
            "printedOn": self.printed_on,
            "manifestedOn": self.manifested_on,
            "shippedOn": self.shipped_on,
            "trackingNumber": self.tracking_number,
        }


def parse_shipment(item) -> ShipmentSnapshot:
    """Build a snapshot from one carrier order resource. Raises CarrierUnavailable when malformed."""
    if not isinstance(item, dict) or item.get("orderIdentifier") in (None, ""):
        raise CarrierUnavailable("Malformed carrier response: entry without orderIdentifier")

    def _opt(key: str) -> Optional[str]:
        value = item.get(key)
        return str(value) if value not in (None, "") else None

    return ShipmentSnapshot(
        shipment_id=str(item["orderIdentifier"]),
        printed_on=_opt("printedOn"),
        manifested_on=_opt("manifestedOn"),
        shipped_on=_opt("shippedOn"),
        tracking_number=_opt("trackingNumber"),
    )


class CarrierGateway(ABC):
    """Interface the reconciler programs against."""

    @abstractmethod
    async def fetch_shipments(self, identifiers: Iterable[str]) -> list[ShipmentSnapshot]:
        """
        Return snapshots for the requested identifiers, possibly a strict subset.

        Raises:
            CarrierUnavailable: network failure, non-2xx response or malformed payload
        """
        ...


class RateLimiter:
    """Spaces calls at least min_interval seconds apart (Click & Drop allows 2 calls/second)."""

    def __init__(self, min_interval: float = 0.5):
        self.min_interval = min_interval
        self._last_call = 0.0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
            self._last_call = time.monotonic()


class ClickDropGateway(CarrierGateway):
    """Click & Drop order API client."""

    def __init__(
        self,
        api_url: str,
        bearer_token: str,
        timeout: float = 15.0,
        max_retries: int = 2,
        batch_limit: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.bearer_token = bearer_token
        self.timeout = timeout
        self.max_retries = max_retries
        self.batch_limit = batch_limit
        self.transport = transport
        self.rate_limiter = rate_limiter or RateLimiter()
        if not bearer_token:
            logger.warning("Click & Drop bearer token not configured")

    async def fetch_shipments(self, identifiers: Iterable[str]) -> list[ShipmentSnapshot]:
        ids = list(dict.fromkeys(str(i) for i in identifiers if i))
        if not ids:
            return []
        if len(ids) > self.batch_limit:
            raise ValueError(f"At most {self.batch_limit} identifiers per carrier call, got {len(ids)}")

        await self.rate_limiter.wait()

        joined = IDENTIFIER_SEPARATOR.join(ids)
        url = f"{self.api_url}/api/v1/orders/{quote(joined, safe='')}"
        headers = {"Authorization": f"Bearer {self.bearer_token}"}
        logger.info("Fetching %s shipment(s) from Click & Drop", len(ids))

        try:
            resp = await get_with_retry(
                url, headers=headers, timeout=self.timeout,
                max_retries=self.max_retries, transport=self.transport,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("Click & Drop request failed: %s", e)
            raise CarrierUnavailable(f"Carrier request failed: {e}") from e

        # unknown identifiers are omitted from a 2xx body; any non-2xx is a carrier failure
        if not resp.is_success:
            logger.warning("Click & Drop API HTTP error status=%s body=%s", resp.status_code, resp.text[:200])
            raise CarrierUnavailable(f"Carrier returned HTTP {resp.status_code}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise CarrierUnavailable("Malformed carrier response: body is not JSON") from e
        if not isinstance(data, list):
            raise CarrierUnavailable("Malformed carrier response: expected a JSON array")

        snapshots = [parse_shipment(item) for item in data]
        logger.info("Click & Drop returned %s of %s shipment(s)", len(snapshots), len(ids))
        return snapshots


class FakeCarrierGateway(CarrierGateway):
    """In-memory carrier for local development and tests."""

    def __init__(self, snapshots: Optional[Iterable[ShipmentSnapshot]] = None):
        self.snapshots: dict[str, ShipmentSnapshot] = {}
        self.should_succeed = True
        self.failure_reason = "Carrier unavailable"
        self.calls: list[list[str]] = []
        for snapshot in snapshots or []:
            self.put(snapshot)

    def put(self, snapshot: ShipmentSnapshot) -> None:
        self.snapshots[snapshot.shipment_id] = snapshot

    def remove(self, shipment_id: str) -> None:
        self.snapshots.pop(shipment_id, None)

    def configure(self, should_succeed: bool = True, failure_reason: str = "Carrier unavailable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    async def fetch_shipments(self, identifiers: Iterable[str]) -> list[ShipmentSnapshot]:
        ids = [str(i) for i in identifiers]
        self.calls.append(ids)
        if not self.should_succeed:
            raise CarrierUnavailable(self.failure_reason)
        return [self.snapshots[i] for i in ids if i in self.snapshots]


_gateway: Optional[CarrierGateway] = None


def get_carrier_gateway() -> CarrierGateway:
    """Process-wide gateway built from settings (CARRIER_MODE=fake selects the in-memory one)."""
    global _gateway
    if _gateway is None:
        if settings.CARRIER_MODE == "fake":
            logger.info("CARRIER_MODE=fake: using in-memory carrier gateway")
            _gateway = FakeCarrierGateway()
        else:
            _gateway = ClickDropGateway(
                api_url=settings.CARRIER_API_URL,
                bearer_token=settings.CARRIER_BEARER_TOKEN,
                timeout=settings.CARRIER_TIMEOUT_SEC,
                max_retries=settings.CARRIER_MAX_RETRIES,
                batch_limit=settings.CARRIER_BATCH_LIMIT,
            )
    return _gateway


def set_carrier_gateway(gateway: Optional[CarrierGateway]) -> None:
    """Replace the process-wide gateway (None rebuilds it from settings on next use)."""
    global _gateway
    _gateway = gateway
