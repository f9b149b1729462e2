import logging
import uuid
from typing import Optional

import httpx

from src.core.orders.models import FinalizedOrder

logger = logging.getLogger(__name__)


class OrderSubmissionError(Exception):
    pass


class InMemoryOrderSink:
    """Accepts every order and keeps it in submission order."""

    def __init__(self) -> None:
        self._orders: dict[str, FinalizedOrder] = {}

    async def submit(self, order: FinalizedOrder) -> str:
        order_id = f"ord_{uuid.uuid4().hex[:12]}"
        self._orders[order_id] = order.model_copy(deep=True)
        return order_id

    def submitted(self) -> list[tuple[str, FinalizedOrder]]:
        return list(self._orders.items())

    async def close(self) -> None:
        return None


class HttpOrderSink:
    """Posts finalized orders to the order-management service."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url.strip():
            raise RuntimeError("AUTOMATION_ORDER_SINK_URL_REQUIRED")
        self._url = url.strip()
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def submit(self, order: FinalizedOrder) -> str:
        try:
            response = await self._client.post(self._url, json=order.model_dump(mode="json"))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "automation.order_sink.submission_failed",
                extra={
                    "extra_fields": {
                        "automation_id": order.automation_id,
                        "error": str(exc),
                    }
                },
            )
            raise OrderSubmissionError("ORDER_SUBMISSION_FAILED") from exc
        order_id = response.json().get("order_id")
        if not order_id:
            raise OrderSubmissionError("ORDER_SUBMISSION_MISSING_ORDER_ID")
        return str(order_id)

    async def close(self) -> None:
        await self._client.aclose()
