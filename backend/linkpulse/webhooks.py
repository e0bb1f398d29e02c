"""
Fire-and-forget webhook delivery.
trigger() schedules delivery on the running event loop and returns at once;
retries, backoff and failures never reach the caller.
"""

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .database import SessionLocal
from .models import Webhook
from .utils import utc_now
from .logging_config import get_logger

logger = get_logger(__name__)

LINK_CLICKED = "link.clicked"
FRAUD_DETECTED = "fraud.detected"


@dataclass(frozen=True)
class WebhookTarget:
    """Detached copy of a webhook row, safe to use after the session closes."""

    id: int
    url: str
    secret: str
    max_retries: int
    retry_delay_seconds: float


def sign_payload(body: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of the request body."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class WebhookDispatcher:
    """Delivers owner webhooks in the background."""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
        )
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()

    def trigger(self, owner_id: Optional[str], event: str, data: Dict[str, Any]) -> None:
        """Schedule delivery of `event` to every matching webhook of the owner."""
        if not owner_id:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropping webhook event {event} for {owner_id}")
            return

        task = loop.create_task(self._dispatch(owner_id, event, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _dispatch(self, owner_id: str, event: str, data: Dict[str, Any]) -> None:
        try:
            targets = await asyncio.to_thread(self._active_webhooks, owner_id, event)
        except Exception as e:
            logger.error(f"Failed to load webhooks for {owner_id}: {e}")
            return

        if not targets:
            return

        payload = {
            "event": event,
            "data": data,
            "timestamp": utc_now().isoformat(),
        }
        await asyncio.gather(
            *(self.deliver(target, payload) for target in targets),
            return_exceptions=True,
        )

    def _active_webhooks(self, owner_id: str, event: str) -> List[WebhookTarget]:
        db = self._session_factory()
        try:
            rows = db.query(Webhook).filter(
                Webhook.owner_id == owner_id,
                Webhook.active == True  # noqa: E712
            ).all()
            return [
                WebhookTarget(
                    id=row.id,
                    url=row.url,
                    secret=row.secret,
                    max_retries=(
                        row.max_retries
                        if row.max_retries is not None
                        else settings.WEBHOOK_MAX_RETRIES
                    ),
                    retry_delay_seconds=(
                        row.retry_delay_seconds
                        if row.retry_delay_seconds is not None
                        else settings.WEBHOOK_RETRY_DELAY_SECONDS
                    ),
                )
                for row in rows
                if event in (row.events or [])
            ]
        finally:
            db.close()

    async def deliver(self, target: WebhookTarget, payload: Dict[str, Any]) -> bool:
        """POST the payload, retrying with linear backoff. Returns delivery success."""
        body = json.dumps(payload, default=str)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, target.secret),
            "X-Webhook-Event": str(payload.get("event")),
        }

        attempts = max(1, target.max_retries)
        async with self._client_factory() as client:
            for attempt in range(1, attempts + 1):
                try:
                    response = await client.post(target.url, content=body, headers=headers)
                    response.raise_for_status()
                    await asyncio.to_thread(self._record_delivery, target.id, False)
                    return True
                except httpx.HTTPError as e:
                    logger.warning(f"Webhook delivery failed for {target.id} (attempt {attempt}): {e}")
                    if attempt < attempts:
                        await self._sleep(target.retry_delay_seconds * attempt)

        await asyncio.to_thread(self._record_delivery, target.id, True)
        return False

    def _record_delivery(self, webhook_id: int, failed: bool) -> None:
        db = self._session_factory()
        try:
            values = {
                Webhook.total_deliveries: Webhook.total_deliveries + 1,
                Webhook.last_delivery_at: utc_now(),
            }
            if failed:
                values[Webhook.failed_deliveries] = Webhook.failed_deliveries + 1
            db.query(Webhook).filter(Webhook.id == webhook_id).update(values, synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Failed to record delivery stats for webhook {webhook_id}: {e}")
        finally:
            db.close()


webhook_dispatcher = WebhookDispatcher()
