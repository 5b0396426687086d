"""
Webhook event processing on top of the event ledger.

Implements:
- Claim-before-effect deduplication through the event ledger
- Event type routing to registered handlers, per provider or shared
- Bounded handler execution with a fresh database session
- Manual reprocessing of failed events from their stored payload
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from processing_core.core.event_ledger import ClaimResult, EventLedger, EventLedgerError
from processing_core.database.models import Entitlement
from processing_core.integrations.signatures import WebhookEvent
from processing_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[WebhookEvent, AsyncSession], Awaitable[Optional[Dict[str, Any]]]]

# Payment confirmations that grant purchased access
ENTITLEMENT_EVENTS: Tuple[Tuple[str, str], ...] = (
    ("stripe", "checkout.session.completed"),
    ("stripe", "payment_intent.succeeded"),
    ("paystack", "charge.success"),
    ("flutterwave", "charge.completed"),
)


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


class WebhookHandler:
    """
    Handles verified provider events exactly once per (provider, event_id).

    Features:
    - Ledger claim before any side effect; replays are acknowledged, not rerun
    - Event type routing to appropriate handlers
    - Failed events stay in the ledger for replay or manual reprocessing
    """

    def __init__(
        self,
        ledger: EventLedger,
        session_factory: async_sessionmaker[AsyncSession],
        handler_timeout_seconds: float = 30.0,
    ):
        """
        Initialize webhook handler.

        Args:
            ledger: Event ledger used to claim events
            session_factory: Factory for handler sessions
            handler_timeout_seconds: Bound on a single handler invocation
        """
        self.ledger = ledger
        self.session_factory = session_factory
        self.handler_timeout_seconds = handler_timeout_seconds
        self.event_handlers: Dict[Tuple[Optional[str], str], EventHandler] = {}

    def register_handler(
        self, event_type: str, handler: EventHandler, provider: Optional[str] = None
    ) -> None:
        """
        Register a handler for an event type.

        Args:
            event_type: Provider event type (e.g., 'charge.success')
            handler: Async callable taking (event, db)
            provider: Restrict to one provider; None matches any provider

        Example:
            async def handle_charge(event, db):
                ...

            handler.register_handler('charge.success', handle_charge, provider='paystack')
        """
        self.event_handlers[(provider, event_type)] = handler
        logger.info("webhook_handler_registered", event_type=event_type, provider=provider)

    def _resolve(self, provider: str, event_type: str) -> Optional[EventHandler]:
        return self.event_handlers.get((provider, event_type)) or self.event_handlers.get(
            (None, event_type)
        )

    async def process(self, event: WebhookEvent) -> Dict[str, Any]:
        """
        Claim and process a verified event.

        Args:
            event: Verified provider event

        Returns:
            Dict[str, Any]: Result with status success, duplicate, escalated
                or no_handler

        Raises:
            WebhookError: If the handler fails (the entry is marked failed first)
        """
        try:
            claim = await self.ledger.claim(
                provider=event.provider,
                event_id=event.event_id,
                event_type=event.event_type,
                signature_verified=event.signature_verified,
                payload=event.payload,
            )
        except EventLedgerError as e:
            raise WebhookError(str(e)) from e

        return await self._run_claimed(event, claim)

    async def reprocess(self, row_id: int) -> Dict[str, Any]:
        """
        Reprocess a failed ledger entry from its stored payload.

        Args:
            row_id: Ledger row id

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            WebhookError: If the entry is missing or the handler fails
        """
        try:
            claim = await self.ledger.reprocess(row_id)
        except EventLedgerError as e:
            raise WebhookError(str(e)) from e

        entry = await self.ledger.get_entry(row_id)
        if entry is None:
            raise WebhookError(f"Ledger entry {row_id} not found")

        event = WebhookEvent(
            provider=entry.provider,
            event_id=entry.event_id,
            event_type=entry.event_type,
            payload=dict(entry.payload or {}),
            signature_verified=entry.signature_verified,
        )
        return await self._run_claimed(event, claim)

    async def _run_claimed(self, event: WebhookEvent, claim: ClaimResult) -> Dict[str, Any]:
        start_time = time.time()
        base = {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "provider": event.provider,
            "row_id": claim.row_id,
        }

        if not claim.should_process:
            status = "escalated" if claim.escalated else "duplicate"
            logger.info(
                "webhook_event_not_processed",
                status=status,
                ledger_status=claim.status,
                **base,
            )
            metrics.record_webhook_event(
                event.provider, event.event_type, status, time.time() - start_time
            )
            return {**base, "status": status, "ledger_status": claim.status}

        if claim.row_id is None:
            raise WebhookError(
                f"Ledger claim for event {event.event_id} returned no row id"
            )

        handler = self._resolve(event.provider, event.event_type)
        if handler is None:
            logger.warning("webhook_no_handler", **base)
            await self.ledger.mark_processed(claim.row_id)
            metrics.record_webhook_event(
                event.provider, event.event_type, "no_handler", time.time() - start_time
            )
            return {
                **base,
                "status": "no_handler",
                "message": f"No handler registered for event type: {event.event_type}",
            }

        try:
            async with self.session_factory() as db:
                result = await asyncio.wait_for(
                    handler(event, db), timeout=self.handler_timeout_seconds
                )
                await db.commit()
        except asyncio.TimeoutError as e:
            reason = f"Handler timed out after {self.handler_timeout_seconds}s"
            await self._fail(claim.row_id, reason, event, start_time)
            raise WebhookError(f"Failed to process event {event.event_id}: {reason}") from e
        except Exception as e:
            reason = str(e) or type(e).__name__
            await self._fail(claim.row_id, reason, event, start_time)
            raise WebhookError(f"Failed to process event {event.event_id}: {reason}") from e

        await self.ledger.mark_processed(claim.row_id)

        duration = time.time() - start_time
        logger.info("webhook_event_processed_successfully", duration_seconds=duration, **base)
        metrics.record_webhook_event(event.provider, event.event_type, "success", duration)

        return {**base, "status": "success", "result": result}

    async def _fail(
        self, row_id: int, reason: str, event: WebhookEvent, start_time: float
    ) -> None:
        logger.error(
            "webhook_event_processing_failed",
            row_id=row_id,
            event_id=event.event_id,
            event_type=event.event_type,
            provider=event.provider,
            error=reason,
        )
        await self.ledger.mark_failed(row_id, reason)
        metrics.record_webhook_event(
            event.provider, event.event_type, "failed", time.time() - start_time
        )


def _event_object(event: WebhookEvent) -> Dict[str, Any]:
    data = event.payload.get("data")
    if not isinstance(data, dict):
        return {}
    if event.provider == "stripe":
        obj = data.get("object")
        return obj if isinstance(obj, dict) else {}
    return data


def _event_metadata(event: WebhookEvent) -> Dict[str, Any]:
    obj = _event_object(event)
    for key in ("metadata", "meta", "meta_data"):
        value = obj.get(key)
        if isinstance(value, dict):
            return value
    return {}


def _resource_ids(metadata: Dict[str, Any]) -> List[str]:
    raw = metadata.get("resource_ids")
    if raw is None and metadata.get("resource_id"):
        raw = [metadata["resource_id"]]
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return []
    return [str(item).strip() for item in raw if str(item).strip()]


async def grant_entitlements(event: WebhookEvent, db: AsyncSession) -> Dict[str, Any]:
    """
    Grant purchased access described by a payment confirmation.

    Expects user_id and resource_ids in the payment metadata. Entitlements
    already granted for the same payment reference are left alone, so a
    replay after a partial failure only inserts what is missing.

    Args:
        event: Verified payment event
        db: Database session (committed by the caller)

    Returns:
        Dict[str, Any]: Counts of granted and already-granted resources
    """
    metadata = _event_metadata(event)
    obj = _event_object(event)
    user_id = metadata.get("user_id")
    resource_ids = _resource_ids(metadata)

    if not user_id or not resource_ids:
        logger.warning(
            "entitlement_grant_skipped",
            event_id=event.event_id,
            provider=event.provider,
            reason="missing_user_or_resources",
        )
        return {"granted": 0, "already_granted": 0, "skipped": "missing_user_or_resources"}

    source_ref = str(
        obj.get("reference") or obj.get("tx_ref") or obj.get("id") or event.event_id
    )

    result = await db.execute(
        select(Entitlement.resource_id).where(
            Entitlement.user_id == str(user_id),
            Entitlement.source_ref == source_ref,
        )
    )
    existing = set(result.scalars().all())
    missing = [
        resource_id for resource_id in dict.fromkeys(resource_ids) if resource_id not in existing
    ]

    db.add_all(
        Entitlement(user_id=str(user_id), resource_id=resource_id, source_ref=source_ref)
        for resource_id in missing
    )

    logger.info(
        "entitlements_granted",
        event_id=event.event_id,
        user_id=user_id,
        source_ref=source_ref,
        granted=len(missing),
        already_granted=len(existing),
    )
    return {"granted": len(missing), "already_granted": len(existing)}


def register_default_handlers(handler: WebhookHandler) -> None:
    """Register the built-in payment confirmation handlers."""
    for provider, event_type in ENTITLEMENT_EVENTS:
        handler.register_handler(event_type, grant_entitlements, provider=provider)
