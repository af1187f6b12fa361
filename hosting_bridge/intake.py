"""
Hosting Bridge Event Intake
===========================

The two ways a payment confirmation reaches the orchestrator:

- Push: Stripe webhook. Verified, dispatched through a closed table, and
  provisioning runs in a background task against a freshly fetched copy of
  the session. Failures there are only logged.
- Pull: the storefront success page polls the session. Provisioning runs
  inline and the caller gets the outcome.

Both channels may fire for the same session at the same time.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .billing import BillingEvent, PaymentSession, StripeBilling
from .errors import ProvisioningError, TERMINAL_FAILURE_KINDS
from .logging_config import bind_session
from .orchestrator import ProvisioningOrchestrator
from .reconciliation import ReconciliationStore
from .records import ProvisioningRecord

logger = logging.getLogger(__name__)


@dataclass
class EventOutcome:
    """Result of handling one webhook event."""
    event_id: str
    event_type: str
    handled: bool
    action: str = "none"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "handled": self.handled,
            "action": self.action,
        }


@dataclass
class SessionStatus:
    """What the status endpoints report for one session."""
    session: PaymentSession
    status: str  # pending | ready | failed
    record: Optional[ProvisioningRecord] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False

    def merged_metadata(self) -> Dict[str, str]:
        """Session metadata with the record's keys applied, as the billing provider would store it."""
        metadata = dict(self.session.metadata)
        if self.record is not None:
            for key, value in self.record.to_metadata().items():
                if value == "":
                    metadata.pop(key, None)
                else:
                    metadata[key] = value
        return metadata

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "sessionId": self.session.id,
            "paymentStatus": self.session.payment_status.value,
            "customerEmail": self.session.contact_email(),
            "metadata": self.merged_metadata(),
            "status": self.status,
        }
        if self.record is not None and self.record.is_ready:
            result["server"] = self.record.to_dict()
        if self.error:
            result["error"] = self.error
            result["errorKind"] = self.error_kind
            result["retryable"] = self.retryable
        return result


class EventIntake:
    """Entry point for payment confirmations."""

    def __init__(
        self,
        billing: StripeBilling,
        orchestrator: ProvisioningOrchestrator,
        store: ReconciliationStore,
    ):
        self.billing = billing
        self.orchestrator = orchestrator
        self.store = store
        self._tasks: Set[asyncio.Task] = set()

        self._handlers: Dict[str, Callable[[BillingEvent], Awaitable[str]]] = {
            "checkout.session.completed": self._on_checkout_paid,
            "checkout.session.async_payment_succeeded": self._on_checkout_paid,
            "checkout.session.async_payment_failed": self._log_only,
            "invoice.payment_succeeded": self._log_only,
            "invoice.payment_failed": self._log_only,
            "customer.subscription.deleted": self._log_only,
            "customer.subscription.updated": self._log_only,
        }

    # =========================================
    # PUSH (WEBHOOK)
    # =========================================

    async def handle_event(self, payload: bytes, signature: Optional[str]) -> EventOutcome:
        """
        Verify and dispatch one webhook delivery.

        Raises:
            InvalidSignature: Before any business logic runs
        """
        event = self.billing.verify_webhook_signature(payload, signature)
        logger.info(f"Webhook event {event.id}: {event.type}", extra={"event_type": event.type})

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Ignoring unhandled event type {event.type}",
                        extra={"event_type": event.type})
            return EventOutcome(event.id, event.type, handled=False, action="ignored")

        action = await handler(event)
        return EventOutcome(event.id, event.type, handled=True, action=action)

    async def _on_checkout_paid(self, event: BillingEvent) -> str:
        session = PaymentSession.from_stripe(event.data)
        if not session.is_paid:
            logger.info(f"Session {session.id} not paid yet ({session.payment_status.value})",
                        extra={"session_id": session.id, "event_type": event.type})
            return "awaiting_payment"

        self._spawn(session.id)
        return "provisioning"

    async def _log_only(self, event: BillingEvent) -> str:
        logger.info(
            f"{event.type} for {event.data.get('object', 'object')} {event.data.get('id', '?')}; no action",
            extra={"event_type": event.type},
        )
        return "logged"

    def _spawn(self, session_id: str) -> None:
        task = asyncio.create_task(self._provision_in_background(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _provision_in_background(self, session_id: str) -> None:
        bind_session(session_id)
        try:
            # Event bodies predate any metadata write; read the current session
            session = await self.billing.retrieve_session(session_id)
            if not session.is_paid:
                logger.warning(f"Session {session_id} is no longer paid; skipping",
                               extra={"session_id": session_id})
                return
            await self.orchestrator.provision(session)
        except ProvisioningError as e:
            logger.warning(
                f"Background provisioning for {session_id} failed ({e.kind}); "
                f"the status endpoint will retry",
                extra={"session_id": session_id},
            )
        except Exception:
            logger.exception(f"Background provisioning for {session_id} crashed",
                             extra={"session_id": session_id})

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all background provisioning to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================
    # PULL (STATUS POLLING)
    # =========================================

    async def ensure_provisioned(self, session_id: str) -> SessionStatus:
        """
        Report a session's provisioning status, provisioning it if needed.

        Raises:
            SessionNotFound: Unknown session id
            DependencyTimeout / DependencyUnavailable: Session could not be fetched
        """
        session = await self.billing.retrieve_session(session_id)
        if not session.is_paid:
            return SessionStatus(session=session, status="pending")

        record = await self.store.load(session)
        if record is not None and record.is_ready:
            return SessionStatus(session=session, status="ready", record=record)

        if record is not None and record.is_failed and record.error_kind in TERMINAL_FAILURE_KINDS:
            return SessionStatus(
                session=session,
                status="failed",
                record=record,
                error=record.error_message,
                error_kind=record.error_kind,
                retryable=False,
            )

        try:
            record = await self.orchestrator.provision(session)
        except ProvisioningError as e:
            return SessionStatus(
                session=session,
                status="failed",
                error=e.user_message,
                error_kind=e.kind,
                retryable=e.retryable,
            )
        return SessionStatus(session=session, status="ready", record=record)
