"""
Hosting Bridge Reconciliation Store
===================================

Where provisioning results live, keyed by payment session id.

Two backends behind one interface:

- BillingMetadataBackend (durable): merges the record into the checkout
  session's metadata on the billing provider.
- MemoryBackend (volatile): process-local map, used only when the durable
  write fails. Its contents are lost on restart.

Reads consult the durable copy first, then the volatile one. Writes go to
the durable backend and fall back to memory, flagging the record.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, List

from .billing import PaymentSession, StripeBilling
from .errors import PersistenceDegraded, as_provisioning_error
from .records import ProvisioningRecord

logger = logging.getLogger(__name__)


class ReconciliationBackend(ABC):
    """Storage for provisioning records."""

    name: str = "backend"

    @abstractmethod
    async def load(self, session: PaymentSession) -> Optional[ProvisioningRecord]:
        pass

    @abstractmethod
    async def save(self, record: ProvisioningRecord) -> None:
        pass


class BillingMetadataBackend(ReconciliationBackend):
    """Records stored as metadata on the checkout session itself."""

    name = "billing-metadata"

    def __init__(self, billing: StripeBilling):
        self.billing = billing

    async def load(self, session: PaymentSession) -> Optional[ProvisioningRecord]:
        return ProvisioningRecord.from_metadata(session.id, session.metadata)

    async def save(self, record: ProvisioningRecord) -> None:
        await self.billing.merge_metadata(record.session_id, record.to_metadata())


class MemoryBackend(ReconciliationBackend):
    """Process-local records. Guarded by an asyncio lock."""

    name = "memory"

    def __init__(self):
        # session_id -> ProvisioningRecord
        self._records: Dict[str, ProvisioningRecord] = {}
        self._lock = asyncio.Lock()

    async def load(self, session: PaymentSession) -> Optional[ProvisioningRecord]:
        async with self._lock:
            return self._records.get(session.id)

    async def save(self, record: ProvisioningRecord) -> None:
        async with self._lock:
            self._records[record.session_id] = record

    async def discard(self, session_id: str) -> None:
        async with self._lock:
            self._records.pop(session_id, None)


class ReconciliationStore:
    """Try-durable-then-fallback storage for provisioning records."""

    def __init__(self, durable: ReconciliationBackend, fallback: Optional[MemoryBackend] = None):
        self.durable = durable
        self.fallback = fallback or MemoryBackend()
        self._degraded: Dict[str, str] = {}  # session_id -> error kind

    @property
    def degraded_count(self) -> int:
        """Records currently held only in process memory."""
        return len(self._degraded)

    def degraded_sessions(self) -> List[str]:
        return sorted(self._degraded)

    async def load(self, session: PaymentSession) -> Optional[ProvisioningRecord]:
        """
        Find the record for a session.

        A ready durable record wins; otherwise a volatile record (newer by
        construction) is preferred over a durable failed one.
        """
        durable = await self.durable.load(session)
        if durable is not None and durable.is_ready:
            return durable

        volatile = await self.fallback.load(session)
        if volatile is not None:
            return volatile
        return durable

    async def save(self, record: ProvisioningRecord) -> ProvisioningRecord:
        """
        Persist a record.

        Never raises for a durable failure: the record is kept in memory,
        ``persisted_to_fallback`` is set, and the degradation is logged.
        """
        try:
            await self.durable.save(record)
        except Exception as e:
            cause = as_provisioning_error(e)
            degraded = PersistenceDegraded(
                f"Durable write failed for session {record.session_id}: {cause.message}",
                details={"cause": cause.kind},
            )
            logger.warning(degraded.message, exc_info=cause is not e,
                           extra={"session_id": record.session_id})
            record.persisted_to_fallback = True
            await self.fallback.save(record)
            self._degraded[record.session_id] = cause.kind
            return record

        record.persisted_to_fallback = False
        self._degraded.pop(record.session_id, None)
        await self.fallback.discard(record.session_id)
        return record

    async def record_failure(self, record: ProvisioningRecord) -> None:
        """Best-effort failure write. Logs and swallows its own errors."""
        try:
            await self.save(record)
        except Exception:
            logger.exception(
                f"Could not record failure for session {record.session_id}",
                extra={"session_id": record.session_id},
            )
