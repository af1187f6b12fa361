"""
Hosting Bridge Provisioning Orchestrator
========================================

Drives the panel from "nothing" to "one instance, owned by the customer"
for a paid checkout session, exactly once per session.

Ties together:
- Reconciliation store (short-circuit on a prior ready record)
- Capacity gate
- Account resolver
- Allocation selection
- Instance creation and owner verification

Flow:
1. Load any prior record; a ready one is returned untouched
2. Extract and validate the customer email
3. Check the node's instance ceiling
4. Resolve or create the panel account
5. Claim the first free allocation
6. Create the instance
7. Verify the owner; correct it or grant subuser access (never fatal)
8. Persist the ready record
9. On failure before step 8, persist a failed record (best effort) and re-raise

Concurrent calls for the same session inside this process share one
in-flight task, and a run that just completed answers later callers even
if their session snapshot predates the metadata write. Across processes,
the short-circuit in step 1 and the panel's own uniqueness rules are what
keep instances unique.

Updated: October 2026
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from .accounts import AccountResolver, ResolvedAccount, normalize_email
from .billing import PaymentSession
from .capacity import CapacityGate
from .catalog import build_instance_spec, service_type
from .config import NodeTarget
from .errors import (
    MissingCustomerContact,
    NoCapacity,
    OwnershipDefect,
    as_provisioning_error,
)
from .logging_config import bind_session
from .panel.base import ACCESS_PERMISSIONS, Allocation, PanelInstance, ResourcePanel
from .reconciliation import ReconciliationStore
from .records import Credentials, ProvisioningRecord, ProvisioningState, utcnow_iso

logger = logging.getLogger(__name__)

# Ready records kept per process for callers holding a stale session snapshot
RECENT_RECORDS_LIMIT = 1000


@dataclass
class ProvisioningRun:
    """Working state of one provisioning attempt."""
    session_id: str
    started_at: str
    state: ProvisioningState = ProvisioningState.PENDING
    email: Optional[str] = None
    account: Optional[ResolvedAccount] = None
    allocation: Optional[Allocation] = None
    instance: Optional[PanelInstance] = None
    ownership_defect: bool = False
    ownership_detail: Optional[str] = None


class ProvisioningOrchestrator:
    """
    Orchestrates provisioning of one paid session.

    Usage:
        orchestrator = ProvisioningOrchestrator(panel, store, config.panel.targets())
        record = await orchestrator.provision(session)
    """

    def __init__(
        self,
        panel: ResourcePanel,
        store: ReconciliationStore,
        targets: Dict[str, NodeTarget],
        panel_url: str = "",
        public_host: str = "",
        sftp_host: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.panel = panel
        self.store = store
        self.targets = targets
        self.panel_url = panel_url
        self.public_host = public_host
        self.sftp_host = sftp_host or (urlparse(panel_url).hostname or "")
        self.clock = clock

        self.resolver = AccountResolver(panel)
        self.capacity = CapacityGate(panel)

        # session_id -> in-flight provisioning task
        self._inflight: Dict[str, asyncio.Task] = {}
        self._recent: "OrderedDict[str, ProvisioningRecord]" = OrderedDict()
        self._defects: "OrderedDict[str, OwnershipDefect]" = OrderedDict()

    # =========================================
    # ENTRY POINT
    # =========================================

    async def provision(self, session: PaymentSession) -> ProvisioningRecord:
        """
        Provision the instance for a paid session, or return the existing one.

        Args:
            session: Paid payment session

        Returns:
            Ready ProvisioningRecord

        Raises:
            ProvisioningError: Any failure from steps 2-6; unexpected exceptions
                are wrapped in the base class with the original as __cause__
        """
        recent = self._recent.get(session.id)
        if recent is not None:
            return recent

        task = self._inflight.get(session.id)
        if task is None:
            task = asyncio.create_task(self._provision(session))
            self._inflight[session.id] = task
            task.add_done_callback(lambda t, sid=session.id: self._forget(sid, t))
        else:
            logger.info("Joining in-flight provisioning", extra={"session_id": session.id})
        # Caller cancellation leaves the shared run running
        return await asyncio.shield(task)

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(session_id) is task:
            del self._inflight[session_id]

    def in_flight(self, session_id: str) -> bool:
        return session_id in self._inflight

    def ownership_defects(self) -> List[Dict[str, Any]]:
        """Instances provisioned by this process that the customer does not own."""
        return [
            {"session_id": session_id, "kind": defect.kind, **defect.details}
            for session_id, defect in self._defects.items()
        ]

    def _remember(self, record: ProvisioningRecord) -> None:
        self._recent[record.session_id] = record
        self._recent.move_to_end(record.session_id)
        while len(self._recent) > RECENT_RECORDS_LIMIT:
            self._recent.popitem(last=False)

    def _transition(self, run: ProvisioningRun, state: ProvisioningState) -> None:
        run.state = state
        logger.info(f"Session {run.session_id} state: {state.value}",
                    extra={"session_id": run.session_id, "state": state.value})

    # =========================================
    # MAIN ORCHESTRATION
    # =========================================

    async def _provision(self, session: PaymentSession) -> ProvisioningRecord:
        bind_session(session.id)
        run = ProvisioningRun(session_id=session.id, started_at=utcnow_iso())

        existing = await self.store.load(session)
        if existing is not None and existing.is_ready:
            logger.info(f"Session {session.id} already provisioned (server {existing.instance_id})",
                        extra={"session_id": session.id, "instance_id": existing.instance_id})
            return existing

        self._transition(run, ProvisioningState.CHECKING)
        try:
            email = session.contact_email()
            if not email:
                raise MissingCustomerContact(f"Session {session.id} has no customer email")
            run.email = normalize_email(email)

            kind = service_type(session.metadata)
            target = self.targets[kind]
            await self.capacity.check_capacity(target.node_id, target.max_instances)

            run.account = await self.resolver.resolve(run.email)
            self._transition(run, ProvisioningState.ACCOUNT_READY)

            allocations = await self.panel.list_free_allocations(target.node_id)
            if not allocations:
                raise NoCapacity(f"No free allocations on node {target.node_id}")
            run.allocation = allocations[0]
            self._transition(run, ProvisioningState.ALLOCATION_READY)

            spec = build_instance_spec(
                session.metadata,
                egg_id=target.egg_id,
                owner_id=run.account.account_id,
                allocation_id=run.allocation.id,
                now=self.clock(),
            )
            run.instance = await self.panel.create_instance(spec)
            self._transition(run, ProvisioningState.INSTANCE_CREATED)

        except Exception as e:
            error = as_provisioning_error(e)
            self._transition(run, ProvisioningState.FAILED)
            logger.error(
                f"Provisioning failed for session {session.id} ({error.kind}): {error.message}",
                exc_info=error is not e,
                extra={"session_id": session.id},
            )
            await self.store.record_failure(ProvisioningRecord.failed(
                session.id, error.kind, error.user_message, started_at=run.started_at
            ))
            if error is e:
                raise
            raise error from e

        await self._verify_access(run)
        self._transition(run, ProvisioningState.ACCESS_VERIFIED)

        record = await self.store.save(self._assemble(run))
        self._remember(record)
        self._transition(run, ProvisioningState.READY)
        logger.info(
            f"Provisioned server {run.instance.id} at {record.address} for {run.account.username}",
            extra={
                "session_id": session.id,
                "account_id": run.account.account_id,
                "instance_id": run.instance.id,
            },
        )
        return record

    # =========================================
    # ACCESS VERIFICATION
    # =========================================

    async def _verify_access(self, run: ProvisioningRun) -> None:
        """Make sure the customer can reach the instance. Records defects, never raises."""
        instance = run.instance
        account_id = run.account.account_id

        owner = instance.owner_id
        if owner is None:
            try:
                owner = (await self.panel.get_instance(instance.id)).owner_id
            except Exception as e:
                error = as_provisioning_error(e)
                logger.warning(f"Could not read owner of server {instance.id}: {error.message}",
                               extra={"session_id": run.session_id, "instance_id": instance.id})

        if owner == account_id:
            return

        logger.warning(
            f"Server {instance.id} owner is {owner}, expected {account_id}; correcting",
            extra={"session_id": run.session_id, "instance_id": instance.id},
        )
        try:
            await self.panel.update_instance_owner(instance, account_id)
            return
        except Exception as e:
            update_error = as_provisioning_error(e)

        run.ownership_defect = True
        try:
            await self.panel.grant_access(instance, run.email, ACCESS_PERMISSIONS)
            run.ownership_detail = (
                f"Owner update failed ({update_error.kind}); subuser access granted"
            )
        except Exception as e:
            run.ownership_detail = (
                f"Owner update failed ({update_error.kind}); "
                f"access grant failed ({as_provisioning_error(e).kind})"
            )
        defect = OwnershipDefect(
            f"Server {instance.id} not owned by account {account_id}: {run.ownership_detail}",
            details={
                "instance_id": instance.id,
                "account_id": account_id,
                "owner": owner,
                "cause": update_error.kind,
                "detail": run.ownership_detail,
            },
        )
        self._defects[run.session_id] = defect
        while len(self._defects) > RECENT_RECORDS_LIMIT:
            self._defects.popitem(last=False)
        logger.error(
            defect.message,
            extra={"session_id": run.session_id, "instance_id": instance.id,
                   "account_id": account_id},
        )

    # =========================================
    # RECORD
    # =========================================

    def _assemble(self, run: ProvisioningRun) -> ProvisioningRecord:
        host = self.public_host or run.allocation.host
        account = run.account
        credentials = None
        if account.is_new_account and account.generated_password:
            credentials = Credentials(
                username=account.username,
                password=account.generated_password,
                host=self.sftp_host or host,
            )
        return ProvisioningRecord(
            session_id=run.session_id,
            state=ProvisioningState.READY,
            instance_id=run.instance.id,
            instance_uuid=run.instance.uuid,
            instance_identifier=run.instance.identifier,
            address=f"{host}:{run.allocation.port}",
            account_id=account.account_id,
            account_username=account.username,
            account_email=account.email,
            is_new_account=account.is_new_account,
            credentials=credentials,
            panel_url=self.panel_url or None,
            ownership_defect=run.ownership_defect,
            ownership_detail=run.ownership_detail,
            started_at=run.started_at,
            completed_at=utcnow_iso(),
        )
