"""
Hosting Bridge Provisioning Records
===================================

The outcome of provisioning one payment session, and its serialised form
in the session's string metadata.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

# Stripe caps metadata values at 500 characters
METADATA_VALUE_LIMIT = 500

FAILURE_KEYS = ("provisioningErrorKind", "provisioningError", "provisioningFailedAt")
CREDENTIAL_KEYS = ("serverUsername", "serverPassword", "sftpHost")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProvisioningState(Enum):
    """Provisioning workflow states."""
    PENDING = "pending"
    CHECKING = "checking"
    ACCOUNT_READY = "account_ready"
    ALLOCATION_READY = "allocation_ready"
    INSTANCE_CREATED = "instance_created"
    ACCESS_VERIFIED = "access_verified"
    READY = "ready"
    FAILED = "failed"


@dataclass
class Credentials:
    """Login details for a freshly created panel account."""
    username: str
    password: str
    host: str


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


@dataclass
class ProvisioningRecord:
    """
    Result of provisioning one payment session.

    ``credentials`` is only ever present for a new account; it is dropped on
    construction otherwise. ``persisted_to_fallback`` is process-local and
    never serialised.
    """
    session_id: str
    state: ProvisioningState
    instance_id: Optional[int] = None
    instance_uuid: Optional[str] = None
    instance_identifier: Optional[str] = None
    address: Optional[str] = None
    account_id: Optional[int] = None
    account_username: Optional[str] = None
    account_email: Optional[str] = None
    is_new_account: bool = False
    credentials: Optional[Credentials] = None
    panel_url: Optional[str] = None
    ownership_defect: bool = False
    ownership_detail: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    persisted_to_fallback: bool = field(default=False, compare=False)

    def __post_init__(self):
        if not self.is_new_account:
            self.credentials = None

    @property
    def is_ready(self) -> bool:
        return self.state == ProvisioningState.READY

    @property
    def is_failed(self) -> bool:
        return self.state == ProvisioningState.FAILED

    @classmethod
    def failed(cls, session_id: str, error_kind: str, error_message: str,
               started_at: Optional[str] = None) -> "ProvisioningRecord":
        return cls(
            session_id=session_id,
            state=ProvisioningState.FAILED,
            error_kind=error_kind,
            error_message=error_message,
            started_at=started_at,
            failed_at=utcnow_iso(),
        )

    # =========================================
    # SERIALISATION
    # =========================================

    def to_metadata(self) -> Dict[str, str]:
        """Metadata keys to merge onto the payment session. Empty string deletes a key."""
        if self.is_failed:
            return {
                "provisioningState": self.state.value,
                "serverStatus": "failed",
                "provisioningErrorKind": self.error_kind or "",
                "provisioningError": (self.error_message or "")[:METADATA_VALUE_LIMIT],
                "provisioningFailedAt": self.failed_at or utcnow_iso(),
            }

        metadata = {
            "provisioningState": self.state.value,
            "serverId": str(self.instance_id or ""),
            "serverUuid": self.instance_uuid or "",
            "serverIdentifier": self.instance_identifier or "",
            "serverAddress": self.address or "",
            "serverStatus": "created",
            "pterodactylUserId": str(self.account_id or ""),
            "pterodactylUsername": self.account_username or "",
            "ownerEmail": self.account_email or "",
            "userStatus": "new" if self.is_new_account else "existing",
            "panelUrl": self.panel_url or "",
            "ownershipDefect": "true" if self.ownership_defect else "false",
            "ownershipDetail": (self.ownership_detail or "")[:METADATA_VALUE_LIMIT],
            "provisioningStartedAt": self.started_at or "",
            "provisionedAt": self.completed_at or "",
        }
        if self.credentials:
            metadata.update({
                "serverUsername": self.credentials.username,
                "serverPassword": self.credentials.password,
                "sftpHost": self.credentials.host,
            })
        else:
            metadata.update({key: "" for key in CREDENTIAL_KEYS})
        metadata.update({key: "" for key in FAILURE_KEYS})
        return metadata

    @classmethod
    def from_metadata(cls, session_id: str, metadata: Dict[str, str]) -> Optional["ProvisioningRecord"]:
        """
        Read a record back from session metadata.

        Returns:
            The record, or None when the session was never provisioned
        """
        raw_state = metadata.get("provisioningState")
        if metadata.get("serverId") and metadata.get("provisionedAt"):
            # A completed instance outranks a failure written later by a racing run
            raw_state = ProvisioningState.READY.value
        elif not raw_state:
            # Sessions provisioned before states were recorded
            if metadata.get("serverId") and metadata.get("serverStatus") == "created":
                raw_state = ProvisioningState.READY.value
            else:
                return None

        try:
            state = ProvisioningState(raw_state)
        except ValueError:
            return None

        if state == ProvisioningState.FAILED:
            return cls(
                session_id=session_id,
                state=state,
                error_kind=metadata.get("provisioningErrorKind") or None,
                error_message=metadata.get("provisioningError") or None,
                failed_at=metadata.get("provisioningFailedAt") or None,
            )

        is_new = metadata.get("userStatus") == "new"
        credentials = None
        if is_new and metadata.get("serverPassword"):
            credentials = Credentials(
                username=metadata.get("serverUsername", ""),
                password=metadata["serverPassword"],
                host=metadata.get("sftpHost", ""),
            )

        return cls(
            session_id=session_id,
            state=state,
            instance_id=_int_or_none(metadata.get("serverId")),
            instance_uuid=metadata.get("serverUuid") or None,
            instance_identifier=metadata.get("serverIdentifier") or None,
            address=metadata.get("serverAddress") or None,
            account_id=_int_or_none(metadata.get("pterodactylUserId")),
            account_username=metadata.get("pterodactylUsername") or None,
            account_email=metadata.get("ownerEmail") or None,
            is_new_account=is_new,
            credentials=credentials,
            panel_url=metadata.get("panelUrl") or None,
            ownership_defect=metadata.get("ownershipDefect") == "true",
            ownership_detail=metadata.get("ownershipDetail") or None,
            started_at=metadata.get("provisioningStartedAt") or None,
            completed_at=metadata.get("provisionedAt") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing view (the status endpoints)."""
        result: Dict[str, Any] = {
            "state": self.state.value,
            "serverId": self.instance_id,
            "serverIdentifier": self.instance_identifier,
            "serverAddress": self.address,
            "panelUrl": self.panel_url,
            "username": self.account_username,
            "isNewAccount": self.is_new_account,
            "ownershipDefect": self.ownership_defect,
        }
        if self.credentials:
            result["credentials"] = {
                "username": self.credentials.username,
                "password": self.credentials.password,
                "host": self.credentials.host,
            }
        return result
