"""
Hosting Bridge Account Resolver
===============================

Finds or creates the panel account for a customer email.

One account per email. If two provisioning runs race to create the same
account, the loser's create fails with a conflict and it re-queries once.
"""

import logging
import re
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from .errors import DependencyConflict, InvalidInput
from .panel.base import ResourcePanel

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PASSWORD_LENGTH = 16
PASSWORD_SYMBOLS = "!@#$%^&*"
PASSWORD_ALPHABET = string.ascii_letters + string.digits + PASSWORD_SYMBOLS

_rng = secrets.SystemRandom()


@dataclass
class ResolvedAccount:
    """Outcome of resolving an email to a panel account."""
    account_id: int
    username: str
    email: str
    is_new_account: bool
    generated_password: Optional[str] = None

    def __post_init__(self):
        if not self.is_new_account:
            self.generated_password = None


def normalize_email(email: Optional[str]) -> str:
    """
    Trim, lower-case and validate an email.

    Raises:
        InvalidInput: If the email is blank or malformed
    """
    normalized = (email or "").strip().lower()
    if not EMAIL_PATTERN.match(normalized):
        raise InvalidInput(f"Invalid email address: {email!r}")
    return normalized


def generate_username(email: str) -> str:
    """
    Derive a panel username from the email local-part.

    ``john.doe+x@example.com`` becomes something like ``johndoex4821``.
    """
    base = re.sub(r"[^a-z0-9]", "", email.split("@")[0].lower())[:10]
    if len(base) < 4:
        base = base + "bot"
    suffix = f"{secrets.randbelow(9000) + 1000}"
    return (base + suffix)[:16]


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password with at least one lower, upper, digit and symbol."""
    chars = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice(PASSWORD_SYMBOLS),
    ]
    chars += [secrets.choice(PASSWORD_ALPHABET) for _ in range(length - len(chars))]
    _rng.shuffle(chars)
    return "".join(chars)


class AccountResolver:
    """Resolves customer emails to panel accounts."""

    def __init__(self, panel: ResourcePanel):
        self.panel = panel

    async def resolve(self, email: str) -> ResolvedAccount:
        """
        Find the account for ``email``, creating it when none exists.

        Args:
            email: Customer email (any case, surrounding whitespace allowed)

        Returns:
            ResolvedAccount; ``generated_password`` is set only for new accounts

        Raises:
            InvalidInput: Malformed email
            DependencyConflict: Create conflicted and the re-query found nothing
            DependencyTimeout / DependencyUnavailable: Panel call failed
        """
        email = normalize_email(email)

        existing = await self.panel.find_accounts_by_email(email)
        if existing:
            account = existing[0]
            logger.info(f"Using existing panel account {account.username}",
                        extra={"account_id": account.id})
            return ResolvedAccount(
                account_id=account.id,
                username=account.username,
                email=email,
                is_new_account=False,
            )

        username = generate_username(email)
        password = generate_password()
        try:
            account = await self.panel.create_account(
                email=email,
                username=username,
                password=password,
                first_name=username,
                last_name="User",
            )
        except DependencyConflict as conflict:
            logger.warning(f"Account create conflicted, re-querying: {conflict.message}")
            existing = await self.panel.find_accounts_by_email(email)
            if not existing:
                raise DependencyConflict(
                    conflict.service,
                    f"Account create conflicted and no account found for email: {conflict.message}",
                    details=conflict.details,
                ) from conflict
            account = existing[0]
            return ResolvedAccount(
                account_id=account.id,
                username=account.username,
                email=email,
                is_new_account=False,
            )

        logger.info(f"Created panel account {account.username}",
                    extra={"account_id": account.id})
        return ResolvedAccount(
            account_id=account.id,
            username=account.username or username,
            email=email,
            is_new_account=True,
            generated_password=password,
        )
