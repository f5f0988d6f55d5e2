"""Storage collaborator used by the payment engine.

Each call is atomic on its own; nothing here spans several rows in one
transaction, so callers order their writes (credit first, then mark settled).
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pixsettle.utils.time import utc_now

# Ledger counters a caller may change through update_user.
USER_MUTABLE_FIELDS = frozenset(
    {
        "plan",
        "email",
        "tokens",
        "tokens_from_plan",
        "tokens_purchased",
        "tokens_earned",
        "tokens_spent",
        "accumulated_credit",
        "withdrawn_credit",
        "available_to_withdraw",
        "withdrawal_window_key",
    }
)


@dataclass
class UserAccount:
    id: int
    email: str = ""
    plan: str = "free"
    tokens: int = 0
    tokens_from_plan: int = 0
    tokens_purchased: int = 0
    tokens_earned: int = 0
    tokens_spent: int = 0
    accumulated_credit: int = 0
    withdrawn_credit: int = 0
    available_to_withdraw: int = 0
    withdrawal_window_key: Optional[str] = None

    @property
    def total_balance(self) -> int:
        return self.tokens_from_plan + self.tokens_purchased + self.tokens_earned - self.tokens_spent


@dataclass
class AuditRecord:
    actor: str  # admin|user|system|webhook
    action: str
    target_type: str
    target_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


@dataclass
class UserNotification:
    user_id: int
    title: str
    message: str
    kind: str
    urgent: bool = False
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


@dataclass
class PayoutRecord:
    user_id: int
    amount: int
    amount_minor: int
    pix_key: Optional[str]
    window_key: str
    status: str = "requested"
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


@dataclass
class UnreconciledPayment:
    amount_minor: int
    source: str
    dedupe_key: Optional[str] = None
    source_transaction_id: Optional[str] = None
    external_reference: Optional[str] = None
    description: Optional[str] = None
    reported_at: Optional[datetime] = None
    reason: str = ""
    resolved: bool = False
    resolved_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    id: Optional[int] = None


class Storage(abc.ABC):
    @abc.abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserAccount]: ...

    @abc.abstractmethod
    async def update_user(self, user_id: int, fields: Dict[str, Any]) -> UserAccount: ...

    @abc.abstractmethod
    async def list_users(self) -> List[UserAccount]: ...

    @abc.abstractmethod
    async def create_audit_record(self, record: AuditRecord) -> AuditRecord: ...

    @abc.abstractmethod
    async def create_notification(self, notification: UserNotification) -> UserNotification: ...

    @abc.abstractmethod
    async def create_payout(self, payout: PayoutRecord) -> PayoutRecord: ...

    @abc.abstractmethod
    async def list_payouts(self, user_id: Optional[int] = None) -> List[PayoutRecord]: ...

    @abc.abstractmethod
    async def add_unreconciled(self, item: UnreconciledPayment) -> UnreconciledPayment: ...

    @abc.abstractmethod
    async def list_unreconciled(self, *, include_resolved: bool = False) -> List[UnreconciledPayment]: ...

    @abc.abstractmethod
    async def get_unreconciled(self, item_id: int) -> Optional[UnreconciledPayment]: ...

    @abc.abstractmethod
    async def resolve_unreconciled(self, item_id: int, resolved_by: str) -> Optional[UnreconciledPayment]: ...


def check_user_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - USER_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown user fields: {sorted(unknown)}")
