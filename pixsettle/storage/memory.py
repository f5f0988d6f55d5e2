from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Any, Dict, List, Optional

from pixsettle.errors import UserNotFound
from pixsettle.storage.base import (
    AuditRecord,
    PayoutRecord,
    Storage,
    UnreconciledPayment,
    UserAccount,
    UserNotification,
    check_user_fields,
)


class MemoryStorage(Storage):
    """Dict-backed storage for development and tests.

    Returned objects are copies, so callers only see their own writes after
    going through ``update_user``.
    """

    def __init__(self) -> None:
        self.users: Dict[int, UserAccount] = {}
        self.audit: List[AuditRecord] = []
        self.notifications: List[UserNotification] = []
        self.payouts: List[PayoutRecord] = []
        self.unreconciled: Dict[int, UnreconciledPayment] = {}
        self._ids = itertools.count(1)

    def add_user(self, user: UserAccount) -> UserAccount:
        self.users[user.id] = replace(user)
        return replace(user)

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        user = self.users.get(user_id)
        return replace(user) if user else None

    async def update_user(self, user_id: int, fields: Dict[str, Any]) -> UserAccount:
        check_user_fields(fields)
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        updated = replace(user, **fields)
        self.users[user_id] = updated
        return replace(updated)

    async def list_users(self) -> List[UserAccount]:
        return [replace(u) for u in sorted(self.users.values(), key=lambda u: u.id)]

    async def create_audit_record(self, record: AuditRecord) -> AuditRecord:
        record.id = next(self._ids)
        self.audit.append(record)
        return record

    async def create_notification(self, notification: UserNotification) -> UserNotification:
        notification.id = next(self._ids)
        self.notifications.append(notification)
        return notification

    async def create_payout(self, payout: PayoutRecord) -> PayoutRecord:
        payout.id = next(self._ids)
        self.payouts.append(payout)
        return payout

    async def list_payouts(self, user_id: Optional[int] = None) -> List[PayoutRecord]:
        return [p for p in self.payouts if user_id is None or p.user_id == user_id]

    async def add_unreconciled(self, item: UnreconciledPayment) -> UnreconciledPayment:
        item.id = next(self._ids)
        self.unreconciled[item.id] = item
        return item

    async def list_unreconciled(self, *, include_resolved: bool = False) -> List[UnreconciledPayment]:
        items = sorted(self.unreconciled.values(), key=lambda i: i.created_at)
        return [i for i in items if include_resolved or not i.resolved]

    async def get_unreconciled(self, item_id: int) -> Optional[UnreconciledPayment]:
        return self.unreconciled.get(item_id)

    async def resolve_unreconciled(self, item_id: int, resolved_by: str) -> Optional[UnreconciledPayment]:
        item = self.unreconciled.get(item_id)
        if item is None:
            return None
        item.resolved = True
        item.resolved_by = resolved_by
        return item
