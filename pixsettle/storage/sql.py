from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pixsettle.db.models import AuditLog, Notification, Payout, UnreconciledPaymentRow, User
from pixsettle.db.session import session_scope
from pixsettle.errors import UserNotFound
from pixsettle.storage.base import (
    USER_MUTABLE_FIELDS,
    AuditRecord,
    PayoutRecord,
    Storage,
    UnreconciledPayment,
    UserAccount,
    UserNotification,
    check_user_fields,
)
from pixsettle.utils.time import ensure_aware

logger = logging.getLogger(__name__)


def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return ensure_aware(dt).astimezone(timezone.utc).replace(tzinfo=None)


def _to_account(row: User) -> UserAccount:
    return UserAccount(id=row.id, **{name: getattr(row, name) for name in USER_MUTABLE_FIELDS})


def _to_unreconciled(row: UnreconciledPaymentRow) -> UnreconciledPayment:
    return UnreconciledPayment(
        id=row.id,
        amount_minor=row.amount_minor,
        source=row.source,
        dedupe_key=row.dedupe_key,
        source_transaction_id=row.source_transaction_id,
        external_reference=row.external_reference,
        description=row.description,
        reported_at=ensure_aware(row.reported_at) if row.reported_at else None,
        reason=row.reason,
        resolved=row.resolved,
        resolved_by=row.resolved_by,
        created_at=ensure_aware(row.created_at),
    )


class SqlStorage(Storage):
    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_maker = session_maker

    def _scope(self):
        return session_scope(self._session_maker)

    async def create_user(self, account: UserAccount) -> UserAccount:
        async with self._scope() as session:
            row = User(id=account.id, **{name: getattr(account, name) for name in USER_MUTABLE_FIELDS})
            session.add(row)
            await session.commit()
            return _to_account(row)

    async def get_user(self, user_id: int) -> Optional[UserAccount]:
        async with self._scope() as session:
            row = await session.get(User, user_id)
            return _to_account(row) if row else None

    async def update_user(self, user_id: int, fields: Dict[str, Any]) -> UserAccount:
        check_user_fields(fields)
        async with self._scope() as session:
            row = await session.get(User, user_id)
            if row is None:
                raise UserNotFound(user_id)
            for name, value in fields.items():
                setattr(row, name, value)
            await session.commit()
            return _to_account(row)

    async def list_users(self) -> List[UserAccount]:
        async with self._scope() as session:
            rows = (await session.execute(select(User).order_by(User.id))).scalars().all()
            return [_to_account(r) for r in rows]

    async def create_audit_record(self, record: AuditRecord) -> AuditRecord:
        async with self._scope() as session:
            row = AuditLog(
                actor=record.actor,
                action=record.action,
                target_type=record.target_type,
                target_id=record.target_id,
                meta=json.dumps(record.meta, ensure_ascii=False, default=str) if record.meta else None,
                created_at=_naive_utc(record.created_at),
            )
            session.add(row)
            await session.commit()
            record.id = row.id
            return record

    async def create_notification(self, notification: UserNotification) -> UserNotification:
        async with self._scope() as session:
            row = Notification(
                user_id=notification.user_id,
                title=notification.title,
                message=notification.message,
                kind=notification.kind,
                urgent=notification.urgent,
                created_at=_naive_utc(notification.created_at),
            )
            session.add(row)
            await session.commit()
            notification.id = row.id
            return notification

    async def create_payout(self, payout: PayoutRecord) -> PayoutRecord:
        async with self._scope() as session:
            row = Payout(
                user_id=payout.user_id,
                amount=payout.amount,
                amount_minor=payout.amount_minor,
                pix_key=payout.pix_key,
                window_key=payout.window_key,
                status=payout.status,
                created_at=_naive_utc(payout.created_at),
            )
            session.add(row)
            await session.commit()
            payout.id = row.id
            return payout

    async def list_payouts(self, user_id: Optional[int] = None) -> List[PayoutRecord]:
        async with self._scope() as session:
            stmt = select(Payout).order_by(Payout.created_at)
            if user_id is not None:
                stmt = stmt.where(Payout.user_id == user_id)
            rows = (await session.execute(stmt)).scalars().all()
            return [
                PayoutRecord(
                    id=r.id,
                    user_id=r.user_id,
                    amount=r.amount,
                    amount_minor=r.amount_minor,
                    pix_key=r.pix_key,
                    window_key=r.window_key,
                    status=r.status,
                    created_at=ensure_aware(r.created_at),
                )
                for r in rows
            ]

    async def add_unreconciled(self, item: UnreconciledPayment) -> UnreconciledPayment:
        async with self._scope() as session:
            row = UnreconciledPaymentRow(
                amount_minor=item.amount_minor,
                source=item.source,
                dedupe_key=item.dedupe_key,
                source_transaction_id=item.source_transaction_id,
                external_reference=item.external_reference,
                description=item.description,
                reported_at=_naive_utc(item.reported_at),
                reason=item.reason,
                resolved=item.resolved,
                created_at=_naive_utc(item.created_at),
            )
            session.add(row)
            await session.commit()
            item.id = row.id
            return item

    async def list_unreconciled(self, *, include_resolved: bool = False) -> List[UnreconciledPayment]:
        async with self._scope() as session:
            stmt = select(UnreconciledPaymentRow).order_by(UnreconciledPaymentRow.created_at)
            if not include_resolved:
                stmt = stmt.where(UnreconciledPaymentRow.resolved.is_(False))
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_unreconciled(r) for r in rows]

    async def get_unreconciled(self, item_id: int) -> Optional[UnreconciledPayment]:
        async with self._scope() as session:
            row = await session.get(UnreconciledPaymentRow, item_id)
            return _to_unreconciled(row) if row else None

    async def resolve_unreconciled(self, item_id: int, resolved_by: str) -> Optional[UnreconciledPayment]:
        async with self._scope() as session:
            row = await session.get(UnreconciledPaymentRow, item_id)
            if row is None:
                return None
            row.resolved = True
            row.resolved_by = resolved_by
            await session.commit()
            logger.info("unreconciled payment resolved", extra={"extra": {"id": item_id, "by": resolved_by}})
            return _to_unreconciled(row)
