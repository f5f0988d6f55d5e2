from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(191), default="")
    plan: Mapped[str] = mapped_column(String(32), index=True, default="free")

    # Aggregate balance shown to the user; always the sum of the counters below minus spent
    tokens: Mapped[int] = mapped_column(BigInteger, default=0)
    tokens_from_plan: Mapped[int] = mapped_column(BigInteger, default=0)
    tokens_purchased: Mapped[int] = mapped_column(BigInteger, default=0)
    tokens_earned: Mapped[int] = mapped_column(BigInteger, default=0)
    tokens_spent: Mapped[int] = mapped_column(BigInteger, default=0)

    accumulated_credit: Mapped[int] = mapped_column(BigInteger, default=0)
    withdrawn_credit: Mapped[int] = mapped_column(BigInteger, default=0)
    available_to_withdraw: Mapped[int] = mapped_column(BigInteger, default=0)
    withdrawal_window_key: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(32))  # admin|user|system|webhook
    action: Mapped[str] = mapped_column(String(64), index=True)
    target_type: Mapped[str] = mapped_column(String(64))
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    meta: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String(191))
    message: Mapped[str] = mapped_column(Text)
    kind: Mapped[str] = mapped_column(String(64))
    urgent: Mapped[bool] = mapped_column(Boolean, default=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Payout(Base):
    __tablename__ = "payouts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    amount_minor: Mapped[int] = mapped_column(BigInteger)
    pix_key: Mapped[Optional[str]] = mapped_column(String(191), nullable=True)
    window_key: Mapped[str] = mapped_column(String(32), index=True)
    status: Mapped[str] = mapped_column(String(32), default="requested")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class UnreconciledPaymentRow(Base):
    __tablename__ = "unreconciled_payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger)
    source: Mapped[str] = mapped_column(String(32))
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(191), index=True, nullable=True)
    source_transaction_id: Mapped[Optional[str]] = mapped_column(String(191), nullable=True)
    external_reference: Mapped[Optional[str]] = mapped_column(String(191), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reported_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reason: Mapped[str] = mapped_column(String(191), default="")
    resolved: Mapped[bool] = mapped_column(Boolean, index=True, default=False)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
