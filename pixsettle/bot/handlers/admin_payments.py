from __future__ import annotations

import logging
from typing import List, Optional

from aiogram import Router
from aiogram.filters import Command
from aiogram.types import Message

from pixsettle.container import Services
from pixsettle.errors import MalformedNotification
from pixsettle.payment.inbound import parse_notification
from pixsettle.payment.settlement import SettlementOutcome, SettlementStatus
from pixsettle.services.security import CAP_PAYMENTS_MODERATE, CAP_WITHDRAWALS_MODERATE, has_capability
from pixsettle.utils.money import brl

logger = logging.getLogger(__name__)

router = Router()

LIST_LIMIT = 20


def _args(message: Message) -> List[str]:
    return (message.text or "").split()[1:]


async def _guard(message: Message, capability: str) -> bool:
    if not (message.from_user and has_capability(message.from_user.id, capability)):
        await message.answer("Voce nao tem permissao de administrador.")
        return False
    return True


def _actor(message: Message) -> str:
    return f"tg:{message.from_user.id}" if message.from_user else "tg:?"


def _outcome_text(outcome: SettlementOutcome) -> str:
    if outcome.status is SettlementStatus.SETTLED:
        return (
            f"Creditado: usuario {outcome.payer_id}, {outcome.tokens_credited:,} tokens"
            f" (estrategia {outcome.strategy.value if outcome.strategy else '-'})."
        )
    if outcome.status is SettlementStatus.ALREADY_SETTLED:
        return "Pagamento ja havia sido creditado; nada alterado."
    if outcome.status is SettlementStatus.UNRECONCILED:
        return f"Nao foi possivel identificar o pagador. Pendencia #{outcome.unreconciled_id} registrada."
    return f"Falha ao creditar: {outcome.error}. A expectativa continua pendente."


@router.message(Command("pix_pending"))
async def admin_pix_pending(message: Message, services: Services) -> None:
    if not await _guard(message, CAP_PAYMENTS_MODERATE):
        return
    pending = services.engine.pending()
    if not pending:
        await message.answer("Nenhum PIX aguardando pagamento.")
        return
    lines = [f"PIX pendentes ({len(pending)}):"]
    for exp in pending[:LIST_LIMIT]:
        lines.append(
            f"- {exp.id[:8]} | usuario {exp.payer_id} | {brl(exp.amount_minor)} | {exp.tokens_owed:,} tokens"
            f" | {exp.created_at:%d/%m %H:%M} UTC"
        )
    await message.answer("\n".join(lines))


@router.message(Command("pix_unreconciled"))
async def admin_pix_unreconciled(message: Message, services: Services) -> None:
    if not await _guard(message, CAP_PAYMENTS_MODERATE):
        return
    items = await services.engine.unreconciled()
    if not items:
        await message.answer("Nenhum pagamento sem conciliacao.")
        return
    lines = [f"Pagamentos sem conciliacao ({len(items)}):"]
    for item in items[:LIST_LIMIT]:
        lines.append(
            f"#{item.id} | {brl(item.amount_minor)} | {item.source} | ref={item.external_reference or '-'}"
            f" | tx={item.source_transaction_id or '-'}"
        )
    lines.append("Use /pix_resolve <id> <user_id> para creditar.")
    await message.answer("\n".join(lines))


@router.message(Command("pix_settle"))
async def admin_pix_settle(message: Message, services: Services) -> None:
    if not await _guard(message, CAP_PAYMENTS_MODERATE):
        return
    args = _args(message)
    if not args or len(args) > 2:
        await message.answer("Uso: /pix_settle <valor> [user_id]")
        return
    user_id: Optional[int] = None
    if len(args) == 2:
        try:
            user_id = int(args[1])
        except ValueError:
            await message.answer("user_id invalido.")
            return
    try:
        notification = parse_notification({"amount": args[0]}, source="admin")
    except MalformedNotification as e:
        await message.answer(f"Valor invalido: {e}")
        return
    outcome = await services.engine.settle_manual(notification, user_id=user_id, actor=_actor(message))
    await message.answer(_outcome_text(outcome))


@router.message(Command("pix_resolve"))
async def admin_pix_resolve(message: Message, services: Services) -> None:
    if not await _guard(message, CAP_PAYMENTS_MODERATE):
        return
    args = _args(message)
    try:
        item_id, user_id = int(args[0]), int(args[1])
    except (IndexError, ValueError):
        await message.answer("Uso: /pix_resolve <id> <user_id>")
        return
    try:
        outcome = await services.engine.resolve_unreconciled(item_id, user_id, actor=_actor(message))
    except (LookupError, ValueError) as e:
        await message.answer(str(e))
        return
    await message.answer(_outcome_text(outcome))


@router.message(Command("withdraw_status"))
async def admin_withdraw_status(message: Message, services: Services) -> None:
    if not await _guard(message, CAP_WITHDRAWALS_MODERATE):
        return
    st = services.withdrawals.status()
    if st.is_open and st.window is not None:
        remaining = int(st.time_remaining.total_seconds() // 60) if st.time_remaining else 0
        text = f"Janela {st.window.key} aberta ate {st.window.closes_at:%d/%m %H:%M} ({remaining} min restantes)."
    else:
        text = f"Janela de saque fechada. Proxima abertura: {st.next_opens_at:%d/%m/%Y %H:%M}."
    await message.answer(text)


@router.message(Command("withdraw_open"))
async def admin_withdraw_open(message: Message, services: Services) -> None:
    if not await _guard(message, CAP_WITHDRAWALS_MODERATE):
        return
    try:
        window = await services.withdrawals.force_open(_actor(message))
    except ValueError as e:
        await message.answer(str(e))
        return
    await message.answer(f"Janela {window.key} aberta manualmente ate {window.closes_at:%d/%m %H:%M}.")
