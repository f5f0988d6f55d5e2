from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pixsettle.storage.base import AuditRecord, Storage

logger = logging.getLogger(__name__)


async def log_audit(
    storage: Storage,
    *,
    actor: str,
    action: str,
    target_type: str,
    target_id: Optional[Any] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Optional[AuditRecord]:
    """Persist an audit record.

    A failing audit write is logged with the full record so the trail can be
    rebuilt from logs; it never aborts the operation being audited.
    """
    record = AuditRecord(
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        meta=dict(meta or {}),
    )
    try:
        return await storage.create_audit_record(record)
    except Exception:
        logger.exception(
            "audit write failed",
            extra={"extra": {"actor": actor, "action": action, "target_type": target_type, "target_id": record.target_id, "meta": record.meta}},
        )
        return None
