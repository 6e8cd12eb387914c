from __future__ import annotations

from sqlalchemy.orm import Session

from palletflow.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor: str | None,
    action: str,
    entity_type: str | None = None,
    entity_id: int | str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=None if entity_id is None else str(entity_id),
            meta=metadata or {},
        )
    )
