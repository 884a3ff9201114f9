from __future__ import annotations

from sqlalchemy.orm import Session

from order_board.models import AuditLog


def log_audit(
    db: Session,
    *,
    tenant_id: str,
    actor_principal_id: int | None,
    action: str,
    ip: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            tenant_id=tenant_id,
            actor_principal_id=actor_principal_id,
            action=action,
            ip=ip,
            meta=metadata or {},
        )
    )
