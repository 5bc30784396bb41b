from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from resource_office.models.inventory_models import AuditLog


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    user_id: str | int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=str(user_id) if user_id is not None else None,
            CreatedAt=datetime.now(),
        )
    )
