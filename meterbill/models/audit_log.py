"""Audit log model for tracking key entity lifecycle events."""

from typing import Any

from sqlalchemy import JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from meterbill.models import Base, BaseModel


class AuditLog(Base, BaseModel):
    """Audit log entry for tracking changes to key entities.

    Records who (actor_id) did what (action) to which entity (entity_type, entity_id)
    and a JSON context snapshot (changes).
    """

    __tablename__ = "audit_logs"

    entity_type: Mapped[str] = mapped_column(index=False)
    """Entity type being audited: "meter_reading", "bill", "payment", etc."""

    entity_id: Mapped[int | None] = mapped_column(nullable=True, index=False)
    """Primary key of the entity; None when a write was rejected before insert."""

    action: Mapped[str] = mapped_column(index=False)
    """Dotted event name: "reading.created", "payment.reconciled", etc."""

    actor_id: Mapped[int | None] = mapped_column(nullable=True, index=False)
    """User who performed the action. None for system actions."""

    changes: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True, index=False)
    """Optional JSON context: {"previous_value": "500.000", "reason": "..."}."""

    __table_args__ = (Index("idx_audit_entity", "entity_type", "entity_id"),)

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, entity_type={self.entity_type}, entity_id={self.entity_id}, "
            f"action={self.action}, actor_id={self.actor_id}, created_at={self.created_at})>"
        )


__all__ = ["AuditLog"]
