"""Audit service for logging entity lifecycle events."""

from sqlalchemy.orm import Session

from meterbill.models.audit_log import AuditLog


class AuditService:
    """Service for audit log operations.

    Provides static method to create minimal audit log entries.
    """

    @staticmethod
    def log(
        db: Session,
        entity_type: str,
        entity_id: int | None,
        action: str,
        actor_id: int | None = None,
        changes: dict | None = None,
    ) -> AuditLog:
        """Create audit log entry (one-liner).

        Args:
            db: Database session
            entity_type: Type of entity ("meter_reading", "bill", "payment", etc.)
            entity_id: Primary key of the entity (None for rejected writes)
            action: Dotted event name ("reading.created", "payment.reconciled", etc.)
            actor_id: User who performed the action (optional)
            changes: Optional JSON-serializable context

        Returns:
            Created AuditLog object
        """
        audit = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            changes=changes,
        )
        db.add(audit)
        return audit

    @staticmethod
    def log_rejection(
        db: Session,
        entity_type: str,
        entity_id: int | None,
        action: str,
        actor_id: int | None = None,
        changes: dict | None = None,
    ) -> AuditLog:
        """Persist an audit entry for a rejected write on its own commit.

        The rejected write itself is never flushed, so the session only holds
        the audit row when this commits.
        """
        db.rollback()
        audit = AuditService.log(db, entity_type, entity_id, action, actor_id, changes)
        db.commit()
        return audit


__all__ = ["AuditService"]
