import logging
from collections.abc import Callable
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .access import Actor
from .errors import AuditWriteFailed
from .models import AuditAction, FeeAuditLog


logger = logging.getLogger(__name__)

AuditSink = Callable[[Session, AuditAction, int, dict[str, Any], Actor | None], Any]


def record_audit(
    db: Session,
    action: AuditAction,
    student_id: int,
    payload: dict[str, Any],
    actor: Actor | None,
) -> FeeAuditLog:
    log = FeeAuditLog(
        action=action,
        student_id=student_id,
        fee_payment_id=payload.get("fee_payment_id"),
        fee_due_id=payload.get("fee_due_id"),
        amount_before=payload.get("amount_before", Decimal("0")),
        amount_after=payload.get("amount_after", Decimal("0")),
        action_amount=payload.get("action_amount", Decimal("0")),
        reason=payload.get("reason"),
        metadata_=payload.get("metadata", {}),
        created_by=actor.id if actor else None,
    )
    db.add(log)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise AuditWriteFailed(f"Could not store {action.value} audit entry: {exc}") from exc
    return log


def record_audit_safely(
    db: Session,
    sink: AuditSink,
    action: AuditAction,
    student_id: int,
    payload: dict[str, Any],
    actor: Actor | None,
) -> bool:
    # Audit entries are written after the ledger change is committed; a failure here
    # is reported but never undoes the change it describes.
    try:
        sink(db, action, student_id, payload, actor)
    except Exception as exc:
        db.rollback()
        logger.warning(
            f"Failed to write {action.value} audit for student {student_id} "
            f"(due={payload.get('fee_due_id')}, payment={payload.get('fee_payment_id')}): {exc}"
        )
        return False
    return True


def _apply_date_range(stmt, filters: dict[str, Any]):
    from_date = filters.get("from_date")
    to_date = filters.get("to_date")
    if from_date:
        if not isinstance(from_date, datetime):
            from_date = datetime.combine(from_date, time.min)
        stmt = stmt.where(FeeAuditLog.created_at >= from_date)
    if to_date:
        if isinstance(to_date, datetime):
            stmt = stmt.where(FeeAuditLog.created_at <= to_date)
        else:
            # A bare date includes the whole day.
            stmt = stmt.where(FeeAuditLog.created_at < datetime.combine(to_date + timedelta(days=1), time.min))
    return stmt


def get_student_audit_logs(db: Session, *, student_id: int, filters: dict[str, Any] | None = None) -> list[FeeAuditLog]:
    filters = filters or {}
    stmt = select(FeeAuditLog).where(FeeAuditLog.student_id == student_id)
    if filters.get("action"):
        stmt = stmt.where(FeeAuditLog.action == AuditAction(filters["action"]))
    stmt = _apply_date_range(stmt, filters)
    return list(db.scalars(stmt.order_by(FeeAuditLog.created_at.desc(), FeeAuditLog.id.desc())))


def get_audit_logs_by_action(
    db: Session, *, action: AuditAction, filters: dict[str, Any] | None = None
) -> list[FeeAuditLog]:
    stmt = _apply_date_range(select(FeeAuditLog).where(FeeAuditLog.action == action), filters or {})
    return list(db.scalars(stmt.order_by(FeeAuditLog.created_at.desc(), FeeAuditLog.id.desc())))
