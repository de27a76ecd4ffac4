"""Fee dues ledger: balances, payment allocation, waivers and aging.

Money is carried as ``Decimal`` end to end. Sums are accumulated at full
precision and only rounded to cents when a result is shaped for output.
Stored due status is one of Pending, PartiallyPaid, Paid or Waived; Overdue is
derived from the due date whenever a due is read (see ``effective_status``).
"""

import logging
from collections import defaultdict
from collections.abc import Sequence
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .access import AccessScope, Actor, apply_scope
from .audit import AuditSink, record_audit, record_audit_safely
from .config import settings
from .errors import (
    AllocationConflict,
    AllocationExceedsPayment,
    DuplicateDue,
    FeeLedgerError,
    InvalidAllocation,
    InvalidPayment,
    NotFound,
    OverAllocation,
    WaiveInvalidState,
)
from .models import (
    AuditAction,
    FeeDue,
    FeeDueStatus,
    FeePayment,
    FeePaymentAllocation,
    FeeStructure,
    PaymentStatus,
    Student,
)


logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

OPEN_STATUSES = (FeeDueStatus.PENDING, FeeDueStatus.PARTIALLY_PAID, FeeDueStatus.OVERDUE)
TERMINAL_STATUSES = (FeeDueStatus.PAID, FeeDueStatus.WAIVED)


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_of(now: date | datetime | None) -> date:
    if now is None:
        return date.today()
    if isinstance(now, datetime):
        return now.date()
    return now


def merge_metadata(existing: dict[str, Any] | None, updates: dict[str, Any]) -> dict[str, Any]:
    """Return a new map with ``updates`` laid over ``existing``; other keys are kept."""
    merged = dict(existing or {})
    merged.update(updates)
    return merged


def derive_status(
    balance: Decimal,
    original: Decimal,
    due_date: date | None = None,
    now: date | datetime | None = None,
    waived: bool = False,
) -> FeeDueStatus:
    """Single source of truth for a due's status.

    Without ``now`` the result is the stored form (never Overdue). With ``now``
    an open due whose date has passed reads as Overdue.
    """
    if waived:
        return FeeDueStatus.WAIVED
    if balance <= ZERO:
        return FeeDueStatus.PAID
    status = FeeDueStatus.PENDING if balance >= original else FeeDueStatus.PARTIALLY_PAID
    if now is not None and due_date is not None and due_date < _as_of(now):
        return FeeDueStatus.OVERDUE
    return status


def effective_status(due: FeeDue, now: date | datetime | None = None) -> FeeDueStatus:
    return derive_status(
        to_decimal(due.balance_amount),
        to_decimal(due.original_amount),
        due.due_date,
        _as_of(now),
        waived=due.status == FeeDueStatus.WAIVED,
    )


def days_overdue(due_date: date, as_of: date) -> int:
    return max(0, (as_of - due_date).days)


def is_overdue(due: FeeDue, as_of: date) -> bool:
    return (
        due.status in OPEN_STATUSES
        and to_decimal(due.balance_amount) > ZERO
        and due.due_date < as_of
    )


def describe_due(due: FeeDue, now: date | datetime | None = None) -> dict[str, Any]:
    as_of = _as_of(now)
    return {
        "id": due.id,
        "student_id": due.student_id,
        "fee_structure_id": due.fee_structure_id,
        "fee_type": due.fee_type,
        "academic_year": due.academic_year,
        "current_grade": due.current_grade,
        "due_date": due.due_date,
        "original_amount": quantize_money(due.original_amount),
        "paid_amount": quantize_money(due.paid_amount),
        "balance_amount": quantize_money(due.balance_amount),
        "status": effective_status(due, as_of),
        "days_overdue": days_overdue(due.due_date, as_of) if is_overdue(due, as_of) else 0,
        "installment_number": due.installment_number,
        "metadata": dict(due.metadata_ or {}),
    }


# =============================================================================
# AGING
# =============================================================================

def aging_bucket_labels(bounds: Sequence[int] | None = None) -> list[str]:
    bounds = tuple(bounds or settings.aging_bucket_bounds)
    labels = []
    lower = 0
    for upper in bounds:
        labels.append(f"{lower}-{upper}")
        lower = upper + 1
    labels.append(f"{bounds[-1]}+")
    return labels


def aging_bucket(days: int, bounds: Sequence[int] | None = None) -> str:
    bounds = tuple(bounds or settings.aging_bucket_bounds)
    labels = aging_bucket_labels(bounds)
    for label, upper in zip(labels, bounds):
        if days <= upper:
            return label
    return labels[-1]


def _empty_buckets(labels: list[str]) -> dict[str, dict[str, Any]]:
    return {label: {"count": 0, "amount": ZERO} for label in labels}


def _shape_buckets(buckets: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
    return {
        label: {"count": bucket["count"], "amount": quantize_money(bucket["amount"])}
        for label, bucket in buckets.items()
    }


def calculate_aging(dues: Sequence[FeeDue], as_of: date, bounds: Sequence[int] | None = None) -> dict[str, Any]:
    """Bucket overdue dues by days past due, overall and per fee type.

    Dues that are not overdue on ``as_of`` are skipped, so each eligible due is
    counted in exactly one bucket.
    """
    labels = aging_bucket_labels(bounds)
    overall = _empty_buckets(labels)
    by_fee_type: dict[str, dict[str, dict[str, Any]]] = {}

    for due in dues:
        if not is_overdue(due, as_of):
            continue
        label = aging_bucket(days_overdue(due.due_date, as_of), bounds)
        balance = to_decimal(due.balance_amount)
        per_type = by_fee_type.setdefault(due.fee_type, _empty_buckets(labels))
        for buckets in (overall, per_type):
            buckets[label]["count"] += 1
            buckets[label]["amount"] += balance

    return {
        "buckets": _shape_buckets(overall),
        "by_fee_type": {fee_type: _shape_buckets(buckets) for fee_type, buckets in sorted(by_fee_type.items())},
    }


# =============================================================================
# QUERIES
# =============================================================================

def _status_clause(status: FeeDueStatus, as_of: date):
    if status == FeeDueStatus.OVERDUE:
        return and_(
            FeeDue.status.in_(OPEN_STATUSES),
            FeeDue.balance_amount > 0,
            FeeDue.due_date < as_of,
        )
    if status in (FeeDueStatus.PENDING, FeeDueStatus.PARTIALLY_PAID):
        return and_(FeeDue.status == status, FeeDue.due_date >= as_of)
    return FeeDue.status == status


def _filtered_dues_stmt(filters: dict[str, Any], scope: AccessScope | None, as_of: date):
    stmt = select(FeeDue).join(Student, Student.id == FeeDue.student_id)

    if filters.get("student_id") is not None:
        stmt = stmt.where(FeeDue.student_id == filters["student_id"])
    if filters.get("branch_id") is not None:
        stmt = stmt.where(Student.branch_id == filters["branch_id"])
    if filters.get("fee_type"):
        stmt = stmt.where(FeeDue.fee_type == filters["fee_type"])
    if filters.get("grade"):
        stmt = stmt.where(FeeDue.current_grade == filters["grade"])
    if filters.get("academic_year"):
        stmt = stmt.where(FeeDue.academic_year == filters["academic_year"])
    if filters.get("status"):
        stmt = stmt.where(_status_clause(FeeDueStatus(filters["status"]), as_of))

    if scope is not None:
        stmt = apply_scope(stmt, scope, Student.branch_id)
    return stmt.order_by(FeeDue.due_date, FeeDue.id)


def list_dues(
    db: Session,
    *,
    filters: dict[str, Any] | None = None,
    scope: AccessScope | None = None,
    now: date | datetime | None = None,
) -> list[FeeDue]:
    return list(db.scalars(_filtered_dues_stmt(filters or {}, scope, _as_of(now))))


def _new_totals() -> dict[str, Any]:
    return {
        "count": 0,
        "overdue_count": 0,
        "total_amount": ZERO,
        "paid_amount": ZERO,
        "waived_amount": ZERO,
        "balance_amount": ZERO,
    }


def _accumulate(totals: dict[str, Any], due: FeeDue, as_of: date) -> None:
    original = to_decimal(due.original_amount)
    paid = to_decimal(due.paid_amount)
    balance = to_decimal(due.balance_amount)
    totals["count"] += 1
    totals["total_amount"] += original
    totals["paid_amount"] += paid
    totals["waived_amount"] += original - paid - balance
    totals["balance_amount"] += balance
    if is_overdue(due, as_of):
        totals["overdue_count"] += 1


def _shape_totals(totals: dict[str, Any]) -> dict[str, Any]:
    return {
        key: quantize_money(value) if isinstance(value, Decimal) else value
        for key, value in totals.items()
    }


def get_student_dues(
    db: Session,
    *,
    student_id: int,
    filters: dict[str, Any] | None = None,
    now: date | datetime | None = None,
) -> dict[str, Any]:
    student = db.get(Student, student_id)
    if student is None:
        raise NotFound("Student not found")

    as_of = _as_of(now)
    query_filters = {
        key: value
        for key, value in (filters or {}).items()
        if key in ("academic_year", "status", "fee_type")
    }
    query_filters["student_id"] = student_id
    dues = list(db.scalars(_filtered_dues_stmt(query_filters, None, as_of)))

    grouped: dict[str, dict[str, Any]] = defaultdict(_new_totals)
    overall = _new_totals()
    for due in dues:
        _accumulate(grouped[due.fee_type], due, as_of)
        _accumulate(overall, due, as_of)

    return {
        "student_id": student.id,
        "branch_id": student.branch_id,
        "as_of": as_of,
        "dues": [describe_due(due, as_of) for due in dues],
        "dues_by_type": {fee_type: _shape_totals(totals) for fee_type, totals in sorted(grouped.items())},
        "totals": {**_shape_totals(overall), "fee_types_count": len(grouped)},
    }


def get_overdue_fees(
    db: Session,
    *,
    filters: dict[str, Any] | None = None,
    scope: AccessScope | None = None,
    now: date | datetime | None = None,
) -> dict[str, Any]:
    as_of = _as_of(now)
    query_filters = {
        key: value
        for key, value in (filters or {}).items()
        if key in ("branch_id", "fee_type", "grade")
    }
    query_filters["status"] = FeeDueStatus.OVERDUE
    dues = list(db.scalars(_filtered_dues_stmt(query_filters, scope, as_of)))
    aging = calculate_aging(dues, as_of)

    return {
        "as_of": as_of,
        "overdue_fees": [describe_due(due, as_of) for due in dues],
        "aging_analysis": aging["buckets"],
        "aging_by_fee_type": aging["by_fee_type"],
        "total_count": len(dues),
        "total_amount": quantize_money(sum((to_decimal(due.balance_amount) for due in dues), ZERO)),
    }


def generate_dues_report(
    db: Session,
    *,
    filters: dict[str, Any] | None = None,
    scope: AccessScope | None = None,
    now: date | datetime | None = None,
) -> dict[str, Any]:
    as_of = _as_of(now)
    dues = list(db.scalars(_filtered_dues_stmt(filters or {}, scope, as_of)))

    by_fee_type: dict[str, dict[str, Any]] = defaultdict(_new_totals)
    summary = _new_totals()
    for due in dues:
        _accumulate(by_fee_type[due.fee_type], due, as_of)
        _accumulate(summary, due, as_of)

    aging = calculate_aging(dues, as_of)
    return {
        "as_of": as_of,
        "total_outstanding": quantize_money(summary["balance_amount"]),
        "summary": _shape_totals(summary),
        "by_fee_type": {fee_type: _shape_totals(totals) for fee_type, totals in sorted(by_fee_type.items())},
        "aging_analysis": aging["buckets"],
        "aging_by_fee_type": aging["by_fee_type"],
        "dues": [describe_due(due, as_of) for due in dues],
    }


# =============================================================================
# MUTATIONS
# =============================================================================

def _parse_amount(value: Any) -> Decimal:
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAllocation(f"Invalid allocation amount: {value!r}") from exc
    if not amount.is_finite() or amount <= ZERO:
        raise InvalidAllocation(f"Allocation amounts must be positive, got {value!r}")
    if amount != amount.quantize(CENT):
        raise InvalidAllocation(f"Allocation amounts must have at most two decimal places, got {value!r}")
    return amount


def _lock_payment(db: Session, payment_id: int) -> FeePayment | None:
    stmt = (
        select(FeePayment)
        .where(FeePayment.id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def _lock_due(db: Session, due_id: int) -> FeeDue | None:
    stmt = (
        select(FeeDue)
        .where(FeeDue.id == due_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def apply_payment_to_dues(
    db: Session,
    *,
    payment_id: int,
    due_ids: Sequence[int],
    amounts: Sequence[Any],
    actor: Actor | None = None,
    audit_sink: AuditSink = record_audit,
) -> dict[str, Any]:
    """Spread part of a payment over one or more dues, all or nothing.

    Every balance change is a conditional UPDATE keyed on the balance that was
    read, so a concurrent writer makes this batch fail with
    ``AllocationConflict`` instead of overdrawing a due. The caller retries the
    whole batch.
    """
    if len(due_ids) != len(amounts):
        raise InvalidAllocation("due_ids and amounts must have the same length")
    if not due_ids:
        raise InvalidAllocation("At least one due is required")
    parsed = [_parse_amount(amount) for amount in amounts]
    requested = sum(parsed, ZERO)

    applied: list[dict[str, Any]] = []
    try:
        payment = _lock_payment(db, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.payment_status != PaymentStatus.COMPLETED:
            raise InvalidAllocation(f"Payment {payment_id} is {payment.payment_status.value} and cannot be allocated")

        already_allocated = to_decimal(payment.allocated_amount)
        remaining = to_decimal(payment.total_amount) - already_allocated
        if remaining <= ZERO:
            raise AllocationExceedsPayment(f"Payment {payment_id} is already fully allocated")
        if requested > remaining:
            raise AllocationExceedsPayment(
                f"Requested {quantize_money(requested)} exceeds unallocated {quantize_money(remaining)} "
                f"of payment {payment_id}"
            )

        for due_id, amount in zip(due_ids, parsed):
            due = _lock_due(db, due_id)
            if due is None:
                raise NotFound(f"Fee due {due_id} not found")
            if due.student_id != payment.student_id:
                raise InvalidAllocation(f"Fee due {due_id} does not belong to the payment's student")

            balance_before = to_decimal(due.balance_amount)
            if amount > balance_before:
                raise OverAllocation(
                    f"Allocation {quantize_money(amount)} exceeds balance {quantize_money(balance_before)} "
                    f"of fee due {due_id}"
                )

            balance_after = balance_before - amount
            result = db.execute(
                update(FeeDue)
                .where(FeeDue.id == due.id, FeeDue.balance_amount == balance_before)
                .values(
                    {
                        FeeDue.balance_amount: balance_after,
                        FeeDue.paid_amount: to_decimal(due.paid_amount) + amount,
                        FeeDue.status: derive_status(balance_after, to_decimal(due.original_amount)),
                    }
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AllocationConflict(f"Fee due {due_id} changed during allocation; retry the batch")

            db.add(
                FeePaymentAllocation(
                    fee_payment_id=payment.id,
                    fee_due_id=due.id,
                    amount=amount,
                    created_by=actor.id if actor else None,
                )
            )
            applied.append(
                {
                    "fee_due_id": due.id,
                    "student_id": due.student_id,
                    "fee_type": due.fee_type,
                    "amount": amount,
                    "balance_before": balance_before,
                    "balance_after": balance_after,
                }
            )

        result = db.execute(
            update(FeePayment)
            .where(FeePayment.id == payment.id, FeePayment.allocated_amount == already_allocated)
            .values({FeePayment.allocated_amount: already_allocated + requested})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AllocationConflict(f"Payment {payment_id} changed during allocation; retry the batch")
        payment_method = payment.payment_method

        db.commit()
    except FeeLedgerError as exc:
        db.rollback()
        logger.error(f"Allocation of payment {payment_id} rolled back: {exc.detail}")
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Allocation of payment {payment_id} rolled back: {exc}")
        raise AllocationConflict(f"Allocation of payment {payment_id} could not be committed; retry the batch") from exc

    logger.info(f"Payment {payment_id} allocated {quantize_money(requested)} across {len(applied)} due(s)")

    for entry in applied:
        record_audit_safely(
            db,
            audit_sink,
            AuditAction.PAYMENT,
            entry["student_id"],
            {
                "fee_payment_id": payment_id,
                "fee_due_id": entry["fee_due_id"],
                "amount_before": entry["balance_before"],
                "amount_after": entry["balance_after"],
                "action_amount": entry["amount"],
                "reason": "Payment applied to fee due",
                "metadata": {"fee_type": entry["fee_type"], "payment_method": payment_method},
            },
            actor,
        )

    return {
        "payment_id": payment_id,
        "allocated_amount": quantize_money(requested),
        "unallocated_amount": quantize_money(remaining - requested),
        "allocations": [
            {
                "fee_due_id": entry["fee_due_id"],
                "amount": quantize_money(entry["amount"]),
                "balance_after": quantize_money(entry["balance_after"]),
            }
            for entry in applied
        ],
    }


def waive_due(
    db: Session,
    *,
    due_id: int,
    reason: str,
    actor: Actor | None,
    now: datetime | None = None,
    audit_sink: AuditSink = record_audit,
) -> FeeDue:
    waived_at = now or datetime.now(timezone.utc)
    waived_by = actor.id if actor else None

    try:
        due = _lock_due(db, due_id)
        if due is None:
            raise NotFound("Fee due not found")
        if due.status in TERMINAL_STATUSES:
            raise WaiveInvalidState(f"Fee due {due_id} is already {due.status.value}")

        amount_before = to_decimal(due.balance_amount)
        metadata = merge_metadata(
            due.metadata_,
            {
                "waived_reason": reason,
                "waived_by": waived_by,
                "waived_at": waived_at.isoformat(),
            },
        )
        result = db.execute(
            update(FeeDue)
            .where(
                FeeDue.id == due.id,
                FeeDue.status == due.status,
                FeeDue.balance_amount == amount_before,
            )
            .values(
                {
                    FeeDue.balance_amount: ZERO,
                    FeeDue.status: derive_status(ZERO, to_decimal(due.original_amount), waived=True),
                    FeeDue.metadata_: metadata,
                }
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AllocationConflict(f"Fee due {due_id} changed while being waived; retry")
        db.commit()
    except FeeLedgerError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Waiver of fee due {due_id} rolled back: {exc}")
        raise AllocationConflict(f"Waiver of fee due {due_id} could not be committed; retry") from exc

    logger.info(f"Fee due {due_id} waived by user {waived_by}: {quantize_money(amount_before)} written off")

    record_audit_safely(
        db,
        audit_sink,
        AuditAction.WAIVER,
        due.student_id,
        {
            "fee_due_id": due.id,
            "amount_before": amount_before,
            "amount_after": ZERO,
            "action_amount": amount_before,
            "reason": reason,
            "metadata": {"fee_type": due.fee_type, "waived_by": waived_by},
        },
        actor,
    )

    db.refresh(due)
    return due


def record_payment(
    db: Session,
    *,
    student_id: int,
    amount_paid: Any,
    payment_method: str,
    payment_date: date | None = None,
    discount_amount: Any = ZERO,
    late_fee: Any = ZERO,
    fee_structure_id: int | None = None,
    receipt_number: str | None = None,
    actor: Actor | None = None,
) -> FeePayment:
    amount_paid = to_decimal(amount_paid)
    discount_amount = to_decimal(discount_amount)
    late_fee = to_decimal(late_fee)
    if min(amount_paid, discount_amount, late_fee) < ZERO:
        raise InvalidPayment("Payment amounts cannot be negative")
    total_amount = amount_paid + late_fee - discount_amount
    if total_amount <= ZERO:
        raise InvalidPayment("Payment total must be positive")

    if db.get(Student, student_id) is None:
        raise NotFound("Student not found")

    payment = FeePayment(
        student_id=student_id,
        fee_structure_id=fee_structure_id,
        amount_paid=amount_paid,
        discount_amount=discount_amount,
        late_fee=late_fee,
        total_amount=total_amount,
        allocated_amount=ZERO,
        payment_date=payment_date or date.today(),
        payment_status=PaymentStatus.COMPLETED,
        payment_method=payment_method.strip(),
        receipt_number=receipt_number,
        created_by=actor.id if actor else None,
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidPayment("Receipt number already in use") from exc
    db.refresh(payment)

    logger.info(f"Recorded payment {payment.id} of {quantize_money(total_amount)} for student {student_id}")
    return payment


def assign_fee_structure(
    db: Session,
    *,
    fee_structure_id: int,
    student_id: int,
    installment_number: int | None = None,
) -> FeeDue:
    structure = db.get(FeeStructure, fee_structure_id)
    if structure is None or not structure.is_active:
        raise NotFound("Active fee structure not found")
    student = db.get(Student, student_id)
    if student is None:
        raise NotFound("Student not found")

    exists = db.scalar(
        select(FeeDue.id).where(
            FeeDue.student_id == student_id,
            FeeDue.fee_structure_id == fee_structure_id,
            FeeDue.academic_year == structure.academic_year,
            FeeDue.installment_number.is_(None)
            if installment_number is None
            else FeeDue.installment_number == installment_number,
        )
    )
    if exists is not None:
        raise DuplicateDue("Fee structure already assigned to this student")

    amount = to_decimal(structure.amount)
    due = FeeDue(
        student_id=student.id,
        fee_structure_id=structure.id,
        fee_type=structure.fee_type,
        academic_year=structure.academic_year,
        original_grade=student.grade,
        current_grade=student.grade,
        due_date=structure.due_date,
        original_amount=amount,
        paid_amount=ZERO,
        balance_amount=amount,
        status=derive_status(amount, amount),
        installment_number=installment_number,
        metadata_={},
    )
    db.add(due)
    db.commit()
    db.refresh(due)
    return due


def update_fee_aging(db: Session, *, now: date | datetime | None = None) -> int:
    """Refresh the stored ``overdue_days`` of every open due; returns how many changed."""
    as_of = _as_of(now)
    dues = db.scalars(
        select(FeeDue).where(FeeDue.status.in_(OPEN_STATUSES), FeeDue.balance_amount > 0)
    )

    updated = 0
    for due in dues:
        overdue_days = days_overdue(due.due_date, as_of)
        if due.overdue_days != overdue_days:
            due.overdue_days = overdue_days
            updated += 1

    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("Error updating fee aging", exc_info=True)
        raise

    logger.info(f"Updated aging for {updated} fee dues (as of {as_of.isoformat()})")
    return updated
