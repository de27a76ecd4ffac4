from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from backend.school_module import dues
from backend.school_module.access import AccessScope, Actor
from backend.school_module.audit import get_audit_logs_by_action, get_student_audit_logs
from backend.school_module.dues import (
    aging_bucket,
    aging_bucket_labels,
    apply_payment_to_dues,
    assign_fee_structure,
    derive_status,
    generate_dues_report,
    get_overdue_fees,
    get_student_dues,
    list_dues,
    merge_metadata,
    record_payment,
    update_fee_aging,
    waive_due,
)
from backend.school_module.errors import (
    AllocationConflict,
    AllocationExceedsPayment,
    DuplicateDue,
    InvalidAllocation,
    InvalidPayment,
    NotFound,
    OverAllocation,
    WaiveInvalidState,
)
from backend.school_module.models import (
    AuditAction,
    FeeAuditLog,
    FeeDue,
    FeeDueStatus,
    FeePayment,
    FeePaymentAllocation,
    PaymentStatus,
    UserRole,
)


AS_OF = date(2026, 10, 18)


@pytest.fixture
def student(factory):
    return factory.student(factory.branch())


def _reload(db, model, pk):
    db.expire_all()
    return db.get(model, pk)


def _allocated_to(db, due_id):
    total = db.scalar(
        select(func.coalesce(func.sum(FeePaymentAllocation.amount), 0)).where(FeePaymentAllocation.fee_due_id == due_id)
    )
    return Decimal(str(total))


def test_derive_status():
    hundred = Decimal("100")

    assert derive_status(hundred, hundred) == FeeDueStatus.PENDING
    assert derive_status(Decimal("40"), hundred) == FeeDueStatus.PARTIALLY_PAID
    assert derive_status(Decimal("0"), hundred) == FeeDueStatus.PAID
    assert derive_status(Decimal("40"), hundred, date(2026, 1, 1), AS_OF) == FeeDueStatus.OVERDUE
    assert derive_status(Decimal("40"), hundred, AS_OF, AS_OF) == FeeDueStatus.PARTIALLY_PAID
    assert derive_status(Decimal("0"), hundred, date(2026, 1, 1), AS_OF) == FeeDueStatus.PAID
    assert derive_status(hundred, hundred, waived=True) == FeeDueStatus.WAIVED


def test_merge_metadata_keeps_existing_keys():
    existing = {"source": "import", "note": "old"}

    merged = merge_metadata(existing, {"note": "new", "extra": 1})

    assert merged == {"source": "import", "note": "new", "extra": 1}
    assert existing == {"source": "import", "note": "old"}


def test_allocations_move_due_from_pending_to_paid(db, factory, student):
    due = factory.due(student, original="1000")
    payment = factory.payment(student, amount="2000")

    first = apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["400"])
    due = _reload(db, FeeDue, due.id)
    assert due.balance_amount == Decimal("600")
    assert due.status == FeeDueStatus.PARTIALLY_PAID
    assert first["allocations"] == [
        {"fee_due_id": due.id, "amount": Decimal("400.00"), "balance_after": Decimal("600.00")}
    ]

    apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=[Decimal("600")])
    due = _reload(db, FeeDue, due.id)
    assert due.balance_amount == Decimal("0")
    assert due.status == FeeDueStatus.PAID

    with pytest.raises(OverAllocation):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["1"])


def test_balance_always_equals_original_minus_allocations(db, factory, student):
    tuition = factory.due(student, original="1200.50")
    transport = factory.due(student, original="300", fee_type="Transport")
    first = factory.payment(student, amount="500")
    second = factory.payment(student, amount="1000")

    apply_payment_to_dues(db, payment_id=first.id, due_ids=[tuition.id, transport.id], amounts=["250.25", "249.75"])
    apply_payment_to_dues(db, payment_id=second.id, due_ids=[tuition.id], amounts=["950.25"])
    apply_payment_to_dues(db, payment_id=second.id, due_ids=[transport.id], amounts=["0.25"])

    for due_id in (tuition.id, transport.id):
        due = _reload(db, FeeDue, due_id)
        assert due.balance_amount == due.original_amount - _allocated_to(db, due_id)
        assert due.balance_amount >= 0
    assert _reload(db, FeeDue, tuition.id).status == FeeDueStatus.PAID
    assert _reload(db, FeePayment, second.id).allocated_amount == Decimal("950.50")


def test_over_allocation_in_batch_changes_nothing(db, factory, student):
    ok_due = factory.due(student, original="500")
    small_due = factory.due(student, original="100", fee_type="Library")
    payment = factory.payment(student, amount="1000")

    with pytest.raises(OverAllocation):
        apply_payment_to_dues(
            db, payment_id=payment.id, due_ids=[ok_due.id, small_due.id], amounts=["300", "150"]
        )

    assert _reload(db, FeeDue, ok_due.id).balance_amount == Decimal("500")
    assert _reload(db, FeeDue, small_due.id).balance_amount == Decimal("100")
    assert _reload(db, FeePayment, payment.id).allocated_amount == Decimal("0")
    assert db.scalar(select(func.count(FeePaymentAllocation.id))) == 0
    assert db.scalar(select(func.count(FeeAuditLog.id))) == 0


def test_missing_due_in_batch_changes_nothing(db, factory, student):
    due = factory.due(student, original="500")
    payment = factory.payment(student, amount="1000")

    with pytest.raises(NotFound):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id, 9999], amounts=["100", "100"])

    assert _reload(db, FeeDue, due.id).balance_amount == Decimal("500")


def test_allocation_cannot_exceed_payment(db, factory, student):
    due = factory.due(student, original="1000")
    payment = factory.payment(student, amount="300")

    with pytest.raises(AllocationExceedsPayment):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["301"])

    apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["300"])
    with pytest.raises(AllocationExceedsPayment, match="fully allocated"):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["1"])


def test_payment_total_accounts_for_discount_and_late_fee(db, factory, student):
    due = factory.due(student, original="1000")
    payment = factory.payment(student, amount="500", discount="100", late_fee="20")

    with pytest.raises(AllocationExceedsPayment):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["421"])

    result = apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["420"])
    assert result["unallocated_amount"] == Decimal("0.00")


@pytest.mark.parametrize("amounts", [["0"], ["-5"], ["10.001"], ["abc"]])
def test_invalid_allocation_amounts(db, factory, student, amounts):
    due = factory.due(student)
    payment = factory.payment(student)

    with pytest.raises(InvalidAllocation):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=amounts)


def test_mismatched_batch_lengths(db, factory, student):
    due = factory.due(student)
    payment = factory.payment(student)

    with pytest.raises(InvalidAllocation):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["1", "2"])
    with pytest.raises(InvalidAllocation):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[], amounts=[])


def test_unknown_or_incomplete_payment(db, factory, student):
    due = factory.due(student)
    pending = factory.payment(student, status=PaymentStatus.PENDING)

    with pytest.raises(NotFound):
        apply_payment_to_dues(db, payment_id=424242, due_ids=[due.id], amounts=["1"])
    with pytest.raises(InvalidAllocation):
        apply_payment_to_dues(db, payment_id=pending.id, due_ids=[due.id], amounts=["1"])


def test_due_of_another_student_is_rejected(db, factory, student):
    other = factory.student(factory.branch())
    foreign_due = factory.due(other)
    payment = factory.payment(student)

    with pytest.raises(InvalidAllocation):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[foreign_due.id], amounts=["10"])

    assert _reload(db, FeeDue, foreign_due.id).balance_amount == Decimal("1000")


def test_concurrent_balance_change_aborts_batch(db, factory, student, monkeypatch):
    first = factory.due(student, original="500")
    second = factory.due(student, original="500", fee_type="Transport")
    payment = factory.payment(student, amount="1000")
    original_lock = dues._lock_due

    def lock_then_race(session, due_id):
        due = original_lock(session, due_id)
        if due_id == second.id:
            session.execute(
                update(FeeDue)
                .where(FeeDue.id == due_id)
                .values(balance_amount=Decimal("450"))
                .execution_options(synchronize_session=False)
            )
        return due

    monkeypatch.setattr(dues, "_lock_due", lock_then_race)

    with pytest.raises(AllocationConflict):
        apply_payment_to_dues(db, payment_id=payment.id, due_ids=[first.id, second.id], amounts=["100", "100"])

    assert _reload(db, FeeDue, first.id).balance_amount == Decimal("500")
    assert _reload(db, FeePayment, payment.id).allocated_amount == Decimal("0")


def test_allocation_writes_payment_audit_entries(db, factory, student):
    user = factory.user(UserRole.ACCOUNTANT, branch=factory.branch())
    actor = Actor(id=user.id, email=user.email, role=user.role, branch_id=user.branch_id)
    due = factory.due(student, original="800")
    payment = factory.payment(student, amount="800")

    apply_payment_to_dues(db, payment_id=payment.id, due_ids=[due.id], amounts=["200"], actor=actor)

    [log] = get_student_audit_logs(db, student_id=student.id)
    assert log.action == AuditAction.PAYMENT
    assert log.fee_payment_id == payment.id
    assert log.fee_due_id == due.id
    assert log.amount_before == Decimal("800")
    assert log.amount_after == Decimal("600")
    assert log.action_amount == Decimal("200")
    assert log.created_by == user.id
    assert log.metadata_["payment_method"] == "Cash"


def test_audit_failure_does_not_undo_allocation(db, factory, student, caplog):
    due = factory.due(student, original="800")
    payment = factory.payment(student, amount="800")

    def failing_sink(*args):
        raise RuntimeError("audit store offline")

    result = apply_payment_to_dues(
        db, payment_id=payment.id, due_ids=[due.id], amounts=["800"], audit_sink=failing_sink
    )

    assert result["allocated_amount"] == Decimal("800.00")
    assert _reload(db, FeeDue, due.id).status == FeeDueStatus.PAID
    assert "audit store offline" in caplog.text


def test_waive_due_merges_metadata(db, factory, student):
    due = factory.due(student, original="500", metadata={"source": "migration"})
    actor = Actor(id=7, email="admin@school.test", role=UserRole.BRANCH_ADMIN)

    waived = waive_due(db, due_id=due.id, reason="financial hardship", actor=actor)

    assert waived.balance_amount == Decimal("0")
    assert waived.status == FeeDueStatus.WAIVED
    assert waived.metadata_["waived_reason"] == "financial hardship"
    assert waived.metadata_["waived_by"] == 7
    assert "waived_at" in waived.metadata_
    assert waived.metadata_["source"] == "migration"


def test_waive_twice_is_rejected(db, factory, student):
    due = factory.due(student, original="500", balance="200")
    actor = Actor(id=1, email="admin@school.test", role=UserRole.BRANCH_ADMIN)

    waive_due(db, due_id=due.id, reason="hardship", actor=actor)
    with pytest.raises(WaiveInvalidState):
        waive_due(db, due_id=due.id, reason="again", actor=actor)

    due = _reload(db, FeeDue, due.id)
    assert due.balance_amount == Decimal("0")
    assert due.metadata_["waived_reason"] == "hardship"


def test_paid_due_cannot_be_waived(db, factory, student):
    due = factory.due(student, original="500", balance="0")

    with pytest.raises(WaiveInvalidState):
        waive_due(db, due_id=due.id, reason="too late", actor=None)


def test_waive_unknown_due(db):
    with pytest.raises(NotFound):
        waive_due(db, due_id=123, reason="n/a", actor=None)


def test_waiver_is_audited(db, factory, student):
    user = factory.user(UserRole.BRANCH_ADMIN, branch=factory.branch())
    actor = Actor(id=user.id, email=user.email, role=user.role, branch_id=user.branch_id)
    due = factory.due(student, original="500", balance="350")

    waive_due(db, due_id=due.id, reason="scholarship", actor=actor,
              now=datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc))

    [log] = get_audit_logs_by_action(db, action=AuditAction.WAIVER)
    assert log.student_id == student.id
    assert log.amount_before == Decimal("350")
    assert log.amount_after == Decimal("0")
    assert log.reason == "scholarship"
    assert _reload(db, FeeDue, due.id).metadata_["waived_at"] == "2026-10-18T09:30:00+00:00"


def test_audit_failure_does_not_undo_waiver(db, factory, student, caplog):
    due = factory.due(student, original="500")

    def failing_sink(*args):
        raise RuntimeError("audit store offline")

    waived = waive_due(db, due_id=due.id, reason="hardship", actor=None, audit_sink=failing_sink)

    assert waived.status == FeeDueStatus.WAIVED
    assert _reload(db, FeeDue, due.id).balance_amount == Decimal("0")
    assert "Failed to write Waiver audit" in caplog.text


def test_student_dues_summary(db, factory, student):
    factory.due(student, original="1000", balance="400", due_date=AS_OF - timedelta(days=5))
    factory.due(student, original="500", due_date=AS_OF + timedelta(days=20))
    factory.due(student, original="300", balance="0", fee_type="Transport", status=FeeDueStatus.WAIVED)

    result = get_student_dues(db, student_id=student.id, now=AS_OF)

    assert result["branch_id"] == student.branch_id
    assert [d["status"] for d in result["dues"]] == [
        FeeDueStatus.OVERDUE,
        FeeDueStatus.PENDING,
        FeeDueStatus.WAIVED,
    ]
    tuition = result["dues_by_type"]["Tuition"]
    assert tuition["count"] == 2
    assert tuition["overdue_count"] == 1
    assert tuition["total_amount"] == Decimal("1500.00")
    assert tuition["paid_amount"] == Decimal("600.00")
    assert tuition["balance_amount"] == Decimal("900.00")
    transport = result["dues_by_type"]["Transport"]
    assert transport["waived_amount"] == Decimal("300.00")
    assert transport["balance_amount"] == Decimal("0.00")
    assert result["totals"]["fee_types_count"] == 2
    assert result["totals"]["balance_amount"] == Decimal("900.00")
    assert result["dues"][0]["days_overdue"] == 5


def test_student_dues_is_read_only(db, factory, student):
    due = factory.due(student, original="1000", due_date=AS_OF - timedelta(days=40))

    first = get_student_dues(db, student_id=student.id, now=AS_OF)
    second = get_student_dues(db, student_id=student.id, now=AS_OF)

    assert first == second
    stored = _reload(db, FeeDue, due.id)
    assert stored.status == FeeDueStatus.PENDING
    assert stored.overdue_days == 0


def test_student_dues_status_filter_uses_effective_status(db, factory, student):
    factory.due(student, due_date=AS_OF - timedelta(days=1))
    upcoming = factory.due(student, due_date=AS_OF + timedelta(days=1))

    overdue = get_student_dues(db, student_id=student.id, filters={"status": "Overdue"}, now=AS_OF)
    pending = get_student_dues(db, student_id=student.id, filters={"status": "Pending"}, now=AS_OF)

    assert overdue["totals"]["count"] == 1
    assert [d["id"] for d in pending["dues"]] == [upcoming.id]


def test_student_dues_unknown_student(db):
    with pytest.raises(NotFound):
        get_student_dues(db, student_id=555)


def test_aging_buckets_partition_overdue_dues(db, factory, student):
    for days in (1, 30, 31, 60, 61, 90, 91, 400):
        factory.due(student, original="100", due_date=AS_OF - timedelta(days=days))
    factory.due(student, original="100", due_date=AS_OF)
    factory.due(student, original="100", due_date=AS_OF + timedelta(days=3))
    factory.due(student, original="100", balance="0", due_date=AS_OF - timedelta(days=10))
    factory.due(student, original="100", balance="0", due_date=AS_OF - timedelta(days=10),
                status=FeeDueStatus.WAIVED)
    factory.due(student, original="100", balance="25", fee_type="Transport",
                due_date=AS_OF - timedelta(days=45))

    result = get_overdue_fees(db, now=AS_OF)

    buckets = result["aging_analysis"]
    assert {label: bucket["count"] for label, bucket in buckets.items()} == {
        "0-30": 2,
        "31-60": 3,
        "61-90": 2,
        "90+": 2,
    }
    assert sum(bucket["count"] for bucket in buckets.values()) == result["total_count"] == 9
    assert buckets["31-60"]["amount"] == Decimal("225.00")
    assert result["total_amount"] == Decimal("825.00")
    assert result["aging_by_fee_type"]["Transport"]["31-60"] == {"count": 1, "amount": Decimal("25.00")}


def test_overdue_fees_respect_scope(db, factory):
    mine, theirs = factory.branch(), factory.branch()
    my_due = factory.due(factory.student(mine), due_date=AS_OF - timedelta(days=10))
    factory.due(factory.student(theirs), due_date=AS_OF - timedelta(days=10))

    scoped = get_overdue_fees(db, scope=AccessScope.of([mine.id]), now=AS_OF)
    empty = get_overdue_fees(db, scope=AccessScope.nothing(), now=AS_OF)

    assert [d["id"] for d in scoped["overdue_fees"]] == [my_due.id]
    assert empty["total_count"] == 0
    assert empty["total_amount"] == Decimal("0.00")


def test_dues_report(db, factory):
    branch = factory.branch()
    first, second = factory.student(branch, grade="Grade 1"), factory.student(branch, grade="Grade 2")
    factory.due(first, original="1000", balance="250", due_date=AS_OF - timedelta(days=70))
    factory.due(first, original="200", fee_type="Transport", due_date=AS_OF + timedelta(days=10))
    factory.due(second, original="1000", balance="0", status=FeeDueStatus.WAIVED)

    report = generate_dues_report(db, scope=AccessScope.of([branch.id]), now=AS_OF)

    assert report["total_outstanding"] == Decimal("450.00")
    assert report["summary"]["count"] == 3
    assert report["summary"]["overdue_count"] == 1
    assert report["summary"]["waived_amount"] == Decimal("1000.00")
    assert report["by_fee_type"]["Transport"]["balance_amount"] == Decimal("200.00")
    assert report["aging_analysis"]["61-90"] == {"count": 1, "amount": Decimal("250.00")}

    grade_two = generate_dues_report(db, filters={"grade": "Grade 2"}, now=AS_OF)
    assert grade_two["summary"]["count"] == 1


def test_list_dues_filters(db, factory):
    branch, other = factory.branch(), factory.branch()
    student = factory.student(branch)
    tuition = factory.due(student)
    factory.due(student, fee_type="Transport")
    factory.due(factory.student(other))

    assert [d.id for d in list_dues(db, filters={"fee_type": "Tuition", "branch_id": branch.id})] == [tuition.id]
    assert len(list_dues(db, scope=AccessScope.of([branch.id]))) == 2


def test_aging_bucket_labels():
    assert aging_bucket_labels((30, 60, 90)) == ["0-30", "31-60", "61-90", "90+"]
    assert aging_bucket_labels((15, 45)) == ["0-15", "16-45", "45+"]
    assert aging_bucket(0, (30, 60, 90)) == "0-30"
    assert aging_bucket(90, (30, 60, 90)) == "61-90"
    assert aging_bucket(91, (30, 60, 90)) == "90+"


def test_update_fee_aging(db, factory, student):
    late = factory.due(student, due_date=AS_OF - timedelta(days=12))
    upcoming = factory.due(student, due_date=AS_OF + timedelta(days=12))
    paid = factory.due(student, balance="0", due_date=AS_OF - timedelta(days=12))

    assert update_fee_aging(db, now=AS_OF) == 1
    assert update_fee_aging(db, now=AS_OF) == 0

    assert _reload(db, FeeDue, late.id).overdue_days == 12
    assert _reload(db, FeeDue, upcoming.id).overdue_days == 0
    assert _reload(db, FeeDue, paid.id).overdue_days == 0
    assert _reload(db, FeeDue, late.id).status == FeeDueStatus.PENDING


def test_record_payment(db, factory, student):
    payment = record_payment(
        db,
        student_id=student.id,
        amount_paid="1000",
        discount_amount="50",
        late_fee="25.50",
        payment_method=" Cash ",
        payment_date=AS_OF,
        receipt_number="RCPT-001",
    )

    assert payment.total_amount == Decimal("975.50")
    assert payment.allocated_amount == Decimal("0")
    assert payment.payment_status == PaymentStatus.COMPLETED
    assert payment.payment_method == "Cash"

    with pytest.raises(InvalidPayment):
        record_payment(db, student_id=student.id, amount_paid="10", payment_method="Cash",
                       receipt_number="RCPT-001")


def test_record_payment_validation(db, student):
    with pytest.raises(InvalidPayment):
        record_payment(db, student_id=student.id, amount_paid="50", discount_amount="50", payment_method="Cash")
    with pytest.raises(InvalidPayment):
        record_payment(db, student_id=student.id, amount_paid="-1", payment_method="Cash")
    with pytest.raises(NotFound):
        record_payment(db, student_id=9999, amount_paid="10", payment_method="Cash")


def test_assign_fee_structure(db, factory, student):
    structure = factory.structure(factory.branch(), amount="750", fee_type="Lab")

    due = assign_fee_structure(db, fee_structure_id=structure.id, student_id=student.id)

    assert due.balance_amount == Decimal("750")
    assert due.status == FeeDueStatus.PENDING
    assert due.fee_type == "Lab"
    assert due.current_grade == student.grade

    with pytest.raises(DuplicateDue):
        assign_fee_structure(db, fee_structure_id=structure.id, student_id=student.id)

    second = assign_fee_structure(db, fee_structure_id=structure.id, student_id=student.id, installment_number=2)
    assert second.installment_number == 2


def test_assign_inactive_structure(db, factory, student):
    structure = factory.structure(factory.branch())
    structure.is_active = False
    db.commit()

    with pytest.raises(NotFound):
        assign_fee_structure(db, fee_structure_id=structure.id, student_id=student.id)
