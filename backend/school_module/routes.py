from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .access import AccessScope, Actor, can_manage_branch, resolve_scope
from .audit import get_student_audit_logs
from .database import get_db_session
from .dues import (
    apply_payment_to_dues,
    describe_due,
    generate_dues_report,
    get_overdue_fees,
    get_student_dues,
    list_dues,
    record_payment,
    waive_due,
)
from .errors import FeeLedgerError
from .middleware import get_current_actor, get_current_scope, require_permission, require_roles
from .models import AuditAction, FeeDue, FeeDueStatus, FeePayment, Student, UserRole
from .schemas import (
    ActorOut,
    AllocationOut,
    AllocationRequest,
    AuditLogOut,
    DuesReportOut,
    FeeDueOut,
    LoginRequest,
    LoginResponse,
    OverdueFeesOut,
    PaymentCreateRequest,
    PaymentOut,
    ScopeOut,
    StudentDuesOut,
    WaiveRequest,
)
from .services import FEES_COLLECT, FEES_VIEW, FEES_WAIVE, login_user

router = APIRouter(prefix="/api/v1/school", tags=["Branches & Fees"])


def _http_error(exc: FeeLedgerError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def _scope_out(scope: AccessScope) -> ScopeOut:
    return ScopeOut(all_branches=scope.all_branches, branch_ids=sorted(scope.branch_ids))


def _student_in_scope(db: Session, scope: AccessScope, student_id: int) -> Student:
    student = db.get(Student, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    if not scope.allows(student.branch_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Student belongs to a branch outside your access")
    return student


def _ensure_can_manage(db: Session, actor: Actor, student_id: int) -> None:
    student = db.get(Student, student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    if not can_manage_branch(db, actor, student.branch_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot manage fees for this branch")


@router.post("/auth/login", response_model=LoginResponse)
def login(payload: LoginRequest, db: Session = Depends(get_db_session)):
    user, token = login_user(db, email=payload.email, password=payload.password)
    return LoginResponse(access_token=token, user_id=user.id, role=user.role)


@router.get("/me", response_model=ActorOut)
def me(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db_session)):
    return ActorOut(
        id=actor.id,
        email=actor.email,
        role=actor.role,
        branch_id=actor.branch_id,
        permissions=sorted(actor.permissions),
        scope=_scope_out(resolve_scope(db, actor)),
    )


@router.get("/branches/accessible", response_model=ScopeOut)
def accessible_branches(scope: AccessScope = Depends(get_current_scope)):
    return _scope_out(scope)


@router.get("/fees/dues", response_model=list[FeeDueOut])
def index_dues(
    status_filter: FeeDueStatus | None = Query(default=None, alias="status"),
    fee_type: str | None = None,
    grade: str | None = None,
    academic_year: str | None = None,
    branch_id: int | None = None,
    db: Session = Depends(get_db_session),
    scope: AccessScope = Depends(get_current_scope),
    _: Actor = Depends(require_permission(FEES_VIEW)),
):
    today = date.today()
    dues = list_dues(
        db,
        filters={
            "status": status_filter,
            "fee_type": fee_type,
            "grade": grade,
            "academic_year": academic_year,
            "branch_id": branch_id,
        },
        scope=scope,
        now=today,
    )
    return [FeeDueOut(**describe_due(due, today)) for due in dues]


@router.get("/fees/students/{student_id}/dues", response_model=StudentDuesOut)
def student_dues(
    student_id: int,
    status_filter: FeeDueStatus | None = Query(default=None, alias="status"),
    fee_type: str | None = None,
    academic_year: str | None = None,
    db: Session = Depends(get_db_session),
    scope: AccessScope = Depends(get_current_scope),
    _: Actor = Depends(require_permission(FEES_VIEW)),
):
    _student_in_scope(db, scope, student_id)
    try:
        result = get_student_dues(
            db,
            student_id=student_id,
            filters={"status": status_filter, "fee_type": fee_type, "academic_year": academic_year},
        )
    except FeeLedgerError as exc:
        raise _http_error(exc) from exc
    return StudentDuesOut(**result)


@router.post("/fees/payments", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def create_payment(
    payload: PaymentCreateRequest,
    db: Session = Depends(get_db_session),
    actor: Actor = Depends(require_permission(FEES_COLLECT)),
):
    _ensure_can_manage(db, actor, payload.student_id)
    try:
        payment = record_payment(db, actor=actor, **payload.model_dump())
    except FeeLedgerError as exc:
        raise _http_error(exc) from exc
    return PaymentOut.model_validate(payment)


@router.post("/fees/payments/{payment_id}/allocations", response_model=AllocationOut)
def allocate_payment(
    payment_id: int,
    payload: AllocationRequest,
    db: Session = Depends(get_db_session),
    actor: Actor = Depends(require_permission(FEES_COLLECT)),
):
    payment = db.get(FeePayment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    _ensure_can_manage(db, actor, payment.student_id)
    try:
        result = apply_payment_to_dues(
            db,
            payment_id=payment_id,
            due_ids=payload.due_ids,
            amounts=payload.amounts,
            actor=actor,
        )
    except FeeLedgerError as exc:
        raise _http_error(exc) from exc
    return AllocationOut(**result)


@router.post("/fees/dues/{due_id}/waive", response_model=FeeDueOut)
def waive(
    due_id: int,
    payload: WaiveRequest,
    db: Session = Depends(get_db_session),
    actor: Actor = Depends(require_permission(FEES_WAIVE)),
):
    due = db.get(FeeDue, due_id)
    if not due:
        raise HTTPException(status_code=404, detail="Fee due not found")
    _ensure_can_manage(db, actor, due.student_id)
    try:
        due = waive_due(db, due_id=due_id, reason=payload.reason.strip(), actor=actor)
    except FeeLedgerError as exc:
        raise _http_error(exc) from exc
    return FeeDueOut(**describe_due(due))


@router.get("/fees/dues/overdue", response_model=OverdueFeesOut)
def overdue_fees(
    fee_type: str | None = None,
    grade: str | None = None,
    branch_id: int | None = None,
    db: Session = Depends(get_db_session),
    scope: AccessScope = Depends(get_current_scope),
    _: Actor = Depends(require_permission(FEES_VIEW)),
):
    result = get_overdue_fees(
        db,
        filters={"fee_type": fee_type, "grade": grade, "branch_id": branch_id},
        scope=scope,
    )
    return OverdueFeesOut(**result)


@router.get("/fees/dues/report", response_model=DuesReportOut)
def dues_report(
    status_filter: FeeDueStatus | None = Query(default=None, alias="status"),
    fee_type: str | None = None,
    grade: str | None = None,
    academic_year: str | None = None,
    branch_id: int | None = None,
    db: Session = Depends(get_db_session),
    scope: AccessScope = Depends(get_current_scope),
    _: Actor = Depends(require_permission(FEES_VIEW)),
):
    result = generate_dues_report(
        db,
        filters={
            "status": status_filter,
            "fee_type": fee_type,
            "grade": grade,
            "academic_year": academic_year,
            "branch_id": branch_id,
        },
        scope=scope,
    )
    return DuesReportOut(**result)


@router.get("/fees/students/{student_id}/audit-logs", response_model=list[AuditLogOut])
def student_audit_logs(
    student_id: int,
    action: AuditAction | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    db: Session = Depends(get_db_session),
    scope: AccessScope = Depends(get_current_scope),
    _: Actor = Depends(require_roles(UserRole.BRANCH_ADMIN, UserRole.ACCOUNTANT)),
):
    _student_in_scope(db, scope, student_id)
    logs = get_student_audit_logs(
        db,
        student_id=student_id,
        filters={"action": action, "from_date": from_date, "to_date": to_date},
    )
    return [AuditLogOut.model_validate(log) for log in logs]
