from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .models import AuditAction, FeeDueStatus, PaymentStatus, UserRole


class LoginRequest(BaseModel):
    email: str = Field(min_length=5, max_length=255)
    password: str = Field(min_length=8)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: int
    role: UserRole


class ScopeOut(BaseModel):
    all_branches: bool
    branch_ids: list[int]


class ActorOut(BaseModel):
    id: int
    email: str
    role: UserRole
    branch_id: int | None
    permissions: list[str]
    scope: ScopeOut


class FeeDueOut(BaseModel):
    id: int
    student_id: int
    fee_structure_id: int | None
    fee_type: str
    academic_year: str
    current_grade: str
    due_date: date
    original_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    status: FeeDueStatus
    days_overdue: int
    installment_number: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DueTotals(BaseModel):
    count: int
    overdue_count: int
    total_amount: Decimal
    paid_amount: Decimal
    waived_amount: Decimal
    balance_amount: Decimal
    fee_types_count: int | None = None


class StudentDuesOut(BaseModel):
    student_id: int
    branch_id: int
    as_of: date
    dues: list[FeeDueOut]
    dues_by_type: dict[str, DueTotals]
    totals: DueTotals


class AgingBucket(BaseModel):
    count: int
    amount: Decimal


class OverdueFeesOut(BaseModel):
    as_of: date
    overdue_fees: list[FeeDueOut]
    aging_analysis: dict[str, AgingBucket]
    aging_by_fee_type: dict[str, dict[str, AgingBucket]]
    total_count: int
    total_amount: Decimal


class DuesReportOut(BaseModel):
    as_of: date
    total_outstanding: Decimal
    summary: DueTotals
    by_fee_type: dict[str, DueTotals]
    aging_analysis: dict[str, AgingBucket]
    aging_by_fee_type: dict[str, dict[str, AgingBucket]]
    dues: list[FeeDueOut]


class PaymentCreateRequest(BaseModel):
    student_id: int
    amount_paid: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    late_fee: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    payment_method: str = Field(min_length=2, max_length=50)
    payment_date: date | None = None
    fee_structure_id: int | None = None
    receipt_number: str | None = Field(default=None, max_length=50)


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    student_id: int
    amount_paid: Decimal
    discount_amount: Decimal
    late_fee: Decimal
    total_amount: Decimal
    allocated_amount: Decimal
    payment_date: date
    payment_status: PaymentStatus
    payment_method: str
    receipt_number: str | None


class AllocationRequest(BaseModel):
    due_ids: list[int] = Field(min_length=1)
    amounts: list[Decimal] = Field(min_length=1)


class AllocationLine(BaseModel):
    fee_due_id: int
    amount: Decimal
    balance_after: Decimal


class AllocationOut(BaseModel):
    payment_id: int
    allocated_amount: Decimal
    unallocated_amount: Decimal
    allocations: list[AllocationLine]


class WaiveRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class AuditLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: AuditAction
    student_id: int
    fee_payment_id: int | None
    fee_due_id: int | None
    amount_before: Decimal
    amount_after: Decimal
    action_amount: Decimal
    reason: str | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_")
    created_by: int | None
    created_at: datetime
