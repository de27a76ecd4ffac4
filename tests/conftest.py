import os
from datetime import date, datetime, timezone
from decimal import Decimal
from itertools import count

os.environ.setdefault("SCHOOL_DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHOOL_JWT_SECRET", "test-only-secret-key-that-is-long-enough")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.school_module.access import load_actor
from backend.school_module.database import Base, get_db_session
from backend.school_module.models import (
    Branch,
    FeeDue,
    FeeDueStatus,
    FeePayment,
    FeeStructure,
    Permission,
    PaymentStatus,
    Role,
    Student,
    User,
    UserPermissionOverride,
    UserRole,
    UserRoleAssignment,
)
from backend.school_module.security import create_access_token, hash_password


TEST_PASSWORD = "Password@123"


@pytest.fixture(scope="session")
def password_hash():
    return hash_password(TEST_PASSWORD)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


class Factory:
    def __init__(self, db, password_hash):
        self.db = db
        self.password_hash = password_hash
        self._seq = count(1)

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def branch(self, name=None, parent=None, deleted=False):
        n = next(self._seq)
        return self._save(
            Branch(
                name=name or f"Branch {n}",
                code=f"BR{n:03d}",
                parent_branch_id=parent.id if parent else None,
                deleted_at=datetime.now(timezone.utc) if deleted else None,
            )
        )

    def user(self, role=UserRole.STAFF, branch=None, email=None):
        n = next(self._seq)
        return self._save(
            User(
                email=email or f"user{n}@school.test",
                full_name=f"User {n}",
                password_hash=self.password_hash,
                role=role,
                branch_id=branch.id if branch else None,
            )
        )

    def actor(self, role=UserRole.STAFF, branch=None):
        return load_actor(self.db, self.user(role=role, branch=branch))

    def permission(self, slug):
        permission = self.db.query(Permission).filter(Permission.slug == slug).first()
        if permission is None:
            permission = self._save(Permission(slug=slug, name=slug))
        return permission

    def role(self, name, slugs=()):
        return self._save(
            Role(
                name=name,
                slug=name.lower(),
                permissions=[self.permission(slug) for slug in slugs],
            )
        )

    def assign_role(self, user, role, branch=None):
        return self._save(
            UserRoleAssignment(user_id=user.id, role_id=role.id, branch_id=branch.id if branch else None)
        )

    def override(self, user, slug, granted=True, branch=None):
        return self._save(
            UserPermissionOverride(
                user_id=user.id,
                permission_id=self.permission(slug).id,
                granted=granted,
                branch_id=branch.id if branch else None,
            )
        )

    def student(self, branch, grade="Grade 5"):
        n = next(self._seq)
        return self._save(
            Student(full_name=f"Student {n}", admission_number=f"ADM{n:04d}", branch_id=branch.id, grade=grade)
        )

    def structure(self, branch, amount="1000", fee_type="Tuition", due_date=date(2026, 11, 30), grade="Grade 5"):
        return self._save(
            FeeStructure(
                branch_id=branch.id,
                grade=grade,
                fee_type=fee_type,
                amount=Decimal(amount),
                academic_year="2026-2027",
                due_date=due_date,
            )
        )

    def due(
        self,
        student,
        original="1000",
        balance=None,
        fee_type="Tuition",
        due_date=date(2026, 11, 30),
        status=None,
        metadata=None,
    ):
        original = Decimal(original)
        balance = original if balance is None else Decimal(balance)
        if status is None:
            status = FeeDueStatus.PENDING if balance == original else FeeDueStatus.PARTIALLY_PAID
            if balance == 0:
                status = FeeDueStatus.PAID
        return self._save(
            FeeDue(
                student_id=student.id,
                fee_type=fee_type,
                academic_year="2026-2027",
                original_grade=student.grade,
                current_grade=student.grade,
                due_date=due_date,
                original_amount=original,
                paid_amount=original - balance if status != FeeDueStatus.WAIVED else Decimal("0"),
                balance_amount=balance,
                status=status,
                metadata_=metadata or {},
            )
        )

    def payment(self, student, amount="1000", discount="0", late_fee="0", status=PaymentStatus.COMPLETED):
        amount, discount, late_fee = Decimal(amount), Decimal(discount), Decimal(late_fee)
        return self._save(
            FeePayment(
                student_id=student.id,
                amount_paid=amount,
                discount_amount=discount,
                late_fee=late_fee,
                total_amount=amount + late_fee - discount,
                allocated_amount=Decimal("0"),
                payment_date=date(2026, 10, 1),
                payment_status=status,
                payment_method="Cash",
            )
        )


@pytest.fixture
def factory(db, password_hash):
    return Factory(db, password_hash)


@pytest.fixture
def client(db):
    from backend.backend import app

    def override_db():
        yield db

    app.dependency_overrides[get_db_session] = override_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def build(user):
        token = create_access_token(
            user_id=user.id,
            email=user.email,
            role=user.role.value,
            branch_id=user.branch_id,
        )
        return {"Authorization": f"Bearer {token}"}

    return build
