import logging
import re

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from .access import CROSS_BRANCH_ACCESS, MANAGE_ALL_BRANCHES, VIEW_ALL_BRANCHES
from .config import settings
from .models import Permission, Role, User, UserRole
from .security import create_access_token, hash_password, verify_password


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")

FEES_VIEW = "fees.view"
FEES_COLLECT = "fees.collect"
FEES_WAIVE = "fees.waive"

SYSTEM_PERMISSIONS = {
    CROSS_BRANCH_ACCESS: "Cross-branch access",
    MANAGE_ALL_BRANCHES: "Manage all branches",
    VIEW_ALL_BRANCHES: "View all branches",
    FEES_VIEW: "View fee dues",
    FEES_COLLECT: "Record and allocate fee payments",
    FEES_WAIVE: "Waive fee dues",
}

DEFAULT_ROLE_PERMISSIONS = {
    UserRole.SUPER_ADMIN: set(SYSTEM_PERMISSIONS),
    UserRole.BRANCH_ADMIN: {FEES_VIEW, FEES_COLLECT, FEES_WAIVE},
    UserRole.ACCOUNTANT: {FEES_VIEW, FEES_COLLECT},
    UserRole.TEACHER: set(),
    UserRole.STAFF: set(),
    UserRole.STUDENT: set(),
    UserRole.PARENT: set(),
}


def _normalize_email(value: str) -> str:
    normalized = value.lower().strip()
    if not EMAIL_PATTERN.match(normalized):
        raise HTTPException(status_code=400, detail="Invalid email format")
    return normalized


def login_user(db: Session, *, email: str, password: str) -> tuple[User, str]:
    user = db.scalar(select(User).where(User.email == _normalize_email(email)))
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    token = create_access_token(
        user_id=user.id,
        email=user.email,
        role=user.role.value,
        branch_id=user.branch_id,
    )
    return user, token


def seed_system_access(db: Session) -> None:
    permissions = {}
    for slug, name in SYSTEM_PERMISSIONS.items():
        permission = db.scalar(select(Permission).where(Permission.slug == slug))
        if permission is None:
            permission = Permission(slug=slug, name=name, is_system_permission=True)
            db.add(permission)
        permissions[slug] = permission

    for role_name, slugs in DEFAULT_ROLE_PERMISSIONS.items():
        role = db.scalar(select(Role).where(Role.name == role_name.value))
        if role is not None:
            continue
        db.add(
            Role(
                name=role_name.value,
                slug=re.sub(r"(?<!^)(?=[A-Z])", "_", role_name.value).lower(),
                is_system_role=True,
                permissions=[permissions[slug] for slug in sorted(slugs)],
            )
        )

    email = _normalize_email(settings.super_admin_email)
    if db.scalar(select(User).where(User.email == email)) is None:
        db.add(
            User(
                email=email,
                full_name="Super Admin",
                role=UserRole.SUPER_ADMIN,
                password_hash=hash_password(settings.super_admin_password),
                is_active=True,
            )
        )
        logger.info(f"Seeded super admin account {email}")
    db.commit()
