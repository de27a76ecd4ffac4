"""Branch-scoped access resolution.

Every listing and mutation endpoint asks this module which branches the
current actor may see, then narrows its query with ``apply_scope``. The
resolver is fail-closed: when the branch tree or the permission tables cannot
be read it returns the narrowest scope it can justify instead of raising.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import Select, false, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from .models import (
    Branch,
    Permission,
    Role,
    User,
    UserPermissionOverride,
    UserRole,
    UserRoleAssignment,
    role_permissions,
)


logger = logging.getLogger(__name__)

CROSS_BRANCH_ACCESS = "system.cross_branch_access"
MANAGE_ALL_BRANCHES = "system.manage_all_branches"
VIEW_ALL_BRANCHES = "system.view_all_branches"

CROSS_BRANCH_PERMISSIONS = frozenset({CROSS_BRANCH_ACCESS, MANAGE_ALL_BRANCHES, VIEW_ALL_BRANCHES})


@dataclass(frozen=True)
class Actor:
    id: int
    email: str
    role: UserRole
    branch_id: int | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    @property
    def has_cross_branch_access(self) -> bool:
        return not self.permissions.isdisjoint(CROSS_BRANCH_PERMISSIONS)

    @property
    def can_manage_all_branches(self) -> bool:
        return self.is_super_admin or MANAGE_ALL_BRANCHES in self.permissions


@dataclass(frozen=True)
class AccessScope:
    all_branches: bool = False
    branch_ids: frozenset[int] = field(default_factory=frozenset)

    @classmethod
    def everything(cls) -> "AccessScope":
        return cls(all_branches=True)

    @classmethod
    def nothing(cls) -> "AccessScope":
        return cls()

    @classmethod
    def of(cls, branch_ids) -> "AccessScope":
        return cls(branch_ids=frozenset(branch_id for branch_id in branch_ids if branch_id is not None))

    @property
    def is_empty(self) -> bool:
        return not self.all_branches and not self.branch_ids

    def allows(self, branch_id: int | None) -> bool:
        if self.all_branches:
            return True
        return branch_id is not None and branch_id in self.branch_ids


class BranchHierarchy:
    """Read-only view of the branch tree backed by the ``branches`` table."""

    def __init__(self, db: Session):
        self.db = db

    def exists_and_not_deleted(self, branch_id: int) -> bool:
        stmt = select(Branch.id).where(Branch.id == branch_id, Branch.deleted_at.is_(None))
        return self.db.scalar(stmt) is not None

    def children_of(self, branch_id: int) -> set[int]:
        # UNION (not UNION ALL) so a corrupted parent chain that loops still terminates.
        tree = (
            select(Branch.id)
            .where(Branch.parent_branch_id == branch_id, Branch.deleted_at.is_(None))
            .cte(name="branch_tree", recursive=True)
        )
        child = aliased(Branch)
        tree = tree.union(
            select(child.id).where(child.parent_branch_id == tree.c.id, child.deleted_at.is_(None))
        )
        return set(self.db.scalars(select(tree.c.id)))


def _applies_to_home_branch(column, user: User):
    return or_(column.is_(None), column == user.branch_id)


def permissions_of(db: Session, user: User) -> frozenset[str]:
    assigned_roles = select(UserRoleAssignment.role_id).where(
        UserRoleAssignment.user_id == user.id,
        _applies_to_home_branch(UserRoleAssignment.branch_id, user),
    )
    role_stmt = (
        select(Permission.slug)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .join(Role, Role.id == role_permissions.c.role_id)
        .where(
            Role.is_active.is_(True),
            or_(Role.id.in_(assigned_roles), Role.name == user.role.value),
        )
    )
    override_stmt = (
        select(Permission.slug, UserPermissionOverride.granted)
        .join(Permission, Permission.id == UserPermissionOverride.permission_id)
        .where(
            UserPermissionOverride.user_id == user.id,
            _applies_to_home_branch(UserPermissionOverride.branch_id, user),
        )
    )

    try:
        slugs = set(db.scalars(role_stmt))
        overrides = db.execute(override_stmt).all()
    except SQLAlchemyError as exc:
        logger.warning(f"Could not load permissions for user {user.id}, treating as none: {exc}")
        return frozenset()

    slugs.update(slug for slug, granted in overrides if granted)
    # Revocations win over grants from any source.
    slugs.difference_update(slug for slug, granted in overrides if not granted)
    return frozenset(slugs)


def load_actor(db: Session, user: User) -> Actor:
    return Actor(
        id=user.id,
        email=user.email,
        role=user.role,
        branch_id=user.branch_id,
        permissions=permissions_of(db, user),
    )


def resolve_scope(db: Session, actor: Actor | None) -> AccessScope:
    if actor is None:
        return AccessScope.nothing()

    if actor.is_super_admin or actor.has_cross_branch_access:
        return AccessScope.everything()

    if actor.role == UserRole.BRANCH_ADMIN:
        if actor.branch_id is None:
            return AccessScope.nothing()
        return AccessScope.of({actor.branch_id} | _descendants(db, actor.branch_id))

    return AccessScope.of([actor.branch_id])


def _descendants(db: Session, branch_id: int) -> set[int]:
    hierarchy = BranchHierarchy(db)
    try:
        if not hierarchy.exists_and_not_deleted(branch_id):
            return set()
        return hierarchy.children_of(branch_id)
    except SQLAlchemyError as exc:
        logger.warning(f"Branch tree lookup failed for branch {branch_id}, using home branch only: {exc}")
        return set()


def apply_scope(stmt: Select, scope: AccessScope, column) -> Select:
    if scope.all_branches:
        return stmt
    if scope.branch_ids:
        return stmt.where(column.in_(sorted(scope.branch_ids)))
    return stmt.where(false())


def can_access_branch(db: Session, actor: Actor | None, branch_id: int) -> bool:
    return resolve_scope(db, actor).allows(branch_id)


def can_manage_branch(db: Session, actor: Actor | None, branch_id: int) -> bool:
    if actor is None:
        return False
    if actor.can_manage_all_branches:
        return True
    return can_access_branch(db, actor, branch_id)


def default_branch_id(actor: Actor | None) -> int | None:
    if actor is None or actor.has_cross_branch_access:
        return None
    if actor.role in (UserRole.SUPER_ADMIN, UserRole.BRANCH_ADMIN):
        return None
    return actor.branch_id
