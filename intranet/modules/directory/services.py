"""Identity and role lookups used by the expense workflow."""
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import User


class Role(str, Enum):
    """Intranet roles."""
    EMPLOYEE = "employee"
    MANAGER = "manager"
    ADMIN = "admin"


@dataclass(frozen=True)
class UserRef:
    """The slice of a user the expense core cares about."""
    id: UUID
    role: Role
    manager_id: UUID | None = None


async def get_user(db: AsyncSession, user_id: UUID) -> UserRef | None:
    """Resolve an active user to {id, role, manager_id}."""
    result = await db.execute(
        select(User.id, User.role, User.manager_id)
        .where(User.id == user_id)
        .where(User.is_active.is_(True))
    )
    row = result.first()
    if row is None:
        return None
    try:
        role = Role(row.role)
    except ValueError:
        # Unknown roles get the least privilege
        role = Role.EMPLOYEE
    return UserRef(id=row.id, role=role, manager_id=row.manager_id)


async def get_manager_id(db: AsyncSession, user_id: UUID) -> UUID | None:
    """Return the manager of a user, or None."""
    return await db.scalar(select(User.manager_id).where(User.id == user_id))


async def get_direct_report_ids(db: AsyncSession, manager_id: UUID) -> list[UUID]:
    """IDs of every user whose manager is `manager_id`."""
    result = await db.execute(select(User.id).where(User.manager_id == manager_id))
    return list(result.scalars().all())

