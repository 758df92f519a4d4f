"""Expense access policy.

Pure decision functions: given the caller, the target expense's ownership
and the requested operation, decide whether the operation may proceed and
which records a query may see. Nothing here touches the database; callers
look up direct reports beforehand and pass them in.

    operation   employee     manager                    admin
    ---------   --------     -------                    -----
    create      self         self                       self
    read        owner        owner, owner's manager     any
    update      owner        owner                      owner
    submit      owner        owner                      owner
    delete      owner        owner                      any
    review      never        owner's manager            any
    mark_paid   never        never                      any
    list/stats  self         self + direct reports      any
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable
from uuid import UUID

from intranet.core.exceptions import ForbiddenError
from intranet.modules.directory import Role, UserRef


class Operation(str, Enum):
    """Operations guarded by the policy."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    SUBMIT = "submit"
    DELETE = "delete"
    REVIEW = "review"
    MARK_PAID = "mark_paid"


@dataclass(frozen=True)
class ExpenseTarget:
    """Ownership facts about the expense an operation targets."""
    owner_id: UUID
    owner_manager_id: UUID | None = None


@dataclass(frozen=True)
class Scope:
    """
    Visibility scope for list and statistics queries.

    Exactly one of `user_id` / `user_ids` is set for restricted callers;
    both None means unrestricted.
    """
    user_id: UUID | None = None
    user_ids: tuple[UUID, ...] | None = None

    @property
    def unrestricted(self) -> bool:
        return self.user_id is None and self.user_ids is None


DENIAL_MESSAGES = {
    Operation.CREATE: "You can only create expenses for yourself",
    Operation.READ: "You do not have permission to view this expense",
    Operation.UPDATE: "You do not have permission to update this expense",
    Operation.SUBMIT: "You do not have permission to submit this expense",
    Operation.DELETE: "You do not have permission to delete this expense",
    Operation.REVIEW: "You do not have permission to review this expense",
    Operation.MARK_PAID: "Only administrators can mark expenses as paid",
}


def is_allowed(caller: UserRef, operation: Operation, target: ExpenseTarget | None = None) -> bool:
    """Decide whether `caller` may perform `operation` on `target`."""
    is_admin = caller.role == Role.ADMIN

    if operation == Operation.CREATE:
        return target is None or target.owner_id == caller.id

    if operation == Operation.MARK_PAID:
        return is_admin

    if target is None:
        return False

    is_owner = target.owner_id == caller.id
    manages_owner = (
        caller.role == Role.MANAGER
        and target.owner_manager_id is not None
        and target.owner_manager_id == caller.id
    )

    if operation == Operation.READ:
        return is_owner or is_admin or manages_owner
    if operation in (Operation.UPDATE, Operation.SUBMIT):
        return is_owner
    if operation == Operation.DELETE:
        return is_owner or is_admin
    if operation == Operation.REVIEW:
        return is_admin or manages_owner
    return False


def authorize(caller: UserRef, operation: Operation, target: ExpenseTarget | None = None) -> None:
    """Raise ForbiddenError unless the operation is allowed."""
    if not is_allowed(caller, operation, target):
        raise ForbiddenError(DENIAL_MESSAGES[operation])


def resolve_scope(
    caller: UserRef,
    requested_user_id: UUID | None,
    direct_report_ids: Iterable[UUID] = (),
) -> Scope:
    """
    Work out which owners a list or statistics query may cover.

    Admins see everything, optionally narrowed to `requested_user_id`.
    Employees only ever see themselves. Managers see themselves and their
    direct reports: one of them when asked, all of them when not.
    """
    if caller.role == Role.ADMIN:
        return Scope(user_id=requested_user_id)

    if requested_user_id is not None and requested_user_id == caller.id:
        return Scope(user_id=caller.id)

    if caller.role == Role.MANAGER:
        reports = tuple(r for r in direct_report_ids if r != caller.id)
        if requested_user_id is None:
            return Scope(user_ids=(caller.id, *reports))
        if requested_user_id in reports:
            return Scope(user_id=requested_user_id)
        raise ForbiddenError(
            "You can only view expenses for yourself and your direct reports"
        )

    if requested_user_id is None:
        return Scope(user_id=caller.id)
    raise ForbiddenError("You can only view your own expenses")
