"""Identity and role directory."""
from .models import User
from .services import (
    Role,
    UserRef,
    get_user,
    get_manager_id,
    get_direct_report_ids,
)

__all__ = [
    "User",
    "Role",
    "UserRef",
    "get_user",
    "get_manager_id",
    "get_direct_report_ids",
]
