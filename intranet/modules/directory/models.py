"""Directory database models."""
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index, Uuid
from sqlalchemy.sql import func

from intranet.core.database import Base


class User(Base):
    """Intranet user. Owned by the directory; read-only to expenses."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(String(20), nullable=False, server_default="employee")  # employee, manager, admin
    manager_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_users_manager", "manager_id"),
        Index("idx_users_role", "role"),
    )
