"""Settings database models."""
import uuid

from sqlalchemy import Column, String, Text, DateTime, JSON, Uuid
from sqlalchemy.sql import func

from intranet.core.database import Base


class SystemSetting(Base):
    """Key-value settings storage."""
    __tablename__ = "system_settings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    key = Column(String(255), unique=True, nullable=False, index=True)
    value = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
