import uuid
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Text, Index, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from ems.database import Base

class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_resource_resource_id", "resource", "resource_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # Plain column, not a foreign key: entries outlive the users they mention.
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False) # e.g. "EMPLOYEE_CREATE", "USER_ROLE_CHANGE"
    resource: Mapped[str] = mapped_column(String, nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True) # ID of target object, stored as string
    details: Mapped[str | None] = mapped_column(Text, nullable=True) # JSON payload
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
