from datetime import datetime, UTC

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from .base import Base


class AutomationRuleRecord(Base):
    """Flat storage row for an automation rule; see ``allotment.rules`` for the typed view."""

    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    scope = Column(String, nullable=False, default="global")
    owner_vendor_id = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    service_ids = Column(JSON, nullable=False, default=list)
    routing_target = Column(String, nullable=False, default="vendor_only")
    routing_strategy = Column(String, nullable=True)
    allowed_vendor_ids = Column(JSON, nullable=False, default=list)
    excluded_vendor_ids = Column(JSON, nullable=False, default=list)
    fallback_action = Column(String, nullable=False, default="leave_pending")
    match_criteria = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=lambda: datetime.now(UTC), nullable=False)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self):
        return (
            f"<AutomationRuleRecord(id={self.id}, name='{self.name}', scope='{self.scope}', "
            f"priority={self.priority})>"
        )
