from datetime import datetime, UTC

from sqlalchemy import Column, DateTime, String

from .base import Base


class RoundRobinCursor(Base):
    __tablename__ = "round_robin_cursors"

    key = Column(String, primary_key=True)
    last_chosen_id = Column(String, nullable=True)
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self):
        return f"<RoundRobinCursor(key='{self.key}', last_chosen_id='{self.last_chosen_id}')>"
