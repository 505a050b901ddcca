from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from .base import Base


class AutomationAssignmentLog(Base):
    """One row per decision step. Rows are only ever inserted."""

    __tablename__ = "automation_assignment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=False, index=True)
    request_type = Column(String, nullable=False, default="service")
    rule_id = Column(Integer, nullable=True)
    step = Column(String, nullable=False)
    candidates_considered = Column(JSON, nullable=False, default=list)
    chosen_id = Column(String, nullable=True)
    result = Column(String, nullable=False)
    reason = Column(Text, nullable=False, default="")
    capacity_snapshot = Column(JSON, nullable=False)
    ledger_commits = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return (
            f"<AutomationAssignmentLog(id={self.id}, request_id='{self.request_id}', "
            f"step='{self.step}', result='{self.result}')>"
        )
