from .base import Base
from .capacity import CapacityLoad, VendorDesignerCapacity, VendorServiceCapacity
from .automation_rule import AutomationRuleRecord
from .assignment_log import AutomationAssignmentLog
from .round_robin_cursor import RoundRobinCursor

__all__ = [
    "Base",
    "VendorServiceCapacity",
    "VendorDesignerCapacity",
    "CapacityLoad",
    "AutomationRuleRecord",
    "AutomationAssignmentLog",
    "RoundRobinCursor",
]
