from datetime import datetime, UTC

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, String, UniqueConstraint

from .base import Base


def _utcnow():
    return datetime.now(UTC)


class VendorServiceCapacity(Base):
    __tablename__ = "vendor_service_capacities"
    __table_args__ = (UniqueConstraint("vendor_id", "service_id", name="uq_vendor_service"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    vendor_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=False, index=True)
    daily_capacity = Column(Integer, nullable=False, default=0)
    auto_assign_enabled = Column(Boolean, nullable=False, default=True)
    priority_weight = Column(Integer, nullable=False, default=0)
    routing_strategy = Column(String, nullable=False, default="least_loaded")
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<VendorServiceCapacity(vendor_id='{self.vendor_id}', "
            f"service_id='{self.service_id}', daily_capacity={self.daily_capacity})>"
        )


class VendorDesignerCapacity(Base):
    __tablename__ = "vendor_designer_capacities"
    __table_args__ = (UniqueConstraint("designer_id", "service_id", name="uq_designer_service"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    designer_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=False, index=True)
    daily_capacity = Column(Integer, nullable=False, default=0)
    is_primary = Column(Boolean, nullable=False, default=False)
    auto_assign_enabled = Column(Boolean, nullable=False, default=True)
    priority_weight = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<VendorDesignerCapacity(designer_id='{self.designer_id}', "
            f"service_id='{self.service_id}', daily_capacity={self.daily_capacity})>"
        )


class CapacityLoad(Base):
    """Units committed per (entity, service, day); current-state cache of the audit log."""

    __tablename__ = "capacity_loads"
    __table_args__ = (
        UniqueConstraint("entity_kind", "entity_id", "service_id", "day", name="uq_capacity_load"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_kind = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    service_id = Column(String, nullable=False)
    day = Column(Date, nullable=False)
    committed_units = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return (
            f"<CapacityLoad({self.entity_kind} '{self.entity_id}', service='{self.service_id}', "
            f"day={self.day}, committed={self.committed_units})>"
        )
