from sqlalchemy import Boolean, Column, DateTime, Enum, Index, String, Text

from ..state_machine import VmState
from .base import Base, utcnow


class VmRecord(Base):
    __tablename__ = "vms"

    id = Column(String, primary_key=True)
    fleet = Column(String, nullable=False, default="default")
    instance_name = Column(String, nullable=True)
    address = Column(String, nullable=True)
    hostname = Column(String, nullable=True)
    state = Column(
        Enum(*[s.value for s in VmState], name="vm_state"),
        nullable=False,
        default=VmState.AVAILABLE.value,
    )
    assigned_to = Column(String, nullable=True)
    command_payload = Column(Text, nullable=True)
    in_use = Column(Boolean, nullable=False, default=False)
    health_status = Column(String, nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    terminated_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (Index("ix_vms_fleet_state_created", "fleet", "state", "created_at"),)

    def __repr__(self):
        return f"<VmRecord(id='{self.id}', fleet='{self.fleet}', state='{self.state}')>"
