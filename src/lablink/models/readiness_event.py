from sqlalchemy import Column, DateTime, Integer, String

from .base import Base, utcnow


class ReadinessEvent(Base):
    __tablename__ = "readiness_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hostname = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<ReadinessEvent(id={self.id}, hostname='{self.hostname}')>"


class PendingReadiness(Base):
    """A readiness signal that matched no registered VM yet, keyed by hostname."""

    __tablename__ = "pending_readiness"

    hostname = Column(String, primary_key=True)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<PendingReadiness(hostname='{self.hostname}')>"
