from .base import Base
from .vm import VmRecord
from .readiness_event import PendingReadiness, ReadinessEvent

__all__ = ["Base", "VmRecord", "ReadinessEvent", "PendingReadiness"]
