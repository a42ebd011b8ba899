"""LabLink allocator: assigns pre-provisioned GPU VMs and manages fleet lifecycle."""

__version__ = "0.1.0"
