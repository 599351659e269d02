"""Exception types raised by the registry and its persistence gateways."""
from __future__ import annotations

from enum import Enum


class FailurePolicy(str, Enum):
    """What a registry write does when the durable store fails."""
    RAISE = "raise"
    LOG = "log"


class RegistryError(Exception):
    """Base class for all registry errors."""


class NotFoundError(RegistryError):
    """An id did not resolve to a known registry entry."""


class ServiceNotFoundError(NotFoundError):
    def __init__(self, service_id: str):
        super().__init__(f"Service not found: {service_id}")
        self.service_id = service_id


class InstanceNotFoundError(NotFoundError):
    def __init__(self, service_id: str, instance_id: str):
        super().__init__(f"Instance not found: {service_id}/{instance_id}")
        self.service_id = service_id
        self.instance_id = instance_id


class RevisionConflictError(RegistryError):
    """The instance changed since the caller last read it."""

    def __init__(self, service_id: str, instance_id: str, expected: int, actual: int):
        super().__init__(
            f"Revision conflict on {service_id}/{instance_id}: expected {expected}, found {actual}"
        )
        self.expected = expected
        self.actual = actual


class PersistenceError(RegistryError):
    """The durable store rejected or failed a read or write."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
