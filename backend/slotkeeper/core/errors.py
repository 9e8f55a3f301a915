"""Application exception hierarchy.

Conflicts on conditional transitions are not exceptions: they are returned
as ``TransitionResult`` values by the slot state machine.
"""

from typing import Optional


class SlotkeeperError(Exception):
    """Base class for application errors."""


class NotFoundError(SlotkeeperError):
    """Raised when a referenced slot, entry, service, staff member or tenant is missing."""

    def __init__(self, resource: str, resource_id, tenant_id: Optional[int] = None):
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        scope = f" for tenant {tenant_id}" if tenant_id is not None else ""
        super().__init__(f"{resource} {resource_id} not found{scope}")


class BusinessRuleError(SlotkeeperError):
    """Raised synchronously when a request violates a validation or business rule."""


class DispatchError(SlotkeeperError):
    """Raised by delivery providers when a message could not be handed off."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(f"{channel}: {message}")


class InfrastructureError(SlotkeeperError):
    """Raised when a backing store or queue is unreachable."""
