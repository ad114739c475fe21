"""
Provisioning provider protocol.

Interface for the external DNS host (InterServer). The external inventory
is authoritative: callers list it, then delete by id.
"""
from typing import Protocol, List, Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class ExternalResource:
    """A DNS zone as known to the external host."""
    id: int
    name: str


class ProvisioningProvider(Protocol):
    def list_resources(self) -> List[ExternalResource]:
        """
        Return the complete external inventory for the account.

        Raises:
            ProvisioningError: If the listing fails
        """
        ...

    def delete_resource(self, resource_id: int) -> None:
        """
        Delete one resource by external id.

        Raises:
            ProvisioningError: If the delete fails
        """
        ...


class ProvisioningError(Exception):
    """Raised when the provisioning provider fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
