"""Abstract capability interface to the remote control plane."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..errors import ValidationError
from ..models import BillingAccount, Key, ServiceAccount


def require_ids(**values: object) -> None:
    """Raise ValidationError for any missing identifier.

    Providers call this before touching the network, so malformed input fails
    immediately instead of consuming retry budget.
    """
    missing = [name for name, value in values.items() if value is None or value == ""]
    if missing:
        raise ValidationError(f"missing required identifier(s): {', '.join(missing)}")


class Provider(ABC):
    """Remote operations used by the provisioner.

    Every method is latent and may fail transiently; callers issue them through
    the RetryExecutor. Implementations raise the errors from ``vertexpool.errors``:
    ConflictError for "already exists", NotFoundError for missing resources,
    Transient/PermanentProviderError otherwise.
    """

    name = "provider"

    # Billing

    @abstractmethod
    async def list_billing_accounts(self, open_only: bool = True) -> list[BillingAccount]:
        """List billing accounts visible to the caller."""

    @abstractmethod
    async def list_billing_projects(self, billing_account_id: str) -> list[str]:
        """Project ids currently linked to the billing account."""

    @abstractmethod
    async def get_billing_account(self, project_id: str) -> Optional[str]:
        """Billing account id linked to the project, or None."""

    @abstractmethod
    async def link_billing(self, project_id: str, billing_account_id: str) -> None:
        """Attach the project to the billing account."""

    @abstractmethod
    async def unlink_billing(self, project_id: str) -> None:
        """Remove the project's billing binding (the project itself stays)."""

    # Projects and APIs

    @abstractmethod
    async def create_project(self, project_id: str) -> None:
        """Create a project; raises IdCollisionError if the id is taken."""

    @abstractmethod
    async def list_enabled_apis(self, project_id: str) -> set[str]:
        """Service names enabled in the project."""

    @abstractmethod
    async def enable_apis(self, project_id: str, apis: list[str]) -> None:
        """Enable several APIs in one batched call."""

    # Service accounts and IAM

    @abstractmethod
    async def get_service_account(self, project_id: str, email: str) -> Optional[ServiceAccount]:
        """Describe a service account, or None when it does not exist."""

    @abstractmethod
    async def create_service_account(self, project_id: str, name: str, display_name: str) -> None:
        """Create a service account; raises ConflictError if it exists."""

    @abstractmethod
    async def get_bound_roles(self, project_id: str, member: str) -> set[str]:
        """Roles bound to ``member`` in the project's IAM policy."""

    @abstractmethod
    async def add_role_binding(self, project_id: str, member: str, role: str) -> None:
        """Bind ``role`` to ``member`` on the project."""

    # Keys

    @abstractmethod
    async def list_keys(self, project_id: str, email: str) -> list[Key]:
        """User-managed remote keys of the service account."""

    @abstractmethod
    async def create_key(self, project_id: str, email: str, path: Path) -> None:
        """Create a key and write its JSON credential to ``path``."""

    @abstractmethod
    async def delete_key(self, project_id: str, email: str, key_id: str) -> None:
        """Delete a remote key; raises NotFoundError if it is already gone."""

    async def check_environment(self) -> None:
        """Verify the provider can be used (tools installed, caller authenticated)."""
        return None
