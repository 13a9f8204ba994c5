"""
Provisioner - per-project idempotent state machine.

Pipeline: create → link billing → enable APIs → service account → roles → key

Every step reads before it writes, so re-running it against a project that is
already in the desired state issues no mutating calls. A failing step raises
ProvisioningError naming the project, the step and the attempt count; it never
touches other projects.
"""

import hashlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import List, Optional, TypeVar

from .errors import (
    ConflictError,
    IdCollisionError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
)
from .keys import KeyStore
from .models import Key, Project, ProvisioningState, ProvisioningStep, ServiceAccount
from .policy import KeyPolicy
from .providers.base import Provider
from .retry import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


def unique_suffix(length: int = 6) -> str:
    """Random-looking suffix derived from a high-resolution timestamp hash."""
    return hashlib.sha256(str(time.time_ns()).encode()).hexdigest()[:length]


def new_project_id(prefix: str) -> str:
    return f"{prefix}-{unique_suffix()}"


@dataclass
class ProvisionerConfig:
    """Desired configuration of every pool member."""

    project_prefix: str = "vertex"
    service_account_name: str = "vertex-admin"
    service_account_display_name: str = "Vertex Admin"
    required_apis: List[str] = field(default_factory=lambda: ["aiplatform.googleapis.com"])
    roles: List[str] = field(default_factory=lambda: ["roles/aiplatform.admin"])
    id_collision_attempts: int = 3

    def validate(self) -> List[str]:
        """Validate configuration and return any issues."""
        issues = []

        if not self.project_prefix or not self.project_prefix[0].isalpha():
            issues.append("project_prefix must start with a letter")

        if not self.service_account_name:
            issues.append("service_account_name cannot be empty")

        if self.id_collision_attempts < 1:
            issues.append("id_collision_attempts must be at least 1")

        return issues


class Provisioner:
    """Brings one project to KEY_READY."""

    def __init__(
        self,
        provider: Provider,
        executor: RetryExecutor,
        key_store: KeyStore,
        config: ProvisionerConfig | None = None,
        key_policy: KeyPolicy | None = None,
        id_factory: Callable[[str], str] = new_project_id,
    ):
        """
        Initialize the provisioner.

        Args:
            provider: Remote capability interface
            executor: Retry executor every remote call goes through
            key_store: Local key directory
            config: Desired per-project configuration
            key_policy: Key generation/pruning policy (defaults to never regenerate)
            id_factory: Project id generator taking the prefix
        """
        self.provider = provider
        self.executor = executor
        self.key_store = key_store
        self.config = config or ProvisionerConfig()
        self.key_policy = key_policy or KeyPolicy()
        self.id_factory = id_factory

        issues = self.config.validate()
        if issues:
            raise ValidationError(f"Invalid provisioner configuration: {'; '.join(issues)}")

    # =========================================================================
    # Pipelines
    # =========================================================================

    async def create_and_provision(self, billing_account_id: str) -> Project:
        """Create a new project and run the full pipeline on it."""
        project = await self.create()
        return await self.provision(project, billing_account_id)

    async def refresh(self, project_id: str, billing_account_id: str) -> Project:
        """Bring an existing project up to the desired configuration."""
        project = Project(id=project_id, state=ProvisioningState.CREATED)
        return await self.provision(project, billing_account_id)

    async def provision(self, project: Project, billing_account_id: str) -> Project:
        """Run every step after creation; each one is a no-op when already satisfied."""
        project = await self.link_billing(project, billing_account_id)
        project = await self.enable_apis(project, self.config.required_apis)
        project = await self.provision_service_account(project)
        project = await self.bind_roles(project, self.config.roles)
        project = await self.ensure_key(project)
        logger.info(f"[{project.id}] provisioned ({project.state.value})")
        return project

    # =========================================================================
    # Steps
    # =========================================================================

    async def create(self) -> Project:
        """Create a project under a fresh id, regenerating the id on collision."""
        attempts = 0
        last_error: BaseException | None = None

        for _ in range(self.config.id_collision_attempts):
            project_id = self.id_factory(self.config.project_prefix)
            logger.info(f"Creating project {project_id}")
            result = await self.executor.execute(
                lambda: self.provider.create_project(project_id),
                name=f"create project {project_id}",
            )
            attempts += result.attempts
            if result.ok:
                return Project(id=project_id, state=ProvisioningState.CREATED)

            last_error = result.error
            if not isinstance(result.error, IdCollisionError):
                raise ProvisioningError(project_id, ProvisioningStep.CREATE, attempts, result.error)
            logger.warning(f"Project id {project_id} is taken, generating a new one")

        raise ProvisioningError(
            project_id, ProvisioningStep.CREATE, attempts, last_error
        )

    async def link_billing(self, project: Project, billing_account_id: str) -> Project:
        current = await self._call(
            project.id, ProvisioningStep.LINK_BILLING,
            lambda: self.provider.get_billing_account(project.id),
        )
        if current == billing_account_id:
            logger.debug(f"[{project.id}] already linked to {billing_account_id}")
        else:
            await self._call(
                project.id, ProvisioningStep.LINK_BILLING,
                lambda: self.provider.link_billing(project.id, billing_account_id),
            )
            logger.info(f"[{project.id}] linked to billing account {billing_account_id}")
        return project.advance(ProvisioningState.BILLING_LINKED, billing_account_id=billing_account_id)

    async def enable_apis(self, project: Project, apis: List[str]) -> Project:
        """Enable only the APIs that are missing, in a single batched call."""
        enabled = await self._call(
            project.id, ProvisioningStep.ENABLE_APIS,
            lambda: self.provider.list_enabled_apis(project.id),
        ) or set()
        missing = [api for api in apis if api not in enabled]
        if missing:
            await self._call(
                project.id, ProvisioningStep.ENABLE_APIS,
                lambda: self.provider.enable_apis(project.id, missing),
            )
            logger.info(f"[{project.id}] enabled APIs: {', '.join(missing)}")
        return project.advance(ProvisioningState.API_ENABLED, enabled_apis=set(enabled) | set(missing))

    async def provision_service_account(self, project: Project) -> Project:
        """Look up the service account and create it only if absent."""
        email = ServiceAccount.email_for(self.config.service_account_name, project.id)
        account = await self._call(
            project.id, ProvisioningStep.SERVICE_ACCOUNT,
            lambda: self.provider.get_service_account(project.id, email),
        )
        if account is None:
            await self._call(
                project.id, ProvisioningStep.SERVICE_ACCOUNT,
                lambda: self.provider.create_service_account(
                    project.id,
                    self.config.service_account_name,
                    self.config.service_account_display_name,
                ),
                accept=(ConflictError,),
            )
            logger.info(f"[{project.id}] service account {email} created")
            account = ServiceAccount(email=email)
        return project.model_copy(update={"service_account": account})

    async def bind_roles(self, project: Project, roles: List[str]) -> Project:
        """Ensure every role is bound to the project's service account."""
        account = self._require_account(project, ProvisioningStep.BIND_ROLES)
        bound = await self._call(
            project.id, ProvisioningStep.BIND_ROLES,
            lambda: self.provider.get_bound_roles(project.id, account.member),
        ) or set()
        bound = set(bound)
        for role in roles:
            if role in bound:
                continue
            await self._call(
                project.id, ProvisioningStep.BIND_ROLES,
                lambda role=role: self.provider.add_role_binding(project.id, account.member, role),
                accept=(ConflictError,),
            )
            logger.info(f"[{project.id}] bound {role}")
            bound.add(role)

        account = account.model_copy(update={"bound_roles": bound})
        return project.advance(ProvisioningState.SA_PROVISIONED, service_account=account)

    async def ensure_key(self, project: Project) -> Project:
        """Apply the key lifecycle: create when none exist, else follow the policy."""
        account = self._require_account(project, ProvisioningStep.KEY_LIFECYCLE)
        name = self.config.service_account_name
        local_keys = self.key_store.list_keys(project.id, name)

        if not local_keys:
            await self._create_key(project, account)
        elif self.key_policy.should_generate(project.id, len(local_keys)):
            await self._create_key(project, account)
            if self.key_policy.should_prune(project.id):
                await self.prune_remote_keys(project, account)
        else:
            logger.info(f"[{project.id}] keeping {len(local_keys)} existing local key(s)")

        account = account.model_copy(update={"keys": self.key_store.list_keys(project.id, name)})
        return project.advance(ProvisioningState.KEY_READY, service_account=account)

    async def prune_remote_keys(self, project: Project, account: ServiceAccount) -> Optional[Key]:
        """Delete every remote key except the most recently created one.

        Returns:
            The key that was kept, or None when the account has no remote keys
        """
        keys = await self._call(
            project.id, ProvisioningStep.KEY_LIFECYCLE,
            lambda: self.provider.list_keys(project.id, account.email),
        ) or []
        if not keys:
            return None

        keys = sorted(keys, key=lambda key: key.created_at)
        latest = keys[-1]
        for key in keys[:-1]:
            await self._call(
                project.id, ProvisioningStep.KEY_LIFECYCLE,
                lambda key=key: self.provider.delete_key(project.id, account.email, key.remote_id),
                accept=(NotFoundError,),
            )
            logger.info(f"[{project.id}] deleted remote key {key.remote_id}")
        return latest

    async def unlink(self, project_id: str) -> None:
        """Remove the billing binding of a project (the project itself remains)."""
        await self._call(
            project_id, ProvisioningStep.UNLINK_BILLING,
            lambda: self.provider.unlink_billing(project_id),
            accept=(NotFoundError,),
        )
        logger.info(f"[{project_id}] billing unlinked")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _create_key(self, project: Project, account: ServiceAccount) -> None:
        path = self.key_store.new_key_path(project.id, self.config.service_account_name)
        await self._call(
            project.id, ProvisioningStep.KEY_LIFECYCLE,
            lambda: self.provider.create_key(project.id, account.email, path),
        )
        self.key_store.secure(path)
        logger.info(f"[{project.id}] new key created → {path}")

    async def _call(
        self,
        project_id: str,
        step: ProvisioningStep,
        operation: Callable[[], Awaitable[T]],
        accept: tuple[type[BaseException], ...] = (),
    ) -> Optional[T]:
        """Run one remote call through the executor, raising a project-scoped error."""
        result = await self.executor.execute(
            operation, name=f"[{project_id}] {step.value}", accept=accept
        )
        if not result.ok:
            raise ProvisioningError(project_id, step, result.attempts, result.error)
        return result.value

    @staticmethod
    def _require_account(project: Project, step: ProvisioningStep) -> ServiceAccount:
        if project.service_account is None:
            raise ProvisioningError(
                project.id, step, 0, ValidationError("service account not provisioned")
            )
        return project.service_account
