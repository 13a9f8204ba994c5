"""
Pytest configuration and fixtures for vertexpool tests.
"""

import asyncio
import itertools
import json
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest

from vertexpool.checkpoint import CheckpointStore
from vertexpool.errors import ConflictError, IdCollisionError, NotFoundError
from vertexpool.keys import KeyStore
from vertexpool.models import BillingAccount, Key, ServiceAccount
from vertexpool.policy import KeyPolicy
from vertexpool.providers.base import Provider, require_ids
from vertexpool.provisioner import Provisioner, ProvisionerConfig
from vertexpool.reconciler import Reconciler
from vertexpool.retry import Backoff, RetryExecutor
from vertexpool.scheduler import BoundedScheduler
from vertexpool.settings import VertexPoolSettings

BILLING = "000000-AAAAAA-BBBBBB"
SA_NAME = "vertex-admin"
APIS = ["aiplatform.googleapis.com"]
ROLES = ["roles/aiplatform.admin", "roles/iam.serviceAccountUser"]

MUTATING = {
    "link_billing",
    "unlink_billing",
    "create_project",
    "enable_apis",
    "create_service_account",
    "add_role_binding",
    "create_key",
    "delete_key",
}


class FakeProvider(Provider):
    """In-memory control plane that records every call.

    Failures are injected per method with ``fail``; each injected error is
    raised before the call takes effect.
    """

    name = "fake"

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.billing_accounts = [BillingAccount(id=BILLING, display_name="Main")]
        self.projects: set[str] = set()
        self.links: dict[str, str] = {}
        self.apis: dict[str, set[str]] = {}
        self.service_accounts: dict[tuple[str, str], ServiceAccount] = {}
        self.roles: dict[tuple[str, str], set[str]] = {}
        self.keys: dict[tuple[str, str], list[Key]] = {}
        self.taken_ids: set[str] = set()
        self.calls: list[tuple[str, tuple]] = []
        self.active = 0
        self.max_active = 0
        self._failures: dict[str, list[list]] = {}
        self._key_ids = itertools.count(1)

    # Test helpers

    def fail(self, method: str, error: BaseException, times: Optional[int] = 1) -> None:
        """Raise ``error`` from ``method`` for the next ``times`` calls (None: forever)."""
        self._failures.setdefault(method, []).append([error, times])

    @property
    def mutations(self) -> list[tuple[str, tuple]]:
        return [call for call in self.calls if call[0] in MUTATING]

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def reset_calls(self) -> None:
        self.calls.clear()

    def seed_project(self, project_id: str, billing_account_id: Optional[str] = BILLING) -> None:
        self.projects.add(project_id)
        self.apis.setdefault(project_id, set())
        if billing_account_id:
            self.links[project_id] = billing_account_id

    async def _enter(self, method: str, *args) -> None:
        self.calls.append((method, args))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.latency)
        finally:
            self.active -= 1

        queue = self._failures.get(method, [])
        if queue:
            error, times = queue[0]
            if times is not None:
                queue[0][1] -= 1
                if queue[0][1] <= 0:
                    queue.pop(0)
            raise error

    # Billing

    async def list_billing_accounts(self, open_only: bool = True) -> list[BillingAccount]:
        await self._enter("list_billing_accounts", open_only)
        return [account for account in self.billing_accounts if account.open or not open_only]

    async def list_billing_projects(self, billing_account_id: str) -> list[str]:
        require_ids(billing_account_id=billing_account_id)
        await self._enter("list_billing_projects", billing_account_id)
        return sorted(p for p, billing in self.links.items() if billing == billing_account_id)

    async def get_billing_account(self, project_id: str) -> Optional[str]:
        await self._enter("get_billing_account", project_id)
        return self.links.get(project_id)

    async def link_billing(self, project_id: str, billing_account_id: str) -> None:
        await self._enter("link_billing", project_id, billing_account_id)
        self.links[project_id] = billing_account_id

    async def unlink_billing(self, project_id: str) -> None:
        await self._enter("unlink_billing", project_id)
        if project_id not in self.projects:
            raise NotFoundError(f"project {project_id} not found")
        self.links.pop(project_id, None)

    # Projects and APIs

    async def create_project(self, project_id: str) -> None:
        await self._enter("create_project", project_id)
        if project_id in self.projects or project_id in self.taken_ids:
            raise IdCollisionError(f"project {project_id} already exists")
        self.projects.add(project_id)
        self.apis[project_id] = set()

    async def list_enabled_apis(self, project_id: str) -> set[str]:
        await self._enter("list_enabled_apis", project_id)
        return set(self.apis.get(project_id, set()))

    async def enable_apis(self, project_id: str, apis: list[str]) -> None:
        await self._enter("enable_apis", project_id, tuple(apis))
        self.apis.setdefault(project_id, set()).update(apis)

    # Service accounts and IAM

    async def get_service_account(self, project_id: str, email: str) -> Optional[ServiceAccount]:
        await self._enter("get_service_account", project_id, email)
        account = self.service_accounts.get((project_id, email))
        return account.model_copy() if account else None

    async def create_service_account(self, project_id: str, name: str, display_name: str) -> None:
        await self._enter("create_service_account", project_id, name)
        email = ServiceAccount.email_for(name, project_id)
        if (project_id, email) in self.service_accounts:
            raise ConflictError(f"service account {email} already exists")
        self.service_accounts[(project_id, email)] = ServiceAccount(email=email)

    async def get_bound_roles(self, project_id: str, member: str) -> set[str]:
        await self._enter("get_bound_roles", project_id, member)
        return set(self.roles.get((project_id, member), set()))

    async def add_role_binding(self, project_id: str, member: str, role: str) -> None:
        await self._enter("add_role_binding", project_id, member, role)
        self.roles.setdefault((project_id, member), set()).add(role)

    # Keys

    async def list_keys(self, project_id: str, email: str) -> list[Key]:
        await self._enter("list_keys", project_id, email)
        return list(self.keys.get((project_id, email), []))

    async def create_key(self, project_id: str, email: str, path: Path) -> None:
        await self._enter("create_key", project_id, email, path)
        number = next(self._key_ids)
        key_id = f"key-{number:04d}"
        Path(path).write_text(json.dumps({"type": "service_account", "private_key_id": key_id}))
        self.keys.setdefault((project_id, email), []).append(
            Key(remote_id=key_id, created_at=datetime(2024, 1, 1) + timedelta(seconds=number))
        )

    async def delete_key(self, project_id: str, email: str, key_id: str) -> None:
        await self._enter("delete_key", project_id, email, key_id)
        keys = self.keys.get((project_id, email), [])
        if not any(key.remote_id == key_id for key in keys):
            raise NotFoundError(f"key {key_id} not found")
        self.keys[(project_id, email)] = [key for key in keys if key.remote_id != key_id]


class RecordingSleep:
    """Awaitable replacement for asyncio.sleep that only records delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def sequential_ids():
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}-{next(counter):06d}"


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest.fixture
def executor(recorded_sleep):
    return RetryExecutor(max_attempts=3, backoff=Backoff(step=1.0, jitter=0.5), sleep=recorded_sleep)


@pytest.fixture
def key_store(temp_dir):
    store = KeyStore(temp_dir / "keys")
    store.prepare()
    return store


@pytest.fixture
def provisioner_config():
    return ProvisionerConfig(
        project_prefix="vertex",
        service_account_name=SA_NAME,
        service_account_display_name="Vertex Admin",
        required_apis=list(APIS),
        roles=list(ROLES),
        id_collision_attempts=3,
    )


@pytest.fixture
def provisioner(provider, executor, key_store, provisioner_config):
    return Provisioner(
        provider=provider,
        executor=executor,
        key_store=key_store,
        config=provisioner_config,
        key_policy=KeyPolicy(),
        id_factory=sequential_ids(),
    )


@pytest.fixture
def checkpoints(temp_dir):
    return CheckpointStore(temp_dir / "state" / "checkpoint.json")


@pytest.fixture
def reconciler(provisioner, checkpoints):
    return Reconciler(provisioner, BoundedScheduler(limit=2), checkpoints)


@pytest.fixture
def settings(temp_dir):
    """Settings pointing every path into the temporary directory."""
    return VertexPoolSettings(
        billing_account=None,
        target_size=2,
        required_apis=list(APIS),
        roles=list(ROLES),
        key_dir=temp_dir / "keys",
        checkpoint_path=temp_dir / "state" / "checkpoint.json",
        concurrency=2,
        backoff_step=0.0,
        backoff_jitter=0.0,
        start_jitter=0.0,
    )
