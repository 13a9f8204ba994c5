"""
Reconciler - drives a billing account's pool from its current to its target size.

Reconcile: read membership → refresh existing members → create the deficit
Rebuild:   unlink every member from billing → clear the pool → create to target
Observe:   read-only snapshot for status reports

All per-project work goes through the BoundedScheduler; each finished unit is
checkpointed so a crash loses at most the units still in flight.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import List

from .checkpoint import CheckpointStore, NullCheckpointStore
from .errors import ProvisioningError, ReconcileError, ValidationError
from .keys import KeyStore
from .models import Pool, Project, ProvisioningState, ServiceAccount
from .provisioner import Provisioner
from .scheduler import BoundedScheduler, TaskResult

logger = logging.getLogger(__name__)


class Reconciler:
    """Reconciles the pool of projects linked to one billing account."""

    def __init__(
        self,
        provisioner: Provisioner,
        scheduler: BoundedScheduler,
        checkpoints: CheckpointStore | NullCheckpointStore | None = None,
    ):
        """
        Initialize the reconciler.

        Args:
            provisioner: Per-project pipeline
            scheduler: Concurrency-capped fan-out
            checkpoints: Checkpoint store (disabled when None)
        """
        self.provisioner = provisioner
        self.scheduler = scheduler
        self.checkpoints = checkpoints or NullCheckpointStore()

    @property
    def provider(self):
        return self.provisioner.provider

    @property
    def key_store(self) -> KeyStore:
        return self.provisioner.key_store

    # =========================================================================
    # Public operations
    # =========================================================================

    async def reconcile(
        self,
        billing_account_id: str,
        target_size: int,
        concurrency: int,
        *,
        resume: bool = False,
    ) -> Pool:
        """
        Bring the pool to ``target_size`` fully provisioned members.

        Args:
            billing_account_id: Billing account the pool belongs to
            target_size: Desired number of members
            concurrency: Maximum projects worked on at once
            resume: Seed membership from the checkpoint instead of the provider

        Returns:
            The reconciled Pool

        Raises:
            ValidationError: On invalid arguments (before any remote call)
            ReconcileError: If any project pipeline failed; ``pool`` holds the
                checkpointed progress
        """
        self._validate(billing_account_id, target_size, concurrency)
        pool = await self._load_membership(billing_account_id, target_size, resume)
        logger.info(
            f"Reconciling {billing_account_id}: {len(pool.members)}/{target_size} member(s)"
        )

        pool, failures = await self._refresh_members(pool, concurrency)

        if pool.deficit > 0:
            pool, create_failures = await self._create_members(pool, pool.deficit, concurrency)
            failures.extend(create_failures)

        if failures:
            raise ReconcileError(
                f"{len(failures)} project pipeline(s) failed; "
                f"pool has {len(pool.members)}/{target_size} member(s)",
                pool=pool,
                failures=failures,
            )

        logger.info(f"Pool reconciled: {len(pool.members)}/{target_size} member(s)")
        return pool

    async def rebuild(
        self,
        billing_account_id: str,
        target_size: int,
        concurrency: int,
        *,
        confirmed: bool = False,
    ) -> Pool:
        """
        Unlink every current member from billing, then recreate the pool.

        Projects are not deleted; only their billing binding is removed. This
        cannot be undone with respect to the previous billing links, so it
        requires ``confirmed=True``.

        Raises:
            ValidationError: If not confirmed or on invalid arguments
            ReconcileError: If unlinking or creating failed
        """
        if not confirmed:
            raise ValidationError("rebuild requires explicit confirmation")
        self._validate(billing_account_id, target_size, concurrency)

        project_ids = await self._list_linked(billing_account_id)
        logger.warning(f"Unlinking {len(project_ids)} project(s) from {billing_account_id}")

        pool = Pool(
            billing_account_id=billing_account_id,
            target_size=target_size,
            members={project_id: Project(id=project_id) for project_id in project_ids},
        )

        def unlinked(project_id: str) -> None:
            nonlocal pool
            members = dict(pool.members)
            members.pop(project_id, None)
            pool = pool.model_copy(update={"members": members})
            self._checkpoint(pool)

        results = await self.scheduler.run_all(
            [self._unlink_task(project_id) for project_id in project_ids],
            concurrency,
            on_complete=lambda result: unlinked(project_ids[result.index]) if result.ok else None,
        )
        failures = [result.error for result in results if not result.ok]
        if failures:
            raise ReconcileError(
                f"{len(failures)} project(s) could not be unlinked", pool=pool, failures=failures
            )

        pool = pool.cleared()
        self._checkpoint(pool)

        pool, failures = await self._create_members(pool, target_size, concurrency)
        if failures:
            raise ReconcileError(
                f"{len(failures)} project pipeline(s) failed during rebuild",
                pool=pool,
                failures=failures,
            )
        logger.info(f"Pool rebuilt: {len(pool.members)}/{target_size} member(s)")
        return pool

    async def observe(self, billing_account_id: str, target_size: int, concurrency: int) -> Pool:
        """
        Read-only snapshot of the pool for status reports.

        Lists the linked projects, their enabled APIs and their local keys; no
        mutating call is issued and no checkpoint is written.
        """
        self._validate(billing_account_id, target_size, concurrency)
        project_ids = await self._list_linked(billing_account_id)
        pool = Pool(billing_account_id=billing_account_id, target_size=target_size)

        results = await self.scheduler.run_all(
            [self._observe_task(project_id, billing_account_id) for project_id in project_ids],
            concurrency,
        )
        for project_id, result in zip(project_ids, results):
            if result.ok:
                pool = pool.with_member(result.value)
            else:
                logger.warning(f"[{project_id}] status unavailable: {result.error}")
                pool = pool.with_member(Project(id=project_id, billing_account_id=billing_account_id))
        return pool

    # =========================================================================
    # Membership
    # =========================================================================

    async def _load_membership(self, billing_account_id: str, target_size: int, resume: bool) -> Pool:
        """Seed the pool from the checkpoint (when resuming) or the provider."""
        if resume:
            checkpoint = self.checkpoints.load()
            if checkpoint is not None and checkpoint.billing_account_id == billing_account_id:
                logger.info(
                    f"Resuming from checkpoint of {checkpoint.timestamp:%Y-%m-%d %H:%M:%S} "
                    f"({len(checkpoint.project_ids)} project(s))"
                )
                return self._pool_from_ids(billing_account_id, target_size, checkpoint.project_ids)
            if checkpoint is not None:
                logger.warning(
                    f"Checkpoint belongs to {checkpoint.billing_account_id}, ignoring it"
                )

        project_ids = await self._list_linked(billing_account_id)
        return self._pool_from_ids(billing_account_id, target_size, project_ids)

    async def _list_linked(self, billing_account_id: str) -> List[str]:
        result = await self.provisioner.executor.execute(
            lambda: self.provider.list_billing_projects(billing_account_id),
            name=f"list projects of {billing_account_id}",
        )
        return list(dict.fromkeys(result.unwrap() or []))

    @staticmethod
    def _pool_from_ids(billing_account_id: str, target_size: int, project_ids: List[str]) -> Pool:
        members = {
            project_id: Project(
                id=project_id,
                billing_account_id=billing_account_id,
                state=ProvisioningState.CREATED,
            )
            for project_id in project_ids
        }
        return Pool(billing_account_id=billing_account_id, target_size=target_size, members=members)

    # =========================================================================
    # Batches
    # =========================================================================

    async def _refresh_members(self, pool: Pool, concurrency: int) -> tuple[Pool, list[BaseException]]:
        """Run the provisioning pipeline over every current member."""
        project_ids = pool.member_ids
        if not project_ids:
            return pool, []

        def refreshed(result: TaskResult[Project]) -> None:
            nonlocal pool
            if result.ok:
                pool = pool.with_member(result.value)
                self._checkpoint(pool)

        results = await self.scheduler.run_all(
            [self._refresh_task(project_id, pool.billing_account_id) for project_id in project_ids],
            concurrency,
            on_complete=refreshed,
        )
        return pool, [result.error for result in results if not result.ok]

    async def _create_members(
        self, pool: Pool, count: int, concurrency: int
    ) -> tuple[Pool, list[BaseException]]:
        """Create and provision ``count`` new members.

        A project joins the pool and the checkpoint as soon as it exists, so a
        later step failing (or the process dying) leaves it to be refreshed on
        the next run instead of being created again.
        """
        logger.info(f"Creating {count} project(s) with concurrency {concurrency}")

        def record(project: Project) -> None:
            nonlocal pool
            pool = pool.with_member(project)
            self._checkpoint(pool)

        def provisioned(result: TaskResult[Project]) -> None:
            if result.ok:
                record(result.value)

        results = await self.scheduler.run_all(
            [self._create_task(pool.billing_account_id, record) for _ in range(count)],
            concurrency,
            on_complete=provisioned,
        )
        return pool, [result.error for result in results if not result.ok]

    def _create_task(
        self, billing_account_id: str, on_created: Callable[[Project], None]
    ) -> Callable[[], Awaitable[Project]]:
        async def create() -> Project:
            project = await self.provisioner.create()
            on_created(project)
            return await self.provisioner.provision(project, billing_account_id)
        return create

    def _refresh_task(self, project_id: str, billing_account_id: str) -> Callable[[], Awaitable[Project]]:
        return lambda: self.provisioner.refresh(project_id, billing_account_id)

    def _unlink_task(self, project_id: str) -> Callable[[], Awaitable[None]]:
        return lambda: self.provisioner.unlink(project_id)

    def _observe_task(self, project_id: str, billing_account_id: str) -> Callable[[], Awaitable[Project]]:
        async def observe() -> Project:
            result = await self.provisioner.executor.execute(
                lambda: self.provider.list_enabled_apis(project_id),
                name=f"[{project_id}] list enabled APIs",
            )
            if not result.ok:
                raise ProvisioningError(project_id, "status", result.attempts, result.error)
            name = self.provisioner.config.service_account_name
            account = ServiceAccount(
                email=ServiceAccount.email_for(name, project_id),
                keys=self.key_store.list_keys(project_id, name),
            )
            return Project(
                id=project_id,
                billing_account_id=billing_account_id,
                state=ProvisioningState.BILLING_LINKED,
                enabled_apis=result.value or set(),
                service_account=account,
            )
        return observe

    # =========================================================================
    # Helpers
    # =========================================================================

    def _checkpoint(self, pool: Pool) -> None:
        self.checkpoints.save(pool.to_checkpoint())

    @staticmethod
    def _validate(billing_account_id: str, target_size: int, concurrency: int) -> None:
        if not billing_account_id:
            raise ValidationError("billing account id is required")
        if target_size < 0:
            raise ValidationError("target size cannot be negative")
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1")


def failure_lines(error: ReconcileError) -> List[str]:
    """Human-readable lines for each failed project: id, step and attempts."""
    lines = []
    for failure in error.failures:
        if isinstance(failure, ProvisioningError):
            step = getattr(failure.step, "value", failure.step)
            lines.append(
                f"{failure.project_id}: step '{step}' after {failure.attempts} attempt(s): {failure.cause}"
            )
        else:
            lines.append(str(failure))
    return lines
