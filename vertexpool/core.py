"""
vertexpool Core - wires configuration into the reconciliation engine.

Status Pipeline:    Select billing → Observe pool → Report
Reconcile Pipeline: Select billing → Refresh members → Create missing members
Rebuild Pipeline:   Select billing → Unlink members → Create to target (confirmed)
Quota Pipeline:     Select billing → Single best-effort read, no retry
"""

import logging
from typing import Any, Dict

from .checkpoint import CheckpointStore, NullCheckpointStore
from .errors import ValidationError
from .keys import KeyStore
from .models import BillingAccount, Pool, PoolSummary, QuotaReport
from .policy import AskFunction, KeyPolicy
from .providers.base import Provider
from .providers.gcloud import GcloudProvider
from .provisioner import Provisioner, ProvisionerConfig
from .reconciler import Reconciler
from .reporter import StatusReporter
from .retry import Backoff, RetryExecutor
from .scheduler import BoundedScheduler
from .settings import VertexPoolSettings, get_settings

logger = logging.getLogger(__name__)


class PoolCore:
    """Main coordinator for the vertexpool pipelines."""

    def __init__(
        self,
        settings: VertexPoolSettings | None = None,
        provider: Provider | None = None,
        ask: AskFunction | None = None,
        executor: RetryExecutor | None = None,
    ):
        """
        Initialize PoolCore.

        Args:
            settings: Configuration (defaults to the global settings)
            provider: Remote provider (defaults to GcloudProvider)
            ask: Answer function for the ``ask`` key policy
            executor: Retry executor override (defaults built from settings)
        """
        self.settings = settings or get_settings()
        s = self.settings

        self.provider = provider or GcloudProvider(gcloud_path=s.gcloud_path)
        self.executor = executor or RetryExecutor(
            max_attempts=s.max_attempts,
            backoff=Backoff(step=s.backoff_step, jitter=s.backoff_jitter),
            timeout=s.call_timeout,
        )
        self.key_store = KeyStore(s.key_dir)
        self.checkpoints = (
            CheckpointStore(s.checkpoint_path) if s.checkpoint_enabled else NullCheckpointStore()
        )
        self.scheduler = BoundedScheduler(limit=s.concurrency, start_jitter=s.start_jitter)
        self.provisioner = Provisioner(
            provider=self.provider,
            executor=self.executor,
            key_store=self.key_store,
            config=ProvisionerConfig(
                project_prefix=s.project_prefix,
                service_account_name=s.service_account_name,
                service_account_display_name=s.service_account_display_name,
                required_apis=list(s.required_apis),
                roles=list(s.roles),
                id_collision_attempts=s.id_collision_attempts,
            ),
            key_policy=KeyPolicy.from_settings(s.key_policy, s.prune_remote_keys, ask),
        )
        self.reconciler = Reconciler(self.provisioner, self.scheduler, self.checkpoints)
        self.reporter = StatusReporter(s.required_apis)

        logger.info(f"PoolCore initialized (provider: {self.provider.name})")

    async def prepare(self) -> None:
        """Check the provider environment and create the key directory."""
        await self.provider.check_environment()
        self.key_store.prepare()

    async def select_billing_account(self) -> BillingAccount:
        """
        Resolve the billing account for this run.

        Uses the configured id when set, otherwise the first open account.

        Raises:
            ValidationError: If no open billing account is available
        """
        if self.settings.billing_account:
            return BillingAccount(id=self.settings.billing_account)

        result = await self.executor.execute(
            lambda: self.provider.list_billing_accounts(open_only=True),
            name="list billing accounts",
        )
        accounts = result.unwrap() or []
        if not accounts:
            raise ValidationError("No OPEN billing account found")
        account = accounts[0]
        logger.info(f"Auto-detected billing account {account.id} ({account.display_name})")
        return account

    async def status(self, target_size: int | None = None, concurrency: int | None = None) -> PoolSummary:
        """Observe the pool and summarize it."""
        account = await self.select_billing_account()
        pool = await self.reconciler.observe(
            account.id,
            self._target(target_size),
            self._concurrency(concurrency),
        )
        return self.reporter.report(pool)

    async def reconcile(
        self,
        target_size: int | None = None,
        concurrency: int | None = None,
        resume: bool = False,
    ) -> Pool:
        """Create or refresh members until the pool reaches its target size."""
        account = await self.select_billing_account()
        self.key_store.prepare()
        return await self.reconciler.reconcile(
            account.id,
            self._target(target_size),
            self._concurrency(concurrency),
            resume=resume,
        )

    async def rebuild(
        self,
        confirmed: bool,
        target_size: int | None = None,
        concurrency: int | None = None,
    ) -> Pool:
        """Unlink every member from billing, then recreate the pool."""
        account = await self.select_billing_account()
        self.key_store.prepare()
        return await self.reconciler.rebuild(
            account.id,
            self._target(target_size),
            self._concurrency(concurrency),
            confirmed=confirmed,
        )

    async def quota_check(self, target_size: int | None = None) -> QuotaReport:
        """
        Best-effort read of how many projects the billing account holds.

        Issued once, without retries; a failure is reported on the result.
        """
        account = await self.select_billing_account()
        target = self._target(target_size)
        result = await self.executor.execute_once(
            lambda: self.provider.list_billing_projects(account.id),
            name=f"quota check for {account.id}",
        )
        if not result.ok:
            return QuotaReport(billing_account_id=account.id, target_size=target, error=str(result.error))

        linked = len(result.value or [])
        return QuotaReport(
            billing_account_id=account.id,
            target_size=target,
            linked_projects=linked,
            headroom=target - linked,
        )

    def describe(self) -> Dict[str, Any]:
        """Effective configuration, for display."""
        s = self.settings
        return {
            "billing_account": s.billing_account or "auto",
            "target_size": s.target_size,
            "concurrency": s.concurrency,
            "key_policy": s.key_policy,
            "checkpoint": str(s.checkpoint_path) if s.checkpoint_enabled else "disabled",
        }

    def _target(self, target_size: int | None) -> int:
        return self.settings.target_size if target_size is None else target_size

    def _concurrency(self, concurrency: int | None) -> int:
        return self.settings.concurrency if concurrency is None else concurrency
