"""
Reconcile scenarios run against the in-memory provider.
"""

import json
from datetime import datetime

import pytest

from vertexpool.errors import (
    PermanentProviderError,
    ProvisioningError,
    ReconcileError,
    ValidationError,
)
from vertexpool.models import Checkpoint, Key, ProvisioningState, ServiceAccount
from vertexpool.reconciler import Reconciler, failure_lines
from vertexpool.reporter import StatusReporter
from vertexpool.scheduler import BoundedScheduler

from tests.conftest import APIS, BILLING, ROLES, SA_NAME, FakeProvider


def seed_configured_project(provider, key_store, project_id):
    """A project that already has billing, APIs, service account, roles and one key."""
    provider.seed_project(project_id)
    provider.apis[project_id] = set(APIS)
    email = ServiceAccount.email_for(SA_NAME, project_id)
    provider.service_accounts[(project_id, email)] = ServiceAccount(email=email)
    provider.roles[(project_id, f"serviceAccount:{email}")] = set(ROLES)
    provider.keys[(project_id, email)] = [Key(remote_id="existing-key", created_at=datetime(2023, 1, 1))]
    path = key_store.new_key_path(project_id, SA_NAME)
    path.write_text(json.dumps({"private_key_id": "existing-key"}))
    return email


class TestReconcile:
    """Test bringing a pool to its target size."""

    @pytest.mark.asyncio
    async def test_empty_account_filled_to_target(self, reconciler, provider, checkpoints):
        pool = await reconciler.reconcile(BILLING, 3, 2)

        assert len(pool.members) == 3
        assert all(p.state == ProvisioningState.KEY_READY for p in pool.members.values())
        assert provider.count("create_project") == 3
        linked = [p for p, billing in provider.links.items() if billing == BILLING]
        assert sorted(linked) == sorted(pool.member_ids)

        checkpoint = checkpoints.load()
        assert checkpoint.billing_account_id == BILLING
        assert sorted(checkpoint.project_ids) == sorted(pool.member_ids)

    @pytest.mark.asyncio
    async def test_rerun_issues_no_mutations(self, reconciler, provider):
        first = await reconciler.reconcile(BILLING, 3, 2)
        provider.reset_calls()

        second = await reconciler.reconcile(BILLING, 3, 2)

        assert provider.mutations == []
        assert sorted(second.member_ids) == sorted(first.member_ids)

    @pytest.mark.asyncio
    async def test_existing_members_refreshed_before_creating(self, reconciler, provider):
        provider.seed_project("legacy-1")
        provider.seed_project("legacy-2")

        pool = await reconciler.reconcile(BILLING, 3, 2)

        assert {"legacy-1", "legacy-2"} <= set(pool.member_ids)
        assert len(pool.members) == 3
        assert provider.count("create_project") == 1
        assert pool.members["legacy-1"].state == ProvisioningState.KEY_READY

    @pytest.mark.asyncio
    async def test_empty_account_report_after_reconcile(self, provisioner, checkpoints):
        provider = FakeProvider(latency=0.005)
        provisioner.provider = provider
        reconciler = Reconciler(provisioner, BoundedScheduler(limit=8), checkpoints)

        await reconciler.reconcile(BILLING, 3, 2)
        summary = StatusReporter(APIS).report(await reconciler.observe(BILLING, 3, 2))

        assert provider.count("create_project") == 3
        assert provider.max_active <= 2
        assert summary.member_count == 3
        assert summary.api_enabled_fraction == 1.0
        assert summary.average_key_count == 1.0

    @pytest.mark.asyncio
    async def test_configured_member_untouched_while_filling(self, reconciler, provider, key_store):
        email = seed_configured_project(provider, key_store, "existing")

        pool = await reconciler.reconcile(BILLING, 3, 5)

        assert len(pool.members) == 3
        assert provider.count("create_project") == 2
        assert [call for call in provider.mutations if call[1][0] == "existing"] == []
        assert key_store.count("existing", SA_NAME) == 1
        assert [key.remote_id for key in provider.keys[("existing", email)]] == ["existing-key"]
        assert pool.members["existing"].state == ProvisioningState.KEY_READY

    @pytest.mark.asyncio
    async def test_members_above_target_are_kept(self, reconciler, provider):
        for project_id in ("a", "b", "c"):
            provider.seed_project(project_id)

        pool = await reconciler.reconcile(BILLING, 2, 2)

        assert sorted(pool.member_ids) == ["a", "b", "c"]
        assert provider.count("create_project") == 0

    @pytest.mark.asyncio
    async def test_concurrency_cap_respected(self, provisioner, checkpoints):
        provider = FakeProvider(latency=0.005)
        provisioner.provider = provider
        reconciler = Reconciler(provisioner, BoundedScheduler(limit=8), checkpoints)

        pool = await reconciler.reconcile(BILLING, 5, 2)

        assert len(pool.members) == 5
        assert provider.max_active <= 2

    @pytest.mark.asyncio
    async def test_failed_project_does_not_stop_others(self, reconciler, provider, checkpoints):
        provider.fail("create_project", PermanentProviderError("quota exceeded"))

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(BILLING, 3, 1)

        error = exc_info.value
        assert len(error.pool.members) == 2
        assert len(error.failures) == 1
        assert isinstance(error.failures[0], ProvisioningError)
        assert sorted(checkpoints.load().project_ids) == sorted(error.pool.member_ids)

        lines = failure_lines(error)
        assert len(lines) == 1
        assert "step 'create'" in lines[0]
        assert "1 attempt(s)" in lines[0]

    @pytest.mark.asyncio
    async def test_rerun_after_failure_completes_pool(self, reconciler, provider):
        provider.fail("create_project", PermanentProviderError("quota exceeded"))
        with pytest.raises(ReconcileError):
            await reconciler.reconcile(BILLING, 3, 1)

        pool = await reconciler.reconcile(BILLING, 3, 1)

        assert len(pool.members) == 3
        assert provider.count("create_project") == 4

    @pytest.mark.asyncio
    async def test_invalid_arguments_rejected_before_remote_calls(self, reconciler, provider):
        with pytest.raises(ValidationError):
            await reconciler.reconcile(BILLING, -1, 2)
        with pytest.raises(ValidationError):
            await reconciler.reconcile("", 1, 2)
        with pytest.raises(ValidationError):
            await reconciler.reconcile(BILLING, 1, 0)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_target_zero_creates_nothing(self, reconciler, provider):
        pool = await reconciler.reconcile(BILLING, 0, 2)

        assert pool.members == {}
        assert provider.mutations == []


class TestResume:
    """Test seeding membership from a checkpoint."""

    @pytest.mark.asyncio
    async def test_resume_uses_checkpoint_membership(self, reconciler, provider, checkpoints):
        # Created before a crash but never linked, so listing would not find it
        provider.seed_project("vertex-orphan", billing_account_id=None)
        checkpoints.save(Checkpoint(billing_account_id=BILLING, project_ids=["vertex-orphan"]))

        pool = await reconciler.reconcile(BILLING, 1, 1, resume=True)

        assert pool.member_ids == ["vertex-orphan"]
        assert provider.count("list_billing_projects") == 0
        assert provider.count("create_project") == 0
        assert provider.links["vertex-orphan"] == BILLING

    @pytest.mark.asyncio
    async def test_resume_creates_only_missing_members(self, reconciler, provider, checkpoints):
        provider.seed_project("vertex-a", billing_account_id=None)
        checkpoints.save(Checkpoint(billing_account_id=BILLING, project_ids=["vertex-a"]))

        pool = await reconciler.reconcile(BILLING, 3, 2, resume=True)

        assert provider.count("create_project") == 2
        assert len(pool.members) == 3
        assert "vertex-a" in pool.members

    @pytest.mark.asyncio
    async def test_project_failing_after_create_is_refreshed_on_resume(self, reconciler, provider, checkpoints):
        provider.fail("link_billing", PermanentProviderError("permission denied"))

        with pytest.raises(ReconcileError) as exc_info:
            await reconciler.reconcile(BILLING, 1, 1)

        assert exc_info.value.pool.member_ids == ["vertex-000001"]
        assert exc_info.value.pool.members["vertex-000001"].state == ProvisioningState.CREATED
        assert checkpoints.load().project_ids == ["vertex-000001"]

        pool = await reconciler.reconcile(BILLING, 1, 1, resume=True)

        assert provider.count("create_project") == 1
        assert sorted(provider.projects) == ["vertex-000001"]
        assert pool.member_ids == ["vertex-000001"]
        assert pool.members["vertex-000001"].state == ProvisioningState.KEY_READY

    @pytest.mark.asyncio
    async def test_created_member_checkpointed_before_provisioning(self, reconciler, provider, checkpoints):
        seen = []

        async def link_billing(project_id, billing_account_id):
            seen.append(checkpoints.load().project_ids)
            provider.links[project_id] = billing_account_id

        provider.link_billing = link_billing

        await reconciler.reconcile(BILLING, 1, 1)

        assert seen == [["vertex-000001"]]

    @pytest.mark.asyncio
    async def test_checkpoint_of_other_account_ignored(self, reconciler, provider, checkpoints):
        checkpoints.save(Checkpoint(billing_account_id="OTHER", project_ids=["foreign"]))

        pool = await reconciler.reconcile(BILLING, 1, 1, resume=True)

        assert "foreign" not in pool.member_ids
        assert provider.count("list_billing_projects") == 1

    @pytest.mark.asyncio
    async def test_missing_checkpoint_falls_back_to_provider(self, reconciler, provider):
        provider.seed_project("existing")

        pool = await reconciler.reconcile(BILLING, 1, 1, resume=True)

        assert pool.member_ids == ["existing"]


class TestRebuild:
    """Test unlink-and-recreate."""

    @pytest.mark.asyncio
    async def test_rebuild_requires_confirmation(self, reconciler, provider):
        provider.seed_project("old")

        with pytest.raises(ValidationError):
            await reconciler.rebuild(BILLING, 1, 1)

        assert provider.calls == []
        assert provider.links["old"] == BILLING

    @pytest.mark.asyncio
    async def test_rebuild_replaces_members(self, reconciler, provider, checkpoints):
        provider.seed_project("old-1")
        provider.seed_project("old-2")

        pool = await reconciler.rebuild(BILLING, 2, 2, confirmed=True)

        assert "old-1" not in provider.links and "old-2" not in provider.links
        assert "old-1" in provider.projects
        assert len(pool.members) == 2
        assert not {"old-1", "old-2"} & set(pool.member_ids)
        assert sorted(checkpoints.load().project_ids) == sorted(pool.member_ids)


class TestObserve:
    """Test the read-only snapshot."""

    @pytest.mark.asyncio
    async def test_observe_is_read_only(self, reconciler, provider):
        await reconciler.reconcile(BILLING, 2, 2)
        provider.reset_calls()

        pool = await reconciler.observe(BILLING, 2, 2)

        assert provider.mutations == []
        assert len(pool.members) == 2
        for project in pool.members.values():
            assert "aiplatform.googleapis.com" in project.enabled_apis
            assert project.service_account.local_key_count == 1

    @pytest.mark.asyncio
    async def test_observe_keeps_unreadable_projects(self, reconciler, provider):
        provider.seed_project("p1")
        provider.fail("list_enabled_apis", PermanentProviderError("permission denied"))

        pool = await reconciler.observe(BILLING, 1, 1)

        assert pool.member_ids == ["p1"]
        assert pool.members["p1"].enabled_apis == set()
