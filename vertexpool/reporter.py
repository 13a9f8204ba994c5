"""Status Reporter - read-only aggregation over a pool snapshot."""

import logging
from typing import List

from .models import Pool, PoolSummary, Project, ProjectStatus

logger = logging.getLogger(__name__)


class StatusReporter:
    """Summarizes a Pool without touching it or the provider.

    Safe to call while a reconcile run is in progress: it only reads the
    snapshot it is given.
    """

    def __init__(self, required_apis: List[str]):
        self.required_apis = list(required_apis)

    def project_status(self, project: Project) -> ProjectStatus:
        api_enabled = all(api in project.enabled_apis for api in self.required_apis)
        local_keys = project.service_account.local_key_count if project.service_account else 0
        return ProjectStatus(project_id=project.id, api_enabled=api_enabled, local_key_count=local_keys)

    def report(self, pool: Pool) -> PoolSummary:
        """
        Build the summary for a pool.

        Args:
            pool: Pool snapshot

        Returns:
            PoolSummary with per-project lines, the fraction of members with
            every required API enabled and the average local key count
        """
        projects = [self.project_status(project) for project in pool.members.values()]
        count = len(projects)

        summary = PoolSummary(
            billing_account_id=pool.billing_account_id,
            target_size=pool.target_size,
            projects=projects,
            member_count=count,
            api_enabled_fraction=(sum(1 for p in projects if p.api_enabled) / count) if count else 0.0,
            average_key_count=(sum(p.local_key_count for p in projects) / count) if count else 0.0,
        )
        logger.debug(
            f"Report for {pool.billing_account_id}: {count}/{pool.target_size} members, "
            f"{summary.api_enabled_fraction:.0%} API enabled"
        )
        return summary
