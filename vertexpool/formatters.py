"""
Rich output formatting for pool reports.

Renders PoolSummary, Pool and QuotaReport values as rich tables and panels for
the CLI. Formatting only; nothing here talks to the provider.
"""

from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .models import Pool, PoolSummary, QuotaReport


class PoolFormatter:
    """Formats pool state for the terminal."""

    def __init__(self, console: Optional[Console] = None):
        """Initialize formatter with Rich console."""
        self.console = console or Console()

        self.colors = {
            'on': 'green',
            'off': 'red',
            'header': 'bold blue',
            'comment': 'dim',
        }

    def status_table(self, summary: PoolSummary) -> Table:
        """Build the per-project status table."""
        table = Table(
            title=f"Projects (Billing: {summary.billing_account_id})",
            title_style=self.colors['header'],
        )
        table.add_column("Project", style="bright_white")
        table.add_column("API")
        table.add_column("Local keys", justify="right")

        for status in summary.projects:
            api = Text("ON", style=self.colors['on']) if status.api_enabled else Text("OFF", style=self.colors['off'])
            table.add_row(status.project_id, api, str(status.local_key_count))
        return table

    def summary_line(self, summary: PoolSummary) -> Text:
        enabled = round(summary.api_enabled_fraction * summary.member_count)
        return Text(
            f"{summary.member_count}/{summary.target_size} members, "
            f"{enabled}/{summary.member_count} API enabled, "
            f"{summary.average_key_count:.1f} keys/project average",
            style=self.colors['comment'],
        )

    def print_summary(self, summary: PoolSummary) -> None:
        self.console.print(self.status_table(summary))
        self.console.print(self.summary_line(summary))

    def print_pool(self, pool: Pool) -> None:
        table = Table(title=f"Pool (Billing: {pool.billing_account_id})", title_style=self.colors['header'])
        table.add_column("Project", style="bright_white")
        table.add_column("State")
        table.add_column("Service account")
        for project in pool.members.values():
            email = project.service_account.email if project.service_account else "-"
            table.add_row(project.id, project.state.value, email)
        self.console.print(table)

    def print_quota(self, report: QuotaReport) -> None:
        if report.error:
            self.console.print(f"[yellow]⚠ Quota check failed:[/yellow] {report.error}")
            return
        self.console.print(
            f"Billing account {report.billing_account_id}: "
            f"{report.linked_projects} linked / {report.target_size} target "
            f"(headroom: {report.headroom})"
        )
