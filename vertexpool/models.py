"""
Centralized Pydantic models for vertexpool.

This module contains the data models threaded through the reconciliation engine:
- Remote entities (billing accounts, projects, service accounts, keys)
- The Pool snapshot owned by the Reconciler for the duration of a run
- The Checkpoint record persisted between runs
- Status summaries produced by the reporter
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Core Enums
# =============================================================================

class ProvisioningState(str, Enum):
    """Provisioning states of a project, in pipeline order."""
    NEW = "new"
    CREATED = "created"
    BILLING_LINKED = "billing_linked"
    API_ENABLED = "api_enabled"
    SA_PROVISIONED = "sa_provisioned"
    KEY_READY = "key_ready"

    @property
    def rank(self) -> int:
        return list(ProvisioningState).index(self)


class ProvisioningStep(str, Enum):
    """Named steps, reported when a project pipeline fails."""
    CREATE = "create"
    LINK_BILLING = "link_billing"
    ENABLE_APIS = "enable_apis"
    SERVICE_ACCOUNT = "service_account"
    BIND_ROLES = "bind_roles"
    KEY_LIFECYCLE = "key_lifecycle"
    UNLINK_BILLING = "unlink_billing"


# =============================================================================
# Remote entities
# =============================================================================

class BillingAccount(BaseModel):
    """A billing account; projects link to exactly one."""
    id: str
    display_name: str = ""
    open: bool = True

    @classmethod
    def from_resource_name(cls, name: str, display_name: str = "", open: bool = True) -> "BillingAccount":
        """Build from ``billingAccounts/<id>`` or a bare id."""
        return cls(id=name.split("/")[-1], display_name=display_name, open=open)


class Key(BaseModel):
    """A service account key, remote and/or local."""
    remote_id: Optional[str] = None
    created_at: datetime
    local_path: Optional[Path] = None


class ServiceAccount(BaseModel):
    """Non-human identity inside a project."""
    email: str
    bound_roles: set[str] = Field(default_factory=set)
    keys: List[Key] = Field(default_factory=list, description="Ordered by creation time")

    @staticmethod
    def email_for(name: str, project_id: str) -> str:
        return f"{name}@{project_id}.iam.gserviceaccount.com"

    @property
    def member(self) -> str:
        """IAM member string for role bindings."""
        return f"serviceAccount:{self.email}"

    @property
    def local_key_count(self) -> int:
        return sum(1 for key in self.keys if key.local_path is not None)


class Project(BaseModel):
    """A provisioned project; the orchestrator's unit of work."""
    id: str
    billing_account_id: Optional[str] = None
    state: ProvisioningState = ProvisioningState.NEW
    enabled_apis: set[str] = Field(default_factory=set)
    service_account: Optional[ServiceAccount] = None

    def advance(self, state: ProvisioningState, **changes) -> "Project":
        """Return a copy moved to ``state`` (never backwards) with ``changes`` applied."""
        if state.rank < self.state.rank:
            state = self.state
        return self.model_copy(update={"state": state, **changes})


# =============================================================================
# Pool and checkpoint
# =============================================================================

class Pool(BaseModel):
    """Target-sized set of projects maintained per billing account.

    Members are keyed by project id, so duplicates cannot exist. Helpers return
    updated copies instead of mutating in place.
    """
    billing_account_id: str
    target_size: int = Field(..., ge=0)
    members: Dict[str, Project] = Field(default_factory=dict)

    @property
    def member_ids(self) -> List[str]:
        return list(self.members)

    @property
    def deficit(self) -> int:
        """Number of projects still missing to reach the target."""
        return max(0, self.target_size - len(self.members))

    def with_member(self, project: Project) -> "Pool":
        return self.model_copy(update={"members": {**self.members, project.id: project}})

    def cleared(self) -> "Pool":
        return self.model_copy(update={"members": {}})

    def to_checkpoint(self) -> "Checkpoint":
        return Checkpoint(billing_account_id=self.billing_account_id, project_ids=self.member_ids)


class Checkpoint(BaseModel):
    """Durable snapshot of pool membership, used to resume a run."""
    billing_account_id: str
    project_ids: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)


# =============================================================================
# Reporting
# =============================================================================

class ProjectStatus(BaseModel):
    """Per-project status line."""
    project_id: str
    api_enabled: bool
    local_key_count: int


class PoolSummary(BaseModel):
    """Account-level aggregation over a pool."""
    billing_account_id: str
    target_size: int
    projects: List[ProjectStatus] = Field(default_factory=list)
    member_count: int = 0
    api_enabled_fraction: float = 0.0
    average_key_count: float = 0.0


class QuotaReport(BaseModel):
    """Best-effort quota read; ``error`` is set when the read failed."""
    billing_account_id: str
    target_size: int
    linked_projects: Optional[int] = None
    headroom: Optional[int] = None
    error: Optional[str] = None
