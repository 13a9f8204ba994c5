"""
gcloud provider - drives Google Cloud through the gcloud CLI.

Each operation runs one ``gcloud`` command with ``asyncio.create_subprocess_exec``
and maps a non-zero exit status to the vertexpool error taxonomy based on the
command's stderr. The process is killed if the caller's timeout cancels it.
"""

import asyncio
import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import (
    ConfigurationError,
    ConflictError,
    IdCollisionError,
    NotFoundError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from ..models import BillingAccount, Key, ServiceAccount
from .base import Provider, require_ids

logger = logging.getLogger(__name__)

# Matched against lower-cased stderr, in this order
_RATE_LIMIT_MARKERS = ("rate limit", "ratelimit", "too many requests", "429", "try again")
_CONFLICT_MARKERS = ("already exists", "already_exists", "already in use")
_NOT_FOUND_MARKERS = ("not_found", "not found", "does not exist")
_PERMANENT_MARKERS = (
    "permission_denied",
    "permission denied",
    "does not have permission",
    "quota",
    "invalid_argument",
    "invalid argument",
    "failed_precondition",
    "unauthenticated",
)


def classify_error(stderr: str, command: str | None = None) -> ProviderError:
    """
    Map gcloud stderr to a provider error.

    Args:
        stderr: Error output of the failed command
        command: Command line, kept on the error for diagnostics

    Returns:
        The matching ProviderError subclass instance (unknown failures are transient)
    """
    text = stderr.lower()
    message = stderr.strip() or "gcloud command failed"

    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return TransientProviderError(message, command)
    if any(marker in text for marker in _CONFLICT_MARKERS):
        return ConflictError(message, command)
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return NotFoundError(message, command)
    if any(marker in text for marker in _PERMANENT_MARKERS):
        return PermanentProviderError(message, command)
    return TransientProviderError(message, command)


class GcloudProvider(Provider):
    """Provider backed by the gcloud CLI."""

    name = "gcloud"

    def __init__(self, gcloud_path: str = "gcloud"):
        """
        Initialize the gcloud provider.

        Args:
            gcloud_path: gcloud executable name or path
        """
        self.gcloud_path = gcloud_path

    async def _run_command(self, args: List[str]) -> Dict[str, Any]:
        """Run a gcloud command and return the result.

        Args:
            args: Arguments after the gcloud executable

        Returns:
            Dict with 'returncode', 'stdout', 'stderr'

        Raises:
            PermanentProviderError: If the gcloud executable cannot be started
        """
        cmd = [self.gcloud_path, *args, "--quiet"]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise PermanentProviderError(
                f"gcloud executable not found: {self.gcloud_path}", " ".join(cmd)
            ) from e

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            # Timed out or cancelled by the caller: do not leave gcloud running
            process.kill()
            await process.wait()
            raise

        return {
            "returncode": process.returncode,
            "stdout": stdout_bytes.decode(errors="replace").strip(),
            "stderr": stderr_bytes.decode(errors="replace").strip(),
            "command": " ".join(cmd),
        }

    async def _run(self, args: List[str], conflict: type[ProviderError] = ConflictError) -> str:
        """Run a command and raise the classified error on failure."""
        result = await self._run_command(args)
        if result["returncode"] != 0:
            error = classify_error(result["stderr"], result["command"])
            if isinstance(error, ConflictError) and conflict is not ConflictError:
                error = conflict(str(error), result["command"])
            raise error
        return result["stdout"]

    async def _run_json(self, args: List[str]) -> Any:
        stdout = await self._run([*args, "--format=json"])
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except ValueError as e:
            raise TransientProviderError(f"unparseable gcloud output: {e}") from e

    # =========================================================================
    # Billing
    # =========================================================================

    async def list_billing_accounts(self, open_only: bool = True) -> list[BillingAccount]:
        args = ["billing", "accounts", "list"]
        if open_only:
            args.append("--filter=open=true")
        data = await self._run_json(args) or []
        return [
            BillingAccount.from_resource_name(
                item.get("name", ""),
                display_name=item.get("displayName", ""),
                open=bool(item.get("open", True)),
            )
            for item in data
            if item.get("name")
        ]

    async def list_billing_projects(self, billing_account_id: str) -> list[str]:
        require_ids(billing_account_id=billing_account_id)
        data = await self._run_json([
            "beta", "billing", "projects", "list",
            f"--billing-account={billing_account_id}",
        ]) or []
        return [
            item["projectId"]
            for item in data
            if item.get("projectId") and item.get("billingEnabled", True)
        ]

    async def get_billing_account(self, project_id: str) -> Optional[str]:
        require_ids(project_id=project_id)
        data = await self._run_json(["beta", "billing", "projects", "describe", project_id]) or {}
        name = data.get("billingAccountName")
        if not name or not data.get("billingEnabled", True):
            return None
        return name.split("/")[-1]

    async def link_billing(self, project_id: str, billing_account_id: str) -> None:
        require_ids(project_id=project_id, billing_account_id=billing_account_id)
        await self._run([
            "beta", "billing", "projects", "link", project_id,
            f"--billing-account={billing_account_id}",
        ])

    async def unlink_billing(self, project_id: str) -> None:
        require_ids(project_id=project_id)
        await self._run(["beta", "billing", "projects", "unlink", project_id])

    # =========================================================================
    # Projects and APIs
    # =========================================================================

    async def create_project(self, project_id: str) -> None:
        require_ids(project_id=project_id)
        await self._run(
            ["projects", "create", project_id, f"--name={project_id}"],
            conflict=IdCollisionError,
        )

    async def list_enabled_apis(self, project_id: str) -> set[str]:
        require_ids(project_id=project_id)
        data = await self._run_json(["services", "list", "--enabled", f"--project={project_id}"]) or []
        return {
            item.get("config", {}).get("name", "")
            for item in data
            if item.get("config", {}).get("name")
        }

    async def enable_apis(self, project_id: str, apis: list[str]) -> None:
        require_ids(project_id=project_id)
        if not apis:
            return
        await self._run(["services", "enable", *apis, f"--project={project_id}"])

    # =========================================================================
    # Service accounts and IAM
    # =========================================================================

    async def get_service_account(self, project_id: str, email: str) -> Optional[ServiceAccount]:
        require_ids(project_id=project_id, email=email)
        try:
            data = await self._run_json([
                "iam", "service-accounts", "describe", email, f"--project={project_id}",
            ])
        except NotFoundError:
            return None
        if not data:
            return None
        return ServiceAccount(email=data.get("email", email))

    async def create_service_account(self, project_id: str, name: str, display_name: str) -> None:
        require_ids(project_id=project_id, name=name)
        await self._run([
            "iam", "service-accounts", "create", name,
            f"--display-name={display_name}",
            f"--project={project_id}",
        ])

    async def get_bound_roles(self, project_id: str, member: str) -> set[str]:
        require_ids(project_id=project_id, member=member)
        policy = await self._run_json(["projects", "get-iam-policy", project_id]) or {}
        return {
            binding["role"]
            for binding in policy.get("bindings", [])
            if member in binding.get("members", []) and "condition" not in binding
        }

    async def add_role_binding(self, project_id: str, member: str, role: str) -> None:
        require_ids(project_id=project_id, member=member, role=role)
        await self._run([
            "projects", "add-iam-policy-binding", project_id,
            f"--member={member}",
            f"--role={role}",
            "--condition=None",
        ])

    # =========================================================================
    # Keys
    # =========================================================================

    async def list_keys(self, project_id: str, email: str) -> list[Key]:
        require_ids(project_id=project_id, email=email)
        data = await self._run_json([
            "iam", "service-accounts", "keys", "list",
            f"--iam-account={email}",
            "--managed-by=user",
            f"--project={project_id}",
        ]) or []
        keys = [
            Key(
                remote_id=item["name"].split("/")[-1],
                created_at=datetime.fromisoformat(item["validAfterTime"]),
            )
            for item in data
            if item.get("name") and item.get("validAfterTime")
        ]
        return sorted(keys, key=lambda key: key.created_at)

    async def create_key(self, project_id: str, email: str, path: Path) -> None:
        require_ids(project_id=project_id, email=email, path=path)
        await self._run([
            "iam", "service-accounts", "keys", "create", str(path),
            f"--iam-account={email}",
            f"--project={project_id}",
        ])

    async def delete_key(self, project_id: str, email: str, key_id: str) -> None:
        require_ids(project_id=project_id, email=email, key_id=key_id)
        await self._run([
            "iam", "service-accounts", "keys", "delete", key_id,
            f"--iam-account={email}",
            f"--project={project_id}",
        ])

    # =========================================================================
    # Environment
    # =========================================================================

    async def check_environment(self) -> None:
        """Check that gcloud is installed and an account is logged in.

        Raises:
            ConfigurationError: If gcloud is missing or nobody is authenticated
        """
        if shutil.which(self.gcloud_path) is None:
            raise ConfigurationError(f"Missing dependency: {self.gcloud_path}")

        result = await self._run_command([
            "auth", "list", "--filter=status:ACTIVE", "--format=value(account)",
        ])
        if result["returncode"] != 0 or not result["stdout"]:
            raise ConfigurationError("No active gcloud account, run 'gcloud auth login' first")
        logger.info(f"Using gcloud account: {result['stdout'].splitlines()[0]}")
