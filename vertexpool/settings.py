"""
vertexpool Settings - Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Find project root (where .env file is located)
PROJECT_ROOT = Path(__file__).parent.parent


class VertexPoolSettings(BaseSettings):
    """
    vertexpool configuration settings.

    Settings are loaded from:
    1. Environment variables (highest priority)
    2. .env file in project root
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="VP_",  # All vertexpool env vars must start with VP_
    )

    # Billing / pool shape
    billing_account: str | None = Field(
        default=None,
        description="Billing account id; auto-detects the first open account when unset (env: VP_BILLING_ACCOUNT)",
    )

    project_prefix: str = Field(
        default="vertex",
        description="Prefix for generated project ids (env: VP_PROJECT_PREFIX)",
    )

    target_size: int = Field(
        default=3,
        description="Number of projects to keep linked to the billing account (env: VP_TARGET_SIZE)",
    )

    # Per-project configuration
    service_account_name: str = Field(
        default="vertex-admin",
        description="Service account id created in every project (env: VP_SERVICE_ACCOUNT_NAME)",
    )

    service_account_display_name: str = Field(
        default="Vertex Admin",
        description="Display name for the service account (env: VP_SERVICE_ACCOUNT_DISPLAY_NAME)",
    )

    required_apis: list[str] = Field(
        default_factory=lambda: ["aiplatform.googleapis.com"],
        description="APIs enabled in every project (env: VP_REQUIRED_APIS, JSON list)",
    )

    roles: list[str] = Field(
        default_factory=lambda: [
            "roles/aiplatform.admin",
            "roles/iam.serviceAccountUser",
            "roles/aiplatform.user",
        ],
        description="Roles bound to the service account (env: VP_ROLES, JSON list)",
    )

    # Keys
    key_dir: Path = Field(
        default=Path("keys"),
        description="Directory holding service account key files (env: VP_KEY_DIR)",
    )

    key_policy: str = Field(
        default="never",
        description="What to do when local keys already exist: always, never, ask (env: VP_KEY_POLICY)",
    )

    prune_remote_keys: bool = Field(
        default=False,
        description="After generating a key, delete all older remote keys (env: VP_PRUNE_REMOTE_KEYS)",
    )

    # Execution
    concurrency: int = Field(
        default=4,
        description="Maximum projects provisioned at the same time (env: VP_CONCURRENCY)",
    )

    max_attempts: int = Field(
        default=3,
        description="Attempts per remote call before giving up (env: VP_MAX_ATTEMPTS)",
    )

    backoff_step: float = Field(
        default=10.0,
        description="Seconds added to the retry delay per attempt (env: VP_BACKOFF_STEP)",
    )

    backoff_jitter: float = Field(
        default=5.0,
        description="Upper bound of random seconds added to each retry delay (env: VP_BACKOFF_JITTER)",
    )

    call_timeout: float = Field(
        default=120.0,
        description="Timeout in seconds for a single remote call (env: VP_CALL_TIMEOUT)",
    )

    start_jitter: float = Field(
        default=1.0,
        description="Upper bound of the random delay before each project task starts (env: VP_START_JITTER)",
    )

    id_collision_attempts: int = Field(
        default=3,
        description="New project ids tried when an id is already taken (env: VP_ID_COLLISION_ATTEMPTS)",
    )

    # Checkpointing
    checkpoint_enabled: bool = Field(
        default=True,
        description="Persist pool membership after every unit of work (env: VP_CHECKPOINT_ENABLED)",
    )

    checkpoint_path: Path = Field(
        default=Path(".vertexpool/checkpoint.json"),
        description="Checkpoint file; a .joblib suffix selects joblib format (env: VP_CHECKPOINT_PATH)",
    )

    # Provider
    gcloud_path: str = Field(
        default="gcloud",
        description="gcloud executable (env: VP_GCLOUD_PATH)",
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR) (env: VP_LOG_LEVEL)",
    )

    @field_validator("key_policy")
    @classmethod
    def _check_key_policy(cls, value: str) -> str:
        value = value.lower()
        if value not in ("always", "never", "ask"):
            raise ValueError("key_policy must be one of: always, never, ask")
        return value

    @field_validator("backoff_jitter")
    @classmethod
    def _check_jitter(cls, value: float, info) -> float:
        step = info.data.get("backoff_step", 10.0)
        if value < 0 or value > step:
            raise ValueError("backoff_jitter must be between 0 and backoff_step")
        return value


# Global settings instance
_settings: VertexPoolSettings | None = None


def get_settings() -> VertexPoolSettings:
    """
    Get the global settings instance.

    Creates the settings instance on first call, then returns cached instance.

    Returns:
        VertexPoolSettings instance
    """
    global _settings
    if _settings is None:
        _settings = VertexPoolSettings()
    return _settings


def reload_settings() -> VertexPoolSettings:
    """
    Reload settings from environment/files.

    Useful for testing or when .env file changes.

    Returns:
        Fresh VertexPoolSettings instance
    """
    global _settings
    _settings = VertexPoolSettings()
    return _settings
