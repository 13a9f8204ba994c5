"""
vertexpool - keep a fixed-size pool of fully provisioned cloud projects.

Every project in the pool is created, linked to the billing account, has its
required APIs enabled, owns a service account with the configured roles and
holds a local key. Runs are idempotent and resumable:

- Every remote call is retried with jittered backoff
- Projects are provisioned concurrently under a fixed cap
- Progress is checkpointed after each project
"""

from .core import PoolCore
from .settings import VertexPoolSettings, get_settings, reload_settings

__version__ = "0.1.0"
__all__ = [
    "PoolCore",
    "VertexPoolSettings",
    "get_settings",
    "reload_settings",
]
