"""Providers for the remote control plane."""

from .base import Provider, require_ids
from .gcloud import GcloudProvider, classify_error

__all__ = [
    "Provider",
    "GcloudProvider",
    "classify_error",
    "require_ids",
]
