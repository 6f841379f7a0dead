"""Credential store adapters."""

from .base import CredentialStore
from .memory import MemoryCredentialStore

__all__ = ["CredentialStore", "MemoryCredentialStore"]
