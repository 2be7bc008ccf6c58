"""
Storage Module.

Interfaces and in-memory implementations of the essay store and credential vault.
"""

from essayfeed.storage.base import CredentialVault, EssayStore, StoreError
from essayfeed.storage.memory import InMemoryCredentialVault, InMemoryEssayStore

__all__ = [
    "CredentialVault",
    "EssayStore",
    "InMemoryCredentialVault",
    "InMemoryEssayStore",
    "StoreError",
]
