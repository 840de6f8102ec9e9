"""
Persistence contracts and in-memory implementations.

- base: async protocols for the record store, audit store and secret vault
- inmemory: dict-backed implementations for local runs and tests
"""

from .base import AuditStore, Item, Page, RecordStore, SecretVault, Token, VaultSecret
from .inmemory import InMemoryAuditStore, InMemoryRecordStore, InMemoryVault

__all__ = [
    "AuditStore",
    "InMemoryAuditStore",
    "InMemoryRecordStore",
    "InMemoryVault",
    "Item",
    "Page",
    "RecordStore",
    "SecretVault",
    "Token",
    "VaultSecret",
]
