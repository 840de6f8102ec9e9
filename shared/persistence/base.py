"""
Store and vault contracts consumed by the core.

Implementations own their wire protocol; the core only sees these async
methods, plain dict items and opaque continuation tokens.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

Item = Dict[str, Any]
Token = Optional[Dict[str, Any]]


@dataclass
class Page:
    """One page of a paged read."""
    items: List[Item] = field(default_factory=list)
    next_token: Token = None


@dataclass
class VaultSecret:
    """What the vault reports about one secret."""
    external_ref: str
    name: str
    region: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)


@runtime_checkable
class RecordStore(Protocol):
    """Secret metadata store."""

    async def get(self, record_id: str) -> Optional[Item]:
        ...

    async def create(self, item: Item) -> None:
        """Write a new item; raises ConditionFailed when the id already exists."""
        ...

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> None:
        """Set fields on an existing item; raises ConditionFailed when it does not exist."""
        ...

    async def put(self, item: Item) -> None:
        """Unconditionally replace an item."""
        ...

    async def list(self, page_size: int, token: Token = None) -> Page:
        ...

    async def query_by_index(self, index_name: str, key_values: Mapping[str, Any],
                             page_size: int, token: Token = None) -> Page:
        ...


@runtime_checkable
class AuditStore(Protocol):
    """Append-only audit table partitioned by one key and sorted by timestamp."""

    partition_key: str

    async def put(self, item: Item) -> None:
        ...

    async def query_by_partition(self, key: str, page_size: int, token: Token = None,
                                 descending: bool = True) -> Page:
        ...

    async def scan(self, page_size: int, token: Token = None) -> Page:
        ...


@runtime_checkable
class SecretVault(Protocol):
    """Secret value vault."""

    async def describe(self, external_ref: str) -> VaultSecret:
        ...

    async def create(self, name: str, value: str, tags: Mapping[str, str]) -> VaultSecret:
        ...

    async def put_value(self, external_ref: str, value: str) -> None:
        ...

    async def tag(self, external_ref: str, tags: Mapping[str, str]) -> None:
        ...
