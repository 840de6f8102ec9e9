"""In-memory implementations of the store and vault contracts."""

import copy
import secrets as _random
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from shared.errors import ConditionFailed, NotFound, ValidationError
from shared.logging import get_logger

from .base import Item, Page, Token, VaultSecret


def _page(items: List[Item], page_size: int, token: Token) -> Page:
    if page_size < 1:
        raise ValidationError("page_size must be positive", {"page_size": page_size})
    offset = int((token or {}).get("offset", 0))
    chunk = items[offset:offset + page_size]
    end = offset + len(chunk)
    next_token = {"offset": end} if end < len(items) else None
    return Page(items=[copy.deepcopy(i) for i in chunk], next_token=next_token)


class InMemoryRecordStore:
    """In-memory record store for testing and development.

    Items are kept in insertion order and queried by linear scan.
    Not suitable for production use.
    """

    DEFAULT_INDEXES: Dict[str, Tuple[str, ...]] = {
        "app-env-index": ("app", "env"),
        "env-index": ("env",),
    }

    def __init__(self, key_attribute: str = "id", indexes: Optional[Mapping[str, Sequence[str]]] = None):
        self.key_attribute = key_attribute
        self.indexes = {name: tuple(attrs) for name, attrs in (indexes or self.DEFAULT_INDEXES).items()}
        self._items: Dict[str, Item] = {}

    def load(self, items: Sequence[Item], key_attribute: Optional[str] = None) -> None:
        """Seed raw items, e.g. legacy-schema rows keyed by another attribute."""
        attr = key_attribute or self.key_attribute
        for item in items:
            self._items[str(item[attr])] = copy.deepcopy(item)

    async def get(self, record_id: str) -> Optional[Item]:
        item = self._items.get(record_id)
        return copy.deepcopy(item) if item is not None else None

    async def create(self, item: Item) -> None:
        key = str(item[self.key_attribute])
        if key in self._items:
            raise ConditionFailed(f"Record with ID {key} already exists", {"id": key})
        self._items[key] = copy.deepcopy(item)

    async def update(self, record_id: str, fields: Mapping[str, Any]) -> None:
        if record_id not in self._items:
            raise ConditionFailed(f"Record with ID {record_id} not found", {"id": record_id})
        self._items[record_id].update(copy.deepcopy(dict(fields)))

    async def put(self, item: Item) -> None:
        self._items[str(item[self.key_attribute])] = copy.deepcopy(item)

    async def list(self, page_size: int, token: Token = None) -> Page:
        return _page(list(self._items.values()), page_size, token)

    async def query_by_index(self, index_name: str, key_values: Mapping[str, Any],
                             page_size: int, token: Token = None) -> Page:
        if index_name not in self.indexes:
            raise NotFound(f"Index {index_name} not found", {"index": index_name})
        attrs = self.indexes[index_name]
        unknown = set(key_values) - set(attrs)
        if unknown or attrs[0] not in key_values:
            raise ValidationError(
                f"Key values must include {attrs[0]} and only use {', '.join(attrs)}",
                {"index": index_name},
            )
        matches = [
            item for item in self._items.values()
            if all(item.get(attr) == value for attr, value in key_values.items())
        ]
        return _page(matches, page_size, token)


class InMemoryAuditStore:
    """In-memory audit table: one partition key, timestamp as sort key.

    Like the real table, a put with an existing (partition, sort) key replaces
    that item.
    """

    def __init__(self, partition_key: str, sort_key: str = "timestamp"):
        self.partition_key = partition_key
        self.sort_key = sort_key
        self._items: List[Item] = []

    async def put(self, item: Item) -> None:
        if self.partition_key not in item or self.sort_key not in item:
            raise ValidationError(
                f"Audit items require {self.partition_key} and {self.sort_key}",
                {"keys": sorted(item)},
            )
        key = (item[self.partition_key], item[self.sort_key])
        self._items = [i for i in self._items if (i[self.partition_key], i[self.sort_key]) != key]
        self._items.append(copy.deepcopy(item))

    async def query_by_partition(self, key: str, page_size: int, token: Token = None,
                                 descending: bool = True) -> Page:
        matches = [item for item in self._items if item[self.partition_key] == key]
        matches.sort(key=lambda item: item[self.sort_key], reverse=descending)
        return _page(matches, page_size, token)

    async def scan(self, page_size: int, token: Token = None) -> Page:
        return _page(list(self._items), page_size, token)


class InMemoryVault:
    """In-memory secret vault producing Secrets Manager style ARNs."""

    def __init__(self, region: str = "us-east-1", account_id: str = "123456789012"):
        self.region = region
        self.account_id = account_id
        self._secrets: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("vault.inmemory")

    def _require(self, external_ref: str) -> Dict[str, Any]:
        if external_ref not in self._secrets:
            raise NotFound("Secret not found in vault", {"external_ref": external_ref})
        return self._secrets[external_ref]

    async def describe(self, external_ref: str) -> VaultSecret:
        entry = self._require(external_ref)
        return VaultSecret(
            external_ref=external_ref,
            name=entry["name"],
            region=self.region,
            tags=dict(entry["tags"]),
        )

    async def create(self, name: str, value: str, tags: Mapping[str, str]) -> VaultSecret:
        if any(entry["name"] == name for entry in self._secrets.values()):
            raise ConditionFailed(f"Secret {name} already exists in vault", {"name": name})
        suffix = _random.token_hex(3)
        arn = f"arn:aws:secretsmanager:{self.region}:{self.account_id}:secret:{name}-{suffix}"
        self._secrets[arn] = {"name": name, "values": [value], "tags": dict(tags)}
        self.logger.debug("Vault secret created", name=name)
        return await self.describe(arn)

    async def put_value(self, external_ref: str, value: str) -> None:
        self._require(external_ref)["values"].append(value)

    async def tag(self, external_ref: str, tags: Mapping[str, str]) -> None:
        self._require(external_ref)["tags"].update(tags)

    def current_value(self, external_ref: str) -> str:
        return self._require(external_ref)["values"][-1]
