"""
Account inventories compared by the reconciliation engine.

An AccountSet is a point-in-time snapshot of one side (vault or platform)
for one platform, keyed by account_id. Sets are built fresh for every run.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Optional


class AccountSide(str, Enum):
    """Which inventory an account set was read from."""
    VAULT = "vault"
    PLATFORM = "platform"


@dataclass(frozen=True)
class AccountRecord:
    """A single account. ``account_id`` is the matching key."""
    account_id: str
    account_name: str
    platform: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any], platform: str) -> "AccountRecord":
        account_id = data.get("account_id")
        if not isinstance(account_id, str) or not account_id:
            raise ValueError(f"Account entry has no usable account_id: {data!r}")
        account_name = data.get("account_name") or ""
        if not isinstance(account_name, str):
            raise ValueError(f"account_name must be a string for account {account_id}")
        return cls(account_id=account_id, account_name=account_name, platform=platform)


class AccountSet(Mapping):
    """Immutable mapping of account_id -> AccountRecord."""

    __slots__ = ("_platform", "_records")

    def __init__(self, platform: str, records: Optional[Iterable[AccountRecord]] = None):
        index: Dict[str, AccountRecord] = {}
        for record in records or ():
            if record.account_id in index:
                raise ValueError(
                    f"Duplicate account_id {record.account_id!r} in account set for {platform}"
                )
            index[record.account_id] = record
        self._platform = platform
        self._records = MappingProxyType(index)

    @classmethod
    def from_dicts(cls, platform: str, entries: Iterable[Dict[str, Any]]) -> "AccountSet":
        return cls(platform, (AccountRecord.from_dict(e, platform) for e in entries))

    @property
    def platform(self) -> str:
        return self._platform

    def keys(self):
        return self._records.keys()

    def name_of(self, account_id: str) -> str:
        record = self._records.get(account_id)
        return record.account_name if record else ""

    def __getitem__(self, account_id: str) -> AccountRecord:
        return self._records[account_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"AccountSet(platform={self._platform!r}, size={len(self)})"
