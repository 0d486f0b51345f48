"""
Account source collaborators.

The reconciliation engine never reads inventories itself; it asks an
AccountSource for one side of one platform at a time.
"""

from typing import Dict, Iterable, Optional, Protocol, Tuple, Union, runtime_checkable

from vaultaudit.reconciliation.account_sets import AccountRecord, AccountSet, AccountSide
from vaultaudit.reconciliation.errors import FetchError


@runtime_checkable
class AccountSource(Protocol):
    """Provides a fresh AccountSet per call. Raises FetchError on failure."""

    async def fetch_accounts(self, platform: str, side: AccountSide) -> AccountSet:
        ...


AccountEntry = Union[AccountRecord, Dict[str, str], str]


class StaticAccountSource:
    """
    In-memory inventories.

    Entries may be AccountRecords, ``{"account_id", "account_name"}`` dicts
    or bare account ids. Unknown platforms raise FetchError.
    """

    def __init__(self, inventories: Optional[Dict[Tuple[str, AccountSide], Iterable[AccountEntry]]] = None):
        self._inventories: Dict[Tuple[str, AccountSide], list] = {}
        for (platform, side), entries in (inventories or {}).items():
            self.set_accounts(platform, side, entries)

    def set_accounts(self, platform: str, side: Union[AccountSide, str], entries: Iterable[AccountEntry]) -> None:
        self._inventories[(platform, AccountSide(side))] = list(entries)

    async def fetch_accounts(self, platform: str, side: AccountSide) -> AccountSet:
        side = AccountSide(side)
        if (platform, side) not in self._inventories:
            raise FetchError(
                f"No {side.value} inventory registered for platform {platform}",
                platform=platform,
                side=side.value
            )

        try:
            records = []
            for entry in self._inventories[(platform, side)]:
                if isinstance(entry, AccountRecord):
                    records.append(entry)
                elif isinstance(entry, str):
                    records.append(AccountRecord(account_id=entry, account_name=entry, platform=platform))
                else:
                    records.append(AccountRecord.from_dict(entry, platform))
            return AccountSet(platform, records)
        except ValueError as e:
            raise FetchError(str(e), platform=platform, side=side.value) from e
