"""
Vault vs platform set comparison.

Matching policy: exact equality on account_id. No case-folding, trimming or
name-based joining is applied; "svc_backup" and "SVC_BACKUP" are different
accounts. Matching by account_name would be a separate policy and has to be
chosen explicitly, never inferred.
"""

from dataclasses import dataclass
from typing import FrozenSet

from vaultaudit.reconciliation.account_sets import AccountSet


@dataclass(frozen=True)
class ComparisonResult:
    """Account ids on one side only."""
    not_vaulted: FrozenSet[str]
    orphaned: FrozenSet[str]

    @property
    def is_clean(self) -> bool:
        return not self.not_vaulted and not self.orphaned


def compare(vault: AccountSet, platform: AccountSet) -> ComparisonResult:
    """
    Compare a vault inventory with a platform inventory.

    Returns:
        not_vaulted: ids on the platform with no vault account
        orphaned: ids in the vault with no platform account
    """
    vault_ids = frozenset(vault.keys())
    platform_ids = frozenset(platform.keys())
    return ComparisonResult(
        not_vaulted=platform_ids - vault_ids,
        orphaned=vault_ids - platform_ids,
    )
