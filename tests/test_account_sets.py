"""
Unit Tests for AccountSet and StaticAccountSource

Run with: pytest tests/test_account_sets.py -v
"""

import pytest

from vaultaudit.reconciliation import (
    AccountRecord,
    AccountSet,
    AccountSide,
    AccountSource,
    FetchError,
    StaticAccountSource,
)


class TestAccountSet:

    def test_keyed_by_account_id(self):
        account_set = AccountSet("ad", [
            AccountRecord("S-1-5-21-100", "svc_backup", "ad"),
            AccountRecord("S-1-5-21-200", "svc_sql", "ad"),
        ])

        assert len(account_set) == 2
        assert set(account_set.keys()) == {"S-1-5-21-100", "S-1-5-21-200"}
        assert account_set["S-1-5-21-200"].account_name == "svc_sql"
        assert account_set.name_of("S-1-5-21-100") == "svc_backup"
        assert account_set.name_of("missing") == ""

    def test_duplicate_account_id_rejected(self):
        with pytest.raises(ValueError) as exc_info:
            AccountSet("ad", [
                AccountRecord("dup", "first", "ad"),
                AccountRecord("dup", "second", "ad"),
            ])

        assert "Duplicate account_id" in str(exc_info.value)

    def test_is_immutable(self):
        account_set = AccountSet("ad", [AccountRecord("a", "a", "ad")])

        with pytest.raises(TypeError):
            account_set["b"] = AccountRecord("b", "b", "ad")

    def test_from_dicts(self):
        account_set = AccountSet.from_dicts("linux", [
            {"account_id": "root", "account_name": "root"},
            {"account_id": "oracle"},
        ])

        assert account_set.platform == "linux"
        assert account_set["oracle"].account_name == ""
        assert account_set["root"].platform == "linux"

    def test_from_dicts_requires_account_id(self):
        with pytest.raises(ValueError):
            AccountSet.from_dicts("linux", [{"account_name": "nobody"}])


class TestStaticAccountSource:

    def test_satisfies_protocol(self):
        assert isinstance(StaticAccountSource(), AccountSource)

    @pytest.mark.asyncio
    async def test_fetch_mixed_entries(self):
        source = StaticAccountSource({
            ("ad", AccountSide.VAULT): [
                "svc_a",
                {"account_id": "svc_b", "account_name": "Service B"},
                AccountRecord("svc_c", "Service C", "ad"),
            ],
        })

        account_set = await source.fetch_accounts("ad", AccountSide.VAULT)

        assert set(account_set) == {"svc_a", "svc_b", "svc_c"}
        assert account_set.name_of("svc_b") == "Service B"

    @pytest.mark.asyncio
    async def test_unknown_platform_raises_fetch_error(self):
        source = StaticAccountSource()

        with pytest.raises(FetchError) as exc_info:
            await source.fetch_accounts("nowhere", AccountSide.PLATFORM)

        assert exc_info.value.platform == "nowhere"
        assert exc_info.value.side == "platform"

    @pytest.mark.asyncio
    async def test_duplicate_entries_raise_fetch_error(self):
        source = StaticAccountSource()
        source.set_accounts("ad", "vault", ["svc_a", "svc_a"])

        with pytest.raises(FetchError):
            await source.fetch_accounts("ad", AccountSide.VAULT)

    @pytest.mark.asyncio
    async def test_returns_fresh_set_each_call(self):
        source = StaticAccountSource()
        source.set_accounts("ad", AccountSide.VAULT, ["svc_a"])
        first = await source.fetch_accounts("ad", AccountSide.VAULT)

        source.set_accounts("ad", AccountSide.VAULT, ["svc_a", "svc_b"])
        second = await source.fetch_accounts("ad", AccountSide.VAULT)

        assert set(first) == {"svc_a"}
        assert set(second) == {"svc_a", "svc_b"}
