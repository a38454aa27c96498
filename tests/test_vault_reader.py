"""
Test vault account decoding.
"""

import struct

import pytest

from compounder.services.compounding.vault_reader import VaultAccountParser, VaultStateReader
from compounder.services.solana_client import AccountInfo


def vault_account_bytes(total_assets, total_shares, last_compound_ts, decimals):
    return bytes(8) + bytes(32) + struct.pack("<QQqB", total_assets, total_shares, last_compound_ts, decimals)


def test_parse_vault_account():
    data = vault_account_bytes(5_000_000, 4_900_000, 1709280000, 6) + bytes(16)
    state = VaultAccountParser().parse("vault", data)

    assert state.total_assets == 5_000_000
    assert state.total_shares == 4_900_000
    assert state.last_compound_ts == 1709280000
    assert state.total_assets_ui == 5.0


def test_parse_short_account_raises():
    with pytest.raises(ValueError):
        VaultAccountParser().parse("vault", bytes(40))


class FakeChain:
    def __init__(self, account=None, error=None):
        self.account = account
        self.error = error

    async def get_object(self, address):
        if self.error:
            raise self.error
        return self.account


@pytest.mark.asyncio
async def test_reader_returns_none_on_failure():
    assert await VaultStateReader(FakeChain()).read("vault") is None
    assert await VaultStateReader(FakeChain(error=ConnectionError("down"))).read("vault") is None

    short = AccountInfo("vault", 0, "owner", False, 0, bytes(10))
    assert await VaultStateReader(FakeChain(account=short)).read("vault") is None


@pytest.mark.asyncio
async def test_reader_decodes_account():
    info = AccountInfo("vault", 0, "owner", False, 0, vault_account_bytes(10, 10, 0, 9))
    state = await VaultStateReader(FakeChain(account=info)).read("vault")
    assert state.total_assets == 10
    assert state.decimals == 9
