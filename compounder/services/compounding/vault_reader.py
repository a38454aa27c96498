"""
Reader for on-chain vault account state.
"""

import struct
from typing import Optional

import structlog

from compounder.services.compounding.types import VaultAccountData


logger = structlog.get_logger(__name__)


class VaultAccountParser:
    """
    Parses raw vault account data.

    Vault account layout (Anchor, little-endian):
    - discriminator: [u8; 8]
    - authority: Pubkey (32 bytes)
    - total_assets: u64
    - total_shares: u64
    - last_compound_ts: i64
    - decimals: u8
    """

    AUTHORITY_OFFSET = 8
    TOTAL_ASSETS_OFFSET = AUTHORITY_OFFSET + 32
    LAYOUT = struct.Struct("<QQqB")
    MIN_SIZE = TOTAL_ASSETS_OFFSET + LAYOUT.size

    def parse(self, address: str, data: bytes) -> VaultAccountData:
        if len(data) < self.MIN_SIZE:
            raise ValueError(f"Vault account data too small: {len(data)} bytes")

        total_assets, total_shares, last_compound_ts, decimals = self.LAYOUT.unpack_from(
            data, self.TOTAL_ASSETS_OFFSET
        )
        return VaultAccountData(
            address=address,
            total_assets=total_assets,
            total_shares=total_shares,
            last_compound_ts=last_compound_ts,
            decimals=decimals
        )


class VaultStateReader:
    """Reads vault accounts through the chain client; failures yield None."""

    def __init__(self, chain, parser: Optional[VaultAccountParser] = None):
        self.chain = chain
        self.parser = parser or VaultAccountParser()
        self.logger = logger.bind(service="vault_state_reader")

    async def read(self, address: str) -> Optional[VaultAccountData]:
        try:
            account = await self.chain.get_object(address)
            if account is None:
                self.logger.warning("Vault account not found", vault=address)
                return None
            return self.parser.parse(address, account.data)
        except Exception as e:
            self.logger.warning("Failed to read vault state", vault=address, error=str(e))
            return None
