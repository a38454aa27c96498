"""
Solana RPC client service for interacting with the Solana blockchain.
Provides balance and account reads, and transaction preparation,
submission and confirmation for signed compound transactions.
"""

from typing import List, Optional
from dataclasses import dataclass, field

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
import structlog

from compounder.core.config import Settings, SolanaConfig
from compounder.services.signer import SigningCapability


logger = structlog.get_logger(__name__)


@dataclass
class AccountInfo:
    """Account information from Solana blockchain."""
    pubkey: str
    lamports: int
    owner: str
    executable: bool
    rent_epoch: int
    data: bytes


@dataclass
class PreparedTransaction:
    """A signed transaction whose reference is known before it is sent."""
    transaction: VersionedTransaction
    reference: str
    last_valid_block_height: int


@dataclass
class TransactionReceipt:
    """Execution outcome of a submitted transaction."""
    reference: str
    success: bool
    slot: Optional[int] = None
    error: Optional[str] = None
    events: List[str] = field(default_factory=list)


@dataclass
class SignatureStatus:
    """Status of a previously sent signature."""
    reference: str
    slot: int
    error: Optional[str]
    confirmation_status: Optional[str]


class SolanaClient:
    """
    Async Solana RPC client for vault compounding.

    Provides high-level methods for:
    - Reading balances and vault accounts
    - Building and signing versioned transactions
    - Sending and confirming transactions
    - Looking up signature status for ambiguous submissions
    """

    def __init__(self, config: Settings, client: Optional[AsyncClient] = None):
        """Initialize Solana client with configuration."""
        self.rpc_config = SolanaConfig.get_rpc_config(config)
        self.commitment = Commitment(self.rpc_config["commitment"])
        self.client = client or AsyncClient(
            endpoint=self.rpc_config["endpoint"],
            commitment=self.commitment,
            timeout=self.rpc_config["timeout"]
        )
        self.logger = logger.bind(service="solana_client")

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        """Close the RPC client connection."""
        await self.client.close()

    async def get_health(self) -> bool:
        """Check if the RPC endpoint is healthy."""
        try:
            return await self.client.is_connected()
        except Exception as e:
            self.logger.error("Health check failed", error=str(e))
            return False

    async def get_balance(self, address: str) -> int:
        """Get the lamport balance of an address."""
        response = await self.client.get_balance(Pubkey.from_string(address), commitment=self.commitment)
        return response.value

    async def get_block_height(self) -> int:
        """Current block height, compared against a transaction's last valid height."""
        response = await self.client.get_block_height(commitment=self.commitment)
        return response.value

    async def get_object(self, address: str) -> Optional[AccountInfo]:
        """Read an account; None if it does not exist."""
        response = await self.client.get_account_info(Pubkey.from_string(address), commitment=self.commitment)
        account = response.value
        if account is None:
            return None

        return AccountInfo(
            pubkey=address,
            lamports=account.lamports,
            owner=str(account.owner),
            executable=account.executable,
            rent_epoch=account.rent_epoch,
            data=bytes(account.data)
        )

    async def prepare_transaction(
        self,
        signer: SigningCapability,
        instructions: List[Instruction]
    ) -> PreparedTransaction:
        """
        Compile and sign a transaction against the latest blockhash.

        The signer pays fees. SigningError from the capability propagates.
        """
        blockhash_resp = await self.client.get_latest_blockhash(commitment=self.commitment)
        blockhash = blockhash_resp.value.blockhash

        message = MessageV0.try_compile(
            payer=signer.public_key,
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash,
        )
        signature = signer.sign(to_bytes_versioned(message))
        transaction = VersionedTransaction.populate(message, [signature])

        return PreparedTransaction(
            transaction=transaction,
            reference=str(signature),
            last_valid_block_height=blockhash_resp.value.last_valid_block_height
        )

    async def send_prepared(self, prepared: PreparedTransaction) -> str:
        """Send a prepared transaction with preflight simulation."""
        opts = TxOpts(
            skip_preflight=False,
            preflight_commitment=self.commitment,
            skip_confirmation=True
        )
        response = await self.client.send_raw_transaction(bytes(prepared.transaction), opts=opts)
        return str(response.value)

    async def confirm(self, prepared: PreparedTransaction) -> TransactionReceipt:
        """Wait for confirmation of a sent transaction."""
        response = await self.client.confirm_transaction(
            Signature.from_string(prepared.reference),
            commitment=self.commitment,
            last_valid_block_height=prepared.last_valid_block_height
        )
        status = response.value[0]
        error = str(status.err) if status and status.err is not None else None

        receipt = TransactionReceipt(
            reference=prepared.reference,
            success=status is not None and status.err is None,
            slot=status.slot if status else None,
            error=error
        )
        if receipt.success:
            receipt.events = await self.get_transaction_logs(prepared.reference)
        return receipt

    async def submit_transaction(
        self,
        signer: SigningCapability,
        instructions: List[Instruction]
    ) -> TransactionReceipt:
        """Prepare, send and confirm in one call."""
        prepared = await self.prepare_transaction(signer, instructions)
        await self.send_prepared(prepared)
        return await self.confirm(prepared)

    async def get_signature_status(self, reference: str) -> Optional[SignatureStatus]:
        """Look up a signature, including transaction history. None if unknown."""
        response = await self.client.get_signature_statuses(
            [Signature.from_string(reference)],
            search_transaction_history=True
        )
        status = response.value[0]
        if status is None:
            return None

        return SignatureStatus(
            reference=reference,
            slot=status.slot,
            error=str(status.err) if status.err is not None else None,
            confirmation_status=str(status.confirmation_status) if status.confirmation_status else None
        )

    async def get_transaction_logs(self, reference: str) -> List[str]:
        """Program logs of a confirmed transaction; empty when unavailable."""
        try:
            response = await self.client.get_transaction(
                Signature.from_string(reference),
                encoding="json",
                commitment=self.commitment,
                max_supported_transaction_version=0
            )
            if not response.value or not response.value.transaction.meta:
                return []
            return list(response.value.transaction.meta.log_messages or [])
        except Exception as e:
            self.logger.warning("Failed to fetch transaction logs", reference=reference, error=str(e))
            return []
