"""
Compound transaction submitter.

Builds the `compound` instruction for one vault, signs it with the
configured capability, sends it and waits for confirmation. Every
failure is mapped onto a CompoundErrorKind here, so nothing downstream
has to look at RPC error text.
"""

import asyncio
import hashlib
from typing import Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException, UnconfirmedTxError, TransactionExpiredBlockheightExceededError
from solders.instruction import Instruction, AccountMeta
from solders.pubkey import Pubkey
import structlog

from compounder.core.config import SolanaConfig
from compounder.core.exceptions import CompoundError, CompoundErrorKind
from compounder.services.compounding.types import SubmitResult, ConfirmationStatus
from compounder.services.signer import SigningCapability
from compounder.services.solana_client import PreparedTransaction


logger = structlog.get_logger(__name__)


_INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficientfunds",
    "insufficient lamports",
    "attempt to debit an account but found no record of a prior credit",
)

_TRANSIENT_RPC_MARKERS = (
    "blockhash not found",
    "node is behind",
    "too many requests",
    "429",
    "service unavailable",
    # resent transaction already landed; the confirmation check picks it up
    "already been processed",
)


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, UnconfirmedTxError)):
        return True
    cause = error.__cause__
    return cause is not None and isinstance(cause, (asyncio.TimeoutError, httpx.TimeoutException))


def classify_rpc_error(error: BaseException) -> CompoundErrorKind:
    """Map an exception raised while submitting onto an error kind."""
    if isinstance(error, CompoundError):
        return error.kind
    if _is_timeout(error):
        return CompoundErrorKind.TIMEOUT
    if isinstance(error, TransactionExpiredBlockheightExceededError):
        return CompoundErrorKind.NETWORK_ERROR

    message = str(error).lower()
    if isinstance(error, RPCException):
        if any(marker in message for marker in _INSUFFICIENT_FUNDS_MARKERS):
            return CompoundErrorKind.INSUFFICIENT_FUNDS
        if any(marker in message for marker in _TRANSIENT_RPC_MARKERS):
            return CompoundErrorKind.NETWORK_ERROR
        return CompoundErrorKind.CONTRACT_REJECTED

    if isinstance(error, (SolanaRpcException, httpx.HTTPError, ConnectionError, OSError)):
        return CompoundErrorKind.NETWORK_ERROR
    if isinstance(error, (ValueError, TypeError)):
        return CompoundErrorKind.CONTRACT_REJECTED
    return CompoundErrorKind.NETWORK_ERROR


def classify_transaction_error(error: str) -> CompoundErrorKind:
    """Map the error of a transaction that executed and failed."""
    message = error.lower()
    if any(marker in message for marker in _INSUFFICIENT_FUNDS_MARKERS):
        return CompoundErrorKind.INSUFFICIENT_FUNDS
    return CompoundErrorKind.CONTRACT_REJECTED


def get_instruction_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator: first 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


class CompoundSubmitter:
    """
    Submits the compound instruction for one vault per call.
    """

    def __init__(
        self,
        chain,
        signer: Optional[SigningCapability],
        program_id: str,
        attempt_timeout_seconds: float = 30.0,
        min_balance_lamports: int = 0
    ):
        self.chain = chain
        self.signer = signer
        self.program_id = Pubkey.from_string(program_id)
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self.min_balance_lamports = min_balance_lamports
        self.logger = logger.bind(service="compound_submitter")

    @property
    def enabled(self) -> bool:
        return self.signer is not None

    def build_instruction(self, vault_address: str) -> Instruction:
        vault = Pubkey.from_string(vault_address)
        accounts = [
            AccountMeta(pubkey=vault, is_signer=False, is_writable=True),  # vault
            AccountMeta(pubkey=self.signer.public_key, is_signer=True, is_writable=True),  # cranker
        ]
        return Instruction(
            program_id=self.program_id,
            accounts=accounts,
            data=get_instruction_discriminator(SolanaConfig.COMPOUND_INSTRUCTION)
        )

    async def _check_fee_balance(self) -> None:
        if self.min_balance_lamports <= 0:
            return
        balance = await self.chain.get_balance(str(self.signer.public_key))
        if balance < self.min_balance_lamports:
            raise CompoundError(
                CompoundErrorKind.INSUFFICIENT_FUNDS,
                f"Fee payer balance {balance} below minimum {self.min_balance_lamports}",
                details={"balance": balance, "required": self.min_balance_lamports}
            )

    async def compound(self, vault_address: str, pending: Optional[PreparedTransaction] = None) -> SubmitResult:
        """
        Build, sign, send and confirm one compound transaction.

        `pending` is a transaction from an earlier attempt whose outcome is
        unknown. While its blockhash can still land it is resent as is, so
        the signature stays the same and the vault cannot compound twice.
        A new transaction is only built once it has expired without landing.

        The whole attempt is bounded by the attempt timeout; on timeout the
        in-flight call is cancelled and the result still carries the signed
        transaction.
        """
        if self.signer is None:
            return SubmitResult.failed(CompoundErrorKind.SIGNING_ERROR, "No signing capability configured")

        log = self.logger.bind(vault=vault_address)

        if pending is not None:
            if not await self._has_expired(pending):
                log.info("Resending pending compound transaction", reference=pending.reference)
                return await self._send(vault_address, pending)

            confirmation = await self.check_confirmation(pending.reference)
            if confirmation == ConfirmationStatus.LANDED:
                log.info("Expired pending transaction had landed", reference=pending.reference)
                return SubmitResult.ok(pending.reference)
            if confirmation == ConfirmationStatus.LANDED_WITH_ERROR:
                return SubmitResult.failed(
                    CompoundErrorKind.CONTRACT_REJECTED,
                    "Pending transaction landed with an error",
                    reference=pending.reference
                )
            if confirmation == ConfirmationStatus.UNKNOWN:
                return SubmitResult.failed(
                    CompoundErrorKind.NETWORK_ERROR,
                    "Could not confirm whether the pending transaction landed",
                    reference=pending.reference,
                    prepared=pending
                )
            log.info("Pending transaction expired without landing", reference=pending.reference)

        return await self._send(vault_address)

    async def _has_expired(self, prepared: PreparedTransaction) -> bool:
        try:
            height = await self.chain.get_block_height()
        except Exception as e:
            self.logger.warning("Block height lookup failed", reference=prepared.reference, error=str(e))
            return False
        return height > prepared.last_valid_block_height

    async def _send(self, vault_address: str, pending: Optional[PreparedTransaction] = None) -> SubmitResult:
        log = self.logger.bind(vault=vault_address)
        signed = {"prepared": pending}

        async def _attempt():
            prepared = signed["prepared"]
            if prepared is None:
                await self._check_fee_balance()
                instruction = self.build_instruction(vault_address)
                prepared = await self.chain.prepare_transaction(self.signer, [instruction])
                signed["prepared"] = prepared
            await self.chain.send_prepared(prepared)
            return await self.chain.confirm(prepared)

        def _reference():
            return signed["prepared"].reference if signed["prepared"] else None

        try:
            receipt = await asyncio.wait_for(_attempt(), timeout=self.attempt_timeout_seconds)
        except asyncio.TimeoutError:
            log.warning(
                "Compound attempt timed out",
                timeout=self.attempt_timeout_seconds,
                reference=_reference()
            )
            return SubmitResult.failed(
                CompoundErrorKind.TIMEOUT,
                f"No confirmation within {self.attempt_timeout_seconds}s",
                reference=_reference(),
                prepared=signed["prepared"]
            )
        except Exception as e:
            kind = classify_rpc_error(e)
            log.warning(
                "Compound submission failed",
                error_kind=kind.value,
                error=str(e),
                reference=_reference()
            )
            return SubmitResult.failed(kind, str(e), reference=_reference(), prepared=signed["prepared"])

        if not receipt.success:
            kind = classify_transaction_error(receipt.error or "")
            log.warning("Compound transaction failed on chain", error_kind=kind.value, error=receipt.error)
            return SubmitResult.failed(kind, receipt.error or "Transaction failed", reference=receipt.reference)

        log.info("Compound transaction confirmed", reference=receipt.reference, slot=receipt.slot)
        return SubmitResult.ok(receipt.reference, slot=receipt.slot, events=receipt.events)

    async def check_confirmation(self, reference: str) -> ConfirmationStatus:
        """Check whether an earlier attempt's transaction landed."""
        try:
            status = await self.chain.get_signature_status(reference)
        except Exception as e:
            self.logger.warning("Confirmation check failed", reference=reference, error=str(e))
            return ConfirmationStatus.UNKNOWN

        if status is None:
            return ConfirmationStatus.NOT_FOUND
        if status.error is not None:
            return ConfirmationStatus.LANDED_WITH_ERROR
        return ConfirmationStatus.LANDED
