"""
Signing capability used to authorise compound transactions.

The rest of the application only sees `SigningCapability`: something with a
public key that can sign a message. Key material is decoded once at startup.
"""

import json
from abc import ABC, abstractmethod
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
import structlog

from compounder.core.exceptions import ConfigurationError, SigningError


logger = structlog.get_logger(__name__)


class SigningCapability(ABC):
    """Narrow signing interface: a public key and a sign operation."""

    @property
    @abstractmethod
    def public_key(self) -> Pubkey:
        ...

    @abstractmethod
    def sign(self, message: bytes) -> Signature:
        ...


class Ed25519Signer(SigningCapability):
    """Ed25519 signer backed by a solders Keypair."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    def sign(self, message: bytes) -> Signature:
        try:
            return self._keypair.sign_message(message)
        except Exception as e:
            raise SigningError(f"Failed to sign message: {e}") from e

    def __repr__(self):
        return f"<Ed25519Signer(public_key={self.public_key})>"


def _decode_key_material(key_material: str) -> bytes:
    """Accept a JSON byte array, a hex string, or a base58 string."""
    raw = key_material.strip()

    if raw.startswith("["):
        values = json.loads(raw)
        return bytes(values)

    hex_candidate = raw[2:] if raw.startswith("0x") else raw
    if len(hex_candidate) in (64, 128):
        try:
            return bytes.fromhex(hex_candidate)
        except ValueError:
            pass

    return base58.b58decode(raw)


def load_signer(key_material: Optional[str]) -> Optional[SigningCapability]:
    """
    Build the signing capability from configured key material.

    Returns None when no key is configured, which disables compounding
    but leaves read-only operations available.

    Raises:
        ConfigurationError: key material present but not decodable
    """
    if key_material is None:
        logger.warning("No wallet private key configured - compounding disabled")
        return None

    try:
        secret = _decode_key_material(key_material)
        if len(secret) == 32:
            keypair = Keypair.from_seed(secret)
        elif len(secret) == 64:
            keypair = Keypair.from_bytes(secret)
        else:
            raise ValueError(f"expected 32 or 64 bytes, got {len(secret)}")
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            "Wallet private key could not be decoded",
            {"reason": str(e)}
        ) from e

    signer = Ed25519Signer(keypair)
    logger.info("Signing capability loaded", public_key=str(signer.public_key))
    return signer
