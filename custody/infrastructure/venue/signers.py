"""
Signers

Two ExternalSigner implementations:

- DeferredUserSigner: the external wallet owner signs at their own pace. It
  never blocks; the saga persists the unsigned transaction and resumes when
  the signed transaction (or a rejection) arrives through the API.
- AgentKeySigner: signs with the custodial agent key (Ed25519, stored
  Fernet-encrypted).

Author: Custody Team
Last Updated: 2026-10-18
"""

import base64
from typing import Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from custody.infrastructure.venue.base import ExternalSigner, SignatureRequest, SignatureResult
from custody.utils.encryption import DecryptionError, KeyMaterialEncryption
from custody.utils.logger import get_logger

logger = get_logger(__name__)


def generate_agent_keypair() -> Tuple[str, str]:
    """
    Generate a new Ed25519 agent identity.

    Returns:
        (public_address, private_key_hex); the address is the base64url raw public key
    """
    private_key = Ed25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    address = base64.urlsafe_b64encode(public_bytes).decode().rstrip("=")
    return address, private_bytes.hex()


def attach_signature(unsigned_tx: str, signature: bytes) -> str:
    """Signed wire form: <unsigned_tx>.<base64url signature>"""
    return f"{unsigned_tx}.{base64.urlsafe_b64encode(signature).decode()}"


class DeferredUserSigner(ExternalSigner):
    """User-paced signer: always defers to the persisted signing flow."""

    async def sign(self, request: SignatureRequest) -> SignatureResult:
        logger.info(
            f"Signature requested from {request.signer_address} "
            f"for {request.kind.value} (operation {request.operation_id})"
        )
        return SignatureResult.deferred()


class AgentKeySigner(ExternalSigner):
    """
    Signs with the agent wallet's custodial key.

    Args:
        private_key_encrypted: Fernet token holding the hex Ed25519 private key
        encryption: Encryption service (defaults to one built from settings)
    """

    def __init__(self, private_key_encrypted: str, encryption: KeyMaterialEncryption = None):
        self._private_key_encrypted = private_key_encrypted
        self._encryption = encryption or KeyMaterialEncryption()

    def _load_key(self) -> Ed25519PrivateKey:
        private_hex = self._encryption.decrypt_string(self._private_key_encrypted)
        return Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_hex))

    async def sign(self, request: SignatureRequest) -> SignatureResult:
        try:
            key = self._load_key()
        except (DecryptionError, ValueError) as e:
            logger.error(f"Agent key unavailable for operation {request.operation_id}: {str(e)}")
            return SignatureResult.rejected(reason=f"Agent key unavailable: {str(e)}")

        signature = key.sign(request.unsigned_tx.encode())
        logger.debug(f"Agent signed {request.kind.value} for operation {request.operation_id}")
        return SignatureResult.signed(attach_signature(request.unsigned_tx, signature))
