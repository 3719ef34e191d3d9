"""
Secure payload vault for seller-supplied credentials.

Envelope encryption with AES-256-GCM:
1. A fresh random data key and nonce are generated for every write
2. The credential text is encrypted with the data key
3. The data key is wrapped with the configured master key
4. Ciphertext, nonce and wrapped key are stored base64 encoded

The listing id is bound as associated data so a payload row copied to
another listing does not decrypt.
"""
import base64
import os
import uuid
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_market.config import get_settings
from escrow_market.core.authorization import Action, Principal, Resource, authorize
from escrow_market.core.errors import InvalidState, MarketError, NotFound
from escrow_market.database.models import Listing, ListingStatus, SecurePayload

logger = structlog.get_logger(__name__)

NONCE_BYTES = 12


class VaultError(MarketError):
    """Raised when a stored payload cannot be decrypted."""

    kind = "vault_error"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


class SecurePayloadVault:
    """Encrypts, stores and reveals listing credential payloads."""

    def __init__(self, master_key: Optional[bytes] = None):
        """
        Initialize the vault.

        Args:
            master_key: 32-byte key wrapping data keys (defaults to settings)
        """
        key = master_key or get_settings().master_key_bytes
        if len(key) != 32:
            raise ValueError("Vault master key must be 32 bytes")
        self._master = AESGCM(key)

    def _seal(self, listing_id: uuid.UUID, plaintext: str) -> SecurePayload:
        data_key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_BYTES)
        key_nonce = os.urandom(NONCE_BYTES)
        aad = listing_id.bytes

        cipher_text = AESGCM(data_key).encrypt(nonce, plaintext.encode("utf-8"), aad)
        wrapped_key = self._master.encrypt(key_nonce, data_key, aad)

        return SecurePayload(
            listing_id=listing_id,
            cipher_text=_b64(cipher_text),
            nonce=_b64(nonce),
            wrapped_key=_b64(wrapped_key),
            key_nonce=_b64(key_nonce),
        )

    def _open(self, payload: SecurePayload) -> str:
        aad = payload.listing_id.bytes
        try:
            data_key = self._master.decrypt(
                _unb64(payload.key_nonce), _unb64(payload.wrapped_key), aad
            )
            plaintext = AESGCM(data_key).decrypt(
                _unb64(payload.nonce), _unb64(payload.cipher_text), aad
            )
        except InvalidTag:
            logger.error("secure_payload_decrypt_failed", listing_id=str(payload.listing_id))
            raise VaultError("Stored payload failed authentication")
        return plaintext.decode("utf-8")

    async def store(
        self,
        db: AsyncSession,
        listing_id: uuid.UUID,
        plaintext: str,
        principal: Principal,
    ) -> None:
        """
        Encrypt and store credentials for a listing, replacing any prior payload.

        Args:
            db: Database session
            listing_id: Target listing
            plaintext: Credential text supplied by the seller
            principal: Caller (must own the listing)

        Raises:
            NotFound: If the listing does not exist
            Forbidden: If the caller is not the listing's seller
            InvalidState: If the listing has already been sold
        """
        result = await db.execute(
            select(Listing).where(Listing.id == listing_id).with_for_update()
        )
        listing = result.scalar_one_or_none()
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")

        authorize(
            principal,
            Action.MANAGE_LISTING,
            Resource(seller_id=listing.seller_id),
            listing_id=str(listing_id),
        )

        if listing.status == ListingStatus.SOLD:
            raise InvalidState("Cannot replace credentials of a sold listing")

        await db.execute(delete(SecurePayload).where(SecurePayload.listing_id == listing_id))
        db.add(self._seal(listing_id, plaintext))
        listing.has_secure_payload = True
        await db.commit()

        logger.info("secure_payload_stored", listing_id=str(listing_id))

    async def reveal(self, db: AsyncSession, listing_id: uuid.UUID) -> Optional[str]:
        """
        Decrypt the payload for a listing.

        Only the lifecycle engine calls this, after its disclosure checks.

        Returns:
            Optional[str]: Plaintext, or None if the listing has no payload
        """
        result = await db.execute(
            select(SecurePayload).where(SecurePayload.listing_id == listing_id)
        )
        payload = result.scalar_one_or_none()
        if payload is None:
            return None
        return self._open(payload)
