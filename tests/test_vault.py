"""
Tests for envelope encryption of listing credentials.
"""
import uuid

import pytest
from sqlalchemy import select

from conftest import add_listing, fetch
from escrow_market.core.errors import Forbidden, InvalidState, NotFound
from escrow_market.core.vault import SecurePayloadVault, VaultError
from escrow_market.database.models import Listing, ListingStatus, SecurePayload


@pytest.fixture
def vault(test_settings) -> SecurePayloadVault:
    return SecurePayloadVault(test_settings.master_key_bytes)


async def _stored_row(session_factory, listing_id: uuid.UUID) -> SecurePayload:
    async with session_factory() as db:
        result = await db.execute(
            select(SecurePayload).where(SecurePayload.listing_id == listing_id)
        )
        return result.scalar_one()


class TestVault:
    @pytest.mark.unit
    def test_master_key_length_enforced(self) -> None:
        with pytest.raises(ValueError):
            SecurePayloadVault(b"short")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_store_and_reveal(self, vault, session_factory, market) -> None:
        async with session_factory() as db:
            await vault.store(db, market.listing_id, "user: alice / pass: hunter2", market.seller)

        async with session_factory() as db:
            assert await vault.reveal(db, market.listing_id) == "user: alice / pass: hunter2"
        assert (await fetch(session_factory, Listing, market.listing_id)).has_secure_payload

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ciphertext_does_not_contain_plaintext(
        self, vault, session_factory, market
    ) -> None:
        async with session_factory() as db:
            await vault.store(db, market.listing_id, "hunter2hunter2", market.seller)

        row = await _stored_row(session_factory, market.listing_id)
        assert "hunter2" not in row.cipher_text
        assert row.wrapped_key != row.cipher_text

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rewrite_uses_fresh_key_and_nonce(self, vault, session_factory, market) -> None:
        async with session_factory() as db:
            await vault.store(db, market.listing_id, "same secret", market.seller)
        first = await _stored_row(session_factory, market.listing_id)

        async with session_factory() as db:
            await vault.store(db, market.listing_id, "same secret", market.seller)
        second = await _stored_row(session_factory, market.listing_id)

        assert first.nonce != second.nonce
        assert first.wrapped_key != second.wrapped_key
        assert first.cipher_text != second.cipher_text

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reveal_without_payload(self, vault, test_db, market) -> None:
        assert await vault.reveal(test_db, market.listing_id) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_master_key_fails_authentication(
        self, vault, session_factory, market
    ) -> None:
        async with session_factory() as db:
            await vault.store(db, market.listing_id, "secret", market.seller)

        other = SecurePayloadVault(b"z" * 32)
        async with session_factory() as db:
            with pytest.raises(VaultError):
                await other.reveal(db, market.listing_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payload_bound_to_listing(self, vault, session_factory, market) -> None:
        async with session_factory() as db:
            await vault.store(db, market.listing_id, "secret", market.seller)
        row = await _stored_row(session_factory, market.listing_id)

        moved_to = await add_listing(session_factory, market.seller)
        async with session_factory() as db:
            db.add(
                SecurePayload(
                    listing_id=moved_to,
                    cipher_text=row.cipher_text,
                    nonce=row.nonce,
                    wrapped_key=row.wrapped_key,
                    key_nonce=row.key_nonce,
                )
            )
            await db.commit()

        async with session_factory() as db:
            with pytest.raises(VaultError):
                await vault.reveal(db, moved_to)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_owner_may_store(self, vault, test_db, market) -> None:
        with pytest.raises(Forbidden):
            await vault.store(test_db, market.listing_id, "mine now", market.stranger)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sold_listing_frozen(self, vault, session_factory, market) -> None:
        listing_id = await add_listing(session_factory, market.seller, status=ListingStatus.SOLD)
        async with session_factory() as db:
            with pytest.raises(InvalidState):
                await vault.store(db, listing_id, "late edit", market.seller)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_listing(self, vault, test_db, market) -> None:
        with pytest.raises(NotFound):
            await vault.store(test_db, uuid.uuid4(), "secret", market.seller)
