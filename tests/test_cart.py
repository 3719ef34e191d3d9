"""
Tests for the single-item cart and checkout.
"""
import uuid

import pytest

from conftest import FakeProvider, add_listing, fetch
from escrow_market.core.cart import CartStore
from escrow_market.core.catalog import CatalogService
from escrow_market.core.errors import Forbidden, InvalidState, NotFound, SelfTrade, Unavailable
from escrow_market.database.models import CartItem, Listing, ListingStatus, Order, OrderStatus


@pytest.fixture
def cart(lifecycle) -> CartStore:
    return CartStore(lifecycle)


@pytest.fixture
def catalog() -> CatalogService:
    return CatalogService()


class TestCart:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_and_get(self, cart, session_factory, market) -> None:
        async with session_factory() as db:
            await cart.add(db, market.buyer, market.listing_id)
        async with session_factory() as db:
            listing = await cart.get(db, market.buyer)
        assert listing.id == market.listing_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_replaces_current_item(self, cart, session_factory, market) -> None:
        second = await add_listing(session_factory, market.seller)
        async with session_factory() as db:
            await cart.add(db, market.buyer, market.listing_id)
        async with session_factory() as db:
            await cart.add(db, market.buyer, second)
        async with session_factory() as db:
            assert (await cart.get(db, market.buyer)).id == second

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_add_rejections(self, cart, session_factory, market) -> None:
        delisted = await add_listing(
            session_factory, market.seller, status=ListingStatus.DELISTED
        )
        async with session_factory() as db:
            with pytest.raises(NotFound):
                await cart.add(db, market.buyer, uuid.uuid4())
            with pytest.raises(Unavailable):
                await cart.add(db, market.buyer, delisted)
            with pytest.raises(SelfTrade):
                await cart.add(db, market.seller, market.listing_id)
            with pytest.raises(Forbidden):
                await cart.add(db, market.admin, market.listing_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_remove_only_matching_item(self, cart, session_factory, market) -> None:
        async with session_factory() as db:
            await cart.add(db, market.buyer, market.listing_id)
        async with session_factory() as db:
            await cart.remove(db, market.buyer, uuid.uuid4())
        assert await fetch(session_factory, CartItem, market.buyer.user_id) is not None

        async with session_factory() as db:
            await cart.remove(db, market.buyer, market.listing_id)
        assert await fetch(session_factory, CartItem, market.buyer.user_id) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unavailable_listing_drops_out(
        self, cart, catalog, session_factory, market
    ) -> None:
        async with session_factory() as db:
            await cart.add(db, market.buyer, market.listing_id)
        async with session_factory() as db:
            await catalog.set_listing_status(
                db, market.listing_id, market.seller, ListingStatus.DELISTED
            )

        async with session_factory() as db:
            assert await cart.get(db, market.buyer) is None
        assert await fetch(session_factory, CartItem, market.buyer.user_id) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checkout_creates_order_and_empties_cart(
        self, cart, provider: FakeProvider, session_factory, market
    ) -> None:
        async with session_factory() as db:
            await cart.add(db, market.buyer, market.listing_id)
        async with session_factory() as db:
            created = await cart.checkout(db, market.buyer)

        assert created.client_secret.endswith("_secret_test")
        order = await fetch(session_factory, Order, created.order.id)
        assert order.status == OrderStatus.PENDING
        assert order.buyer_id == market.buyer.user_id
        assert await fetch(session_factory, CartItem, market.buyer.user_id) is None
        assert len(provider.intents) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checkout_empty_cart(self, cart, test_db, market) -> None:
        with pytest.raises(NotFound):
            await cart.checkout(test_db, market.buyer)


class TestCatalog:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_seller_delists_and_relists(self, catalog, session_factory, market) -> None:
        async with session_factory() as db:
            await catalog.set_listing_status(
                db, market.listing_id, market.seller, ListingStatus.DELISTED
            )
        async with session_factory() as db:
            listing = await catalog.set_listing_status(
                db, market.listing_id, market.seller, "available"
            )
        assert listing.status == ListingStatus.AVAILABLE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sold_cannot_be_set_or_left(self, catalog, session_factory, market) -> None:
        sold = await add_listing(session_factory, market.seller, status=ListingStatus.SOLD)
        async with session_factory() as db:
            with pytest.raises(InvalidState):
                await catalog.set_listing_status(
                    db, market.listing_id, market.seller, ListingStatus.SOLD
                )
        async with session_factory() as db:
            with pytest.raises(InvalidState):
                await catalog.set_listing_status(
                    db, sold, market.seller, ListingStatus.AVAILABLE
                )
        assert (await fetch(session_factory, Listing, sold)).status == ListingStatus.SOLD

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_owner_forbidden(self, catalog, test_db, market) -> None:
        with pytest.raises(Forbidden):
            await catalog.set_listing_status(
                test_db, market.listing_id, market.stranger, ListingStatus.DELISTED
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_listing(self, catalog, test_db, market) -> None:
        assert (await catalog.get_listing(test_db, market.listing_id)).id == market.listing_id
        assert await catalog.get_listing(test_db, uuid.uuid4()) is None
