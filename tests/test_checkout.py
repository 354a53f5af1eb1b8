"""Tests for the checkout engine against a real (SQLite) database."""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from storefront import checkout, crud, models, schemas
from storefront.checkout import calculate_totals, check_stock, order_totals, process_checkout
from storefront.exceptions import (
    EmptyCartError,
    InsufficientStockError,
    StorageFault,
    ValidationError,
)

GUEST = crud.CartOwner(session_id="sess-guest")


def _order_count(session_factory):
    with session_factory() as session:
        return session.query(models.Order).count()


def _cart(session_factory, owner):
    with session_factory() as session:
        return [(item.product_id, item.quantity) for item in crud.get_cart_items(session, owner)]


class TestTotals:

    def test_flat_shipping_at_or_below_threshold(self):
        totals = calculate_totals(Decimal("100.00"))
        assert totals.shipping == Decimal("9.99")
        assert totals.tax == Decimal("8.0000")
        assert totals.total == Decimal("117.99")

    def test_free_shipping_above_threshold(self):
        totals = calculate_totals(Decimal("100.01"))
        assert totals.shipping == 0
        assert totals.total == Decimal("100.01") + Decimal("100.01") * Decimal("0.08")

    def test_tax_is_not_rounded(self):
        assert calculate_totals(Decimal("399.98")).tax == Decimal("31.9984")


class TestCheckoutHappyPath:

    def test_single_line_order(self, db, fill_cart, stock_of, session_factory, address):
        fill_cart(GUEST, (1, 2))

        order = process_checkout(db, GUEST, address, address)

        assert stock_of(1) == 48
        assert order.subtotal == Decimal("399.98")
        assert order.shipping_amount == 0
        assert order.tax_amount == Decimal("31.9984")
        assert order.total_amount == Decimal("431.9784")
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.payment_method == "demo"
        assert order.user_id is None
        assert order.order_number.startswith("ORDER-")
        assert _cart(session_factory, GUEST) == []

    def test_order_items_snapshot_the_cart(self, db, fill_cart, address):
        fill_cart(GUEST, (1, 2))

        order = process_checkout(db, GUEST, address, address)

        [item] = order.items
        assert item.product_id == 1
        assert item.product_name == "Wireless Headphones"
        assert item.quantity == 2
        assert item.unit_price == Decimal("199.99")
        assert item.total_price == Decimal("399.98")
        assert item.product_snapshot == {
            "name": "Wireless Headphones",
            "price": "199.99",
            "image_url": "/api/placeholder/300/200",
        }

    def test_addresses_are_stored(self, db, fill_cart, address):
        fill_cart(GUEST, (7, 1))
        billing = dict(address, city="Cambridge")

        order = process_checkout(db, GUEST, address, billing, payment_method="paypal", notes="Leave at door")

        assert order.shipping_address["city"] == "London"
        assert order.billing_address["city"] == "Cambridge"
        assert order.payment_method == "paypal"
        assert order.notes == "Leave at door"

    def test_multi_line_order_decrements_every_product(self, db, fill_cart, stock_of, address):
        fill_cart(GUEST, (3, 1), (7, 3))

        order = process_checkout(db, GUEST, address, address)

        assert stock_of(3) == 24
        assert stock_of(7) == 57
        assert [item.product_id for item in order.items] == [3, 7]
        # 89.99 + 3 * 39.99 = 209.96, free shipping
        assert order.subtotal == Decimal("209.96")
        assert order.shipping_amount == 0

    def test_uses_price_captured_at_add_time(self, db, fill_cart, session_factory, address):
        fill_cart(GUEST, (1, 1))
        with session_factory() as session:
            crud.get_product(session, 1).price = Decimal("999.99")
            session.commit()

        order = process_checkout(db, GUEST, address, address)

        assert order.subtotal == Decimal("199.99")
        assert order.items[0].unit_price == Decimal("199.99")

    def test_user_cart_is_separate_from_session_cart(self, db, fill_cart, session_factory, address):
        user = crud.CartOwner(user_id=42, session_id="sess-guest")
        fill_cart(GUEST, (2, 1))
        fill_cart(user, (4, 1))

        order = process_checkout(db, user, address, address)

        assert order.user_id == 42
        assert [item.product_id for item in order.items] == [4]
        assert _cart(session_factory, GUEST) == [(2, 1)]

    def test_stored_total_matches_item_snapshots(self, db, fill_cart, session_factory, address):
        fill_cart(GUEST, (1, 2), (6, 1))
        order_id = process_checkout(db, GUEST, address, address).id

        with session_factory() as session:
            stored = crud.get_order(session, order_id)
            totals = order_totals(stored.items)

        assert totals.subtotal == stored.subtotal
        assert totals.shipping == stored.shipping_amount
        assert totals.tax == stored.tax_amount
        assert totals.total == stored.total_amount
        assert stored.total_amount == stored.subtotal + stored.tax_amount + stored.shipping_amount

    def test_resubmission_creates_a_second_order(self, db, fill_cart, session_factory, address):
        fill_cart(GUEST, (1, 1))
        first = process_checkout(db, GUEST, address, address)
        fill_cart(GUEST, (1, 1))
        second = process_checkout(db, GUEST, address, address)

        assert first.order_number != second.order_number
        assert _order_count(session_factory) == 2


class TestCheckoutRejections:

    def test_insufficient_stock(self, db, fill_cart, stock_of, session_factory, address):
        fill_cart(GUEST, (5, 20))

        with pytest.raises(InsufficientStockError) as excinfo:
            process_checkout(db, GUEST, address, address)

        assert excinfo.value.product_id == 5
        assert excinfo.value.available == 15
        assert excinfo.value.requested == 20
        assert stock_of(5) == 15
        assert _cart(session_factory, GUEST) == [(5, 20)]
        assert _order_count(session_factory) == 0

    def test_empty_cart(self, db, session_factory, address):
        with pytest.raises(EmptyCartError):
            process_checkout(db, GUEST, address, address)
        assert _order_count(session_factory) == 0

    def test_one_short_line_rejects_the_whole_cart(self, db, fill_cart, stock_of, session_factory, address):
        fill_cart(GUEST, (1, 1), (5, 16))

        with pytest.raises(InsufficientStockError):
            process_checkout(db, GUEST, address, address)

        assert stock_of(1) == 50
        assert _cart(session_factory, GUEST) == [(1, 1), (5, 16)]

    def test_inactive_product_counts_as_out_of_stock(self, db, fill_cart, session_factory, address):
        fill_cart(GUEST, (2, 1))
        with session_factory() as session:
            crud.get_product(session, 2).status = "inactive"
            session.commit()

        with pytest.raises(InsufficientStockError) as excinfo:
            process_checkout(db, GUEST, address, address)
        assert excinfo.value.available == 0

    def test_bad_payment_method(self, db, fill_cart, session_factory, address):
        fill_cart(GUEST, (1, 1))

        with pytest.raises(ValidationError) as excinfo:
            process_checkout(db, GUEST, address, address, payment_method="bitcoin")

        assert any(detail.startswith("payment_method") for detail in excinfo.value.details)
        assert _cart(session_factory, GUEST) == [(1, 1)]

    def test_missing_address_field(self, db, fill_cart, stock_of, address):
        fill_cart(GUEST, (1, 1))
        del address["city"]

        with pytest.raises(ValidationError) as excinfo:
            process_checkout(db, GUEST, address, address)

        assert "shipping_address.city: Field required" in excinfo.value.details
        assert stock_of(1) == 50

    def test_owner_needs_an_identity(self):
        with pytest.raises(ValidationError):
            crud.CartOwner()


class TestAtomicity:

    @pytest.mark.parametrize("step", ["create_order", "decrement_stock", "clear_cart"])
    def test_storage_fault_rolls_everything_back(
        self, step, db, fill_cart, stock_of, session_factory, monkeypatch, address
    ):
        fill_cart(GUEST, (1, 2), (3, 1))

        def broken(*args, **kwargs):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(crud, step, broken)

        with pytest.raises(StorageFault):
            process_checkout(db, GUEST, address, address)

        assert _order_count(session_factory) == 0
        with session_factory() as session:
            assert session.query(models.OrderItem).count() == 0
        assert stock_of(1) == 50
        assert stock_of(3) == 25
        assert _cart(session_factory, GUEST) == [(1, 2), (3, 1)]

    def test_fault_after_partial_decrements_restores_stock(
        self, db, fill_cart, stock_of, session_factory, monkeypatch, address
    ):
        fill_cart(GUEST, (1, 1), (3, 1))
        real_decrement = crud.decrement_stock

        def fail_on_second(session, product_id, amount):
            if product_id == 3:
                raise SQLAlchemyError("connection reset")
            real_decrement(session, product_id, amount)

        monkeypatch.setattr(crud, "decrement_stock", fail_on_second)

        with pytest.raises(StorageFault):
            process_checkout(db, GUEST, address, address)

        assert stock_of(1) == 50
        assert _order_count(session_factory) == 0

    def test_lost_race_after_precheck(self, db, fill_cart, stock_of, session_factory, monkeypatch, address):
        """Another checkout drains stock between our pre-check and our decrement."""
        fill_cart(GUEST, (5, 10))
        real_check = checkout.check_stock

        def check_then_get_beaten(session, items):
            products = real_check(session, items)
            with session_factory() as rival:
                crud.decrement_stock(rival, 5, 12)
                rival.commit()
            return products

        monkeypatch.setattr(checkout, "check_stock", check_then_get_beaten)

        with pytest.raises(InsufficientStockError) as excinfo:
            process_checkout(db, GUEST, address, address)

        assert excinfo.value.product_id == 5
        assert excinfo.value.available == 3
        assert stock_of(5) == 3
        assert _order_count(session_factory) == 0
        assert _cart(session_factory, GUEST) == [(5, 10)]

    def test_product_deactivated_after_precheck_reports_none_left(
        self, db, fill_cart, stock_of, session_factory, monkeypatch, address
    ):
        fill_cart(GUEST, (1, 1))
        real_check = checkout.check_stock

        def check_then_deactivate(session, items):
            products = real_check(session, items)
            with session_factory() as admin:
                crud.update_product(admin, 1, schemas.ProductUpdate(status="inactive"))
            return products

        monkeypatch.setattr(checkout, "check_stock", check_then_deactivate)

        with pytest.raises(InsufficientStockError) as excinfo:
            process_checkout(db, GUEST, address, address)

        assert excinfo.value.available == 0
        assert "only 0 left" in excinfo.value.message
        assert stock_of(1) == 50
        assert _order_count(session_factory) == 0

    def test_failure_loading_the_new_order_rolls_back(
        self, db, fill_cart, stock_of, session_factory, monkeypatch, address
    ):
        fill_cart(GUEST, (1, 2))

        def broken(*args, **kwargs):
            raise SQLAlchemyError("server closed the connection")

        monkeypatch.setattr(db, "refresh", broken)

        with pytest.raises(StorageFault):
            process_checkout(db, GUEST, address, address)

        assert _order_count(session_factory) == 0
        assert stock_of(1) == 50
        assert _cart(session_factory, GUEST) == [(1, 2)]


class TestOrderNumbers:

    def test_generated_format(self):
        number = checkout.generate_order_number()
        prefix, millis, suffix = number.split("-")
        assert prefix == "ORDER"
        assert millis.isdigit()
        assert len(suffix) == 6
        assert suffix.isalnum() and suffix.upper() == suffix

    def test_collision_is_regenerated(self, db, fill_cart, address):
        fill_cart(GUEST, (1, 1))
        process_checkout(db, GUEST, address, address, order_number_factory=lambda: "ORDER-1-AAAAAA")

        candidates = iter(["ORDER-1-AAAAAA", "ORDER-2-BBBBBB"])
        fill_cart(GUEST, (1, 1))
        order = process_checkout(db, GUEST, address, address, order_number_factory=lambda: next(candidates))

        assert order.order_number == "ORDER-2-BBBBBB"

    def test_exhausted_attempts_abort_checkout(self, db, fill_cart, stock_of, session_factory, address):
        fill_cart(GUEST, (1, 1))
        process_checkout(db, GUEST, address, address, order_number_factory=lambda: "ORDER-1-AAAAAA")

        fill_cart(GUEST, (2, 1))
        with pytest.raises(StorageFault):
            process_checkout(db, GUEST, address, address, order_number_factory=lambda: "ORDER-1-AAAAAA")

        assert stock_of(2) == 30
        assert _order_count(session_factory) == 1
        assert _cart(session_factory, GUEST) == [(2, 1)]


class TestStockPreCheck:

    def test_repeated_check_gives_the_same_answer(self, db, fill_cart):
        fill_cart(GUEST, (1, 2), (4, 1))
        items = crud.get_cart_items(db, GUEST)

        first = check_stock(db, items)
        second = check_stock(db, items)

        assert sorted(first) == sorted(second) == [1, 4]
        assert [p.stock_quantity for p in first.values()] == [p.stock_quantity for p in second.values()]

    def test_repeated_shortage_reports_the_same_product(self, db, fill_cart):
        fill_cart(GUEST, (5, 99))
        items = crud.get_cart_items(db, GUEST)

        errors = []
        for _ in range(2):
            with pytest.raises(InsufficientStockError) as excinfo:
                check_stock(db, items)
            errors.append((excinfo.value.product_id, excinfo.value.available))

        assert errors == [(5, 15), (5, 15)]


class TestConcurrentCheckouts:

    def _race(self, session_factory, owners, address):
        barrier = threading.Barrier(len(owners))

        def attempt(owner):
            session = session_factory()
            try:
                barrier.wait()
                process_checkout(session, owner, address, address)
                return "ok"
            except InsufficientStockError:
                return "short"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=len(owners)) as pool:
            return list(pool.map(attempt, owners))

    def test_last_unit_goes_to_exactly_one_buyer(self, catalog, session_factory, fill_cart, set_stock, stock_of, address):
        set_stock(8, 1)
        owners = [crud.CartOwner(session_id="sess-a"), crud.CartOwner(session_id="sess-b")]
        for owner in owners:
            fill_cart(owner, (8, 1))

        results = self._race(session_factory, owners, address)

        assert sorted(results) == ["ok", "short"]
        assert stock_of(8) == 0
        assert _order_count(session_factory) == 1

    def test_more_buyers_than_stock(self, catalog, session_factory, fill_cart, set_stock, stock_of, address):
        set_stock(10, 3)
        owners = [crud.CartOwner(session_id=f"sess-{n}") for n in range(8)]
        for owner in owners:
            fill_cart(owner, (10, 1))

        results = self._race(session_factory, owners, address)

        assert results.count("ok") == 3
        assert results.count("short") == 5
        assert stock_of(10) == 0
        assert _order_count(session_factory) == 3

    def test_losers_keep_their_carts(self, catalog, session_factory, fill_cart, set_stock, address):
        set_stock(9, 1)
        owners = [crud.CartOwner(session_id="sess-x"), crud.CartOwner(session_id="sess-y")]
        for owner in owners:
            fill_cart(owner, (9, 1))

        results = self._race(session_factory, owners, address)

        for owner, result in zip(owners, results):
            expected = [] if result == "ok" else [(9, 1)]
            assert _cart(session_factory, owner) == expected
