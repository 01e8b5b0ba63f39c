"""
Status projection tests - provider vocabularies to canonical statuses
"""
import pytest

from app.models import OrderStatus, PaymentStatus
from app.services.status_mapping import (
    is_terminal,
    map_carrier_status,
    map_source_fulfillment_status,
    map_source_payment_status,
)


class TestCarrierStatus:
    """Carrier labels, case and spacing insensitive; unknown stays pending"""

    @pytest.mark.parametrize("raw,expected", [
        ("delivered", OrderStatus.DELIVERED),
        ("DELIVERED", OrderStatus.DELIVERED),
        ("Livré", OrderStatus.DELIVERED),
        ("confirmed", OrderStatus.CONFIRMED),
        ("In Transit", OrderStatus.SHIPPED),
        ("in_transit", OrderStatus.SHIPPED),
        ("out for delivery", OrderStatus.SHIPPED),
        ("returned", OrderStatus.RETURNED),
        ("refused", OrderStatus.RETURNED),
        ("canceled", OrderStatus.CANCELLED),
        ("new order", OrderStatus.PENDING),
    ])
    def test_known_labels(self, raw, expected):
        assert map_carrier_status(raw) == expected

    @pytest.mark.parametrize("raw", ["some_unrecognized_value", "", None, 42, "   "])
    def test_unknown_is_pending(self, raw):
        assert map_carrier_status(raw) == OrderStatus.PENDING


class TestStorefrontStatus:
    """Shopify fulfillment and financial status"""

    def test_fulfillment(self):
        assert map_source_fulfillment_status("fulfilled") == OrderStatus.DELIVERED
        assert map_source_fulfillment_status("partial") == OrderStatus.SHIPPED
        assert map_source_fulfillment_status(None) == OrderStatus.PENDING
        assert map_source_fulfillment_status("whatever") == OrderStatus.PENDING

    def test_restock_does_not_settle_the_order(self):
        assert map_source_fulfillment_status("restocked") == OrderStatus.PENDING
        assert not is_terminal(map_source_fulfillment_status("restocked"))

    def test_payment(self):
        assert map_source_payment_status("paid") == PaymentStatus.PAID
        assert map_source_payment_status("pending") == PaymentStatus.UNPAID
        assert map_source_payment_status("refunded") == PaymentStatus.REFUNDED
        assert map_source_payment_status(None) == PaymentStatus.UNPAID


class TestTerminal:
    def test_terminal_statuses(self):
        assert is_terminal(OrderStatus.DELIVERED)
        assert is_terminal("cancelled")
        assert is_terminal("returned")
        assert not is_terminal("shipped")
        assert not is_terminal(None)
        assert not is_terminal("bogus")
