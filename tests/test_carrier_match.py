"""
Match stage tests - candidate selection, lead fetch fallbacks, idempotent writes, status refresh
"""
import asyncio
from datetime import timedelta

from app.models import Order, OrderStatus
from app.services.carrier_match import CarrierMatcher
from app.services.order_import import OrderImporter
from conftest import NOW, OPERATION_ID, FakeCarrier, FakeStorefront

MARIA_LEAD = {
    "n_lead": "EF-1001",
    "phone": "00393331234567",
    "name": "Maria Silva Santos",
    "status_livrison": "delivered",
    "tracking_number": "IT123456789",
}


def _seed(db_session, settings, clock, payloads):
    importer = OrderImporter(db_session, FakeStorefront(), settings=settings, clock=clock)
    for payload in payloads:
        importer.process_shopify_order(OPERATION_ID, payload)


def _matcher(db_session, carrier, settings, clock):
    return CarrierMatcher(db_session, carrier.factory, settings=settings, clock=clock)


class TestEndToEnd:
    """Import then match for one Italian COD order"""

    def test_import_then_match(self, db_session, operation, settings, clock, shopify_order):
        storefront = FakeStorefront([shopify_order(5012345, phone="+39 333 1234567", first_name="Maria", last_name="Silva")])
        asyncio.run(OrderImporter(db_session, storefront, settings=settings, clock=clock).import_orders(OPERATION_ID))

        carrier = FakeCarrier(leads=[MARIA_LEAD])
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))

        assert result["matched"] == 1
        order = db_session.query(Order).one()
        assert order.carrier_imported is True
        assert order.status == OrderStatus.DELIVERED
        assert order.tracking_number == "IT123456789"
        assert order.carrier_order_id == "EF-1001"
        assert order.carrier_matched_at == NOW
        assert order.provider_data == MARIA_LEAD


class TestCandidates:
    """Which orders the match stage looks at"""

    def test_terminal_orders_are_excluded(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1), shopify_order(2, phone="+39 320 5550000", first_name="Luca", last_name="Bianchi")])
        delivered = db_session.query(Order).filter(Order.source_order_id == "1").one()
        delivered.status = OrderStatus.DELIVERED
        db_session.commit()

        matcher = _matcher(db_session, FakeCarrier(), settings, clock)
        candidates = matcher.unmatched_orders(OPERATION_ID)
        assert [o.source_order_id for o in candidates] == ["2"]

        carrier = FakeCarrier(leads=[MARIA_LEAD])
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        assert result["matched"] == 0
        db_session.refresh(delivered)
        assert delivered.carrier_imported is False

    def test_matched_orders_are_not_candidates(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        carrier = FakeCarrier(leads=[dict(MARIA_LEAD, status_livrison="shipped")])
        asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        assert _matcher(db_session, carrier, settings, clock).unmatched_orders(OPERATION_ID) == []

    def test_no_candidates_skips_the_carrier(self, db_session, operation, settings, clock):
        carrier = FakeCarrier(leads=[MARIA_LEAD])
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        assert result == {"matched": 0, "candidates": 0, "leads": 0}
        assert carrier.list_calls == []


class TestLeadFetch:
    """Unfiltered first, then country spellings in order"""

    def test_country_fallback_order(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        carrier = FakeCarrier(by_country={"italy": [MARIA_LEAD]})
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        assert carrier.list_calls == [None, "ITALY", "Italy", "italy"]
        assert result["matched"] == 1

    def test_unfiltered_listing_wins(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        carrier = FakeCarrier(leads=[MARIA_LEAD], by_country={"ITALY": []})
        asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        assert carrier.list_calls == [None]

    def test_fetch_failure_is_reported_not_raised(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        carrier = FakeCarrier(error="Carrier API api/leads -> HTTP 500")
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        assert result["matched"] == 0
        assert "HTTP 500" in result["error"]
        assert db_session.query(Order).one().carrier_imported is False

    def test_missing_credentials(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        matcher = CarrierMatcher(db_session, lambda db, op: None, settings=settings, clock=clock)
        result = asyncio.run(matcher.match_with_carrier(OPERATION_ID))
        assert result["matched"] == 0
        assert result["error"] == "No carrier credentials"


class TestWrites:
    """Batched, idempotent match writes"""

    def test_batches_cover_every_match(self, db_session, operation, settings, clock, shopify_order):
        payloads = [
            shopify_order(i, phone=f"+39 333 00000{i:02d}", first_name=f"Nome{i}", last_name="Cliente")
            for i in range(1, 6)
        ]
        _seed(db_session, settings, clock, payloads)
        leads = [
            {"n_lead": f"EF-{i}", "phone": f"0039 333 00000{i:02d}", "status_livrison": "confirmed"}
            for i in range(1, 6)
        ]
        result = asyncio.run(_matcher(db_session, FakeCarrier(leads=leads), settings, clock).match_with_carrier(OPERATION_ID))
        assert result["matched"] == 5
        assert {o.carrier_order_id for o in db_session.query(Order).all()} == {f"EF-{i}" for i in range(1, 6)}
        assert all(o.status == OrderStatus.CONFIRMED for o in db_session.query(Order).all())

    def test_one_unsavable_row_does_not_sink_its_batch(self, db_session, operation, settings, clock, shopify_order):
        payloads = [
            shopify_order(i, phone=f"+39 333 00000{i:02d}", first_name=f"Nome{i}", last_name="Cliente")
            for i in range(1, 4)
        ]
        _seed(db_session, settings, clock, payloads)
        leads = [
            {"n_lead": f"EF-{i}", "phone": f"0039 333 00000{i:02d}", "status_livrison": "confirmed"}
            for i in range(1, 4)
        ]
        leads[0]["raw"] = object()  # provider_data cannot be stored as JSON
        result = asyncio.run(_matcher(db_session, FakeCarrier(leads=leads), settings, clock).match_with_carrier(OPERATION_ID))
        assert result["matched"] == 2
        rows = {o.source_order_id: o for o in db_session.query(Order).all()}
        assert rows["1"].carrier_imported is False
        assert rows["1"].carrier_order_id is None
        assert rows["2"].carrier_order_id == "EF-2"
        assert rows["3"].carrier_order_id == "EF-3"

    def test_lead_without_number_is_never_matched(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        anonymous = {key: value for key, value in MARIA_LEAD.items() if key != "n_lead"}
        carrier = FakeCarrier(leads=[anonymous])
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        assert result["matched"] == 0
        order = db_session.query(Order).one()
        assert order.carrier_imported is False
        assert order.carrier_order_id is None
        assert _matcher(db_session, carrier, settings, clock).unmatched_orders(OPERATION_ID) == [order]

    def test_writing_the_same_match_twice_is_a_no_op(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        matcher = _matcher(db_session, FakeCarrier(), settings, clock)
        order = db_session.query(Order).one()
        assert matcher.apply_match(order, dict(MARIA_LEAD, status_livrison="shipped"), NOW)
        db_session.commit()
        stamp = order.updated_at
        assert not matcher.apply_match(order, dict(MARIA_LEAD, status_livrison="shipped"), NOW + timedelta(minutes=5))
        assert order.updated_at == stamp
        assert order.carrier_matched_at == NOW

    def test_unknown_carrier_status_is_pending(self, db_session, operation, settings, clock, shopify_order):
        _seed(db_session, settings, clock, [shopify_order(1)])
        carrier = FakeCarrier(leads=[dict(MARIA_LEAD, status_livrison="some_unrecognized_value")])
        asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))
        order = db_session.query(Order).one()
        assert order.carrier_imported is True
        assert order.status == OrderStatus.PENDING


class TestStatusRefresh:
    """update_carrier_status on matched, unsettled orders"""

    def _matched(self, db_session, settings, clock, shopify_order, status="shipped"):
        _seed(db_session, settings, clock, [shopify_order(1)])
        carrier = FakeCarrier(leads=[dict(MARIA_LEAD, status_livrison=status, tracking_number=None)])
        asyncio.run(_matcher(db_session, carrier, settings, clock).match_with_carrier(OPERATION_ID))

    def test_status_and_tracking_are_refreshed(self, db_session, operation, settings, clock, shopify_order):
        self._matched(db_session, settings, clock, shopify_order)
        carrier = FakeCarrier(details={"EF-1001": {"status": "delivered", "tracking_number": "IT999"}})
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).update_carrier_status(OPERATION_ID))
        assert result == {"updated": 1}
        order = db_session.query(Order).one()
        assert order.status == OrderStatus.DELIVERED
        assert order.tracking_number == "IT999"

    def test_settled_orders_are_not_refreshed(self, db_session, operation, settings, clock, shopify_order):
        self._matched(db_session, settings, clock, shopify_order, status="delivered")
        carrier = FakeCarrier(details={"EF-1001": {"status": "returned"}})
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).update_carrier_status(OPERATION_ID))
        assert result == {"updated": 0}
        assert carrier.status_calls == []

    def test_unknown_label_does_not_regress(self, db_session, operation, settings, clock, shopify_order):
        self._matched(db_session, settings, clock, shopify_order)
        carrier = FakeCarrier(details={"EF-1001": {"status": "weird new label"}})
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).update_carrier_status(OPERATION_ID))
        assert result == {"updated": 0}
        assert db_session.query(Order).one().status == OrderStatus.SHIPPED

    def test_carrier_failure_stops_the_pass(self, db_session, operation, settings, clock, shopify_order):
        self._matched(db_session, settings, clock, shopify_order)
        carrier = FakeCarrier(error="Carrier API api/leads/details -> HTTP 500")
        result = asyncio.run(_matcher(db_session, carrier, settings, clock).update_carrier_status(OPERATION_ID))
        assert result["updated"] == 0
        assert "HTTP 500" in result["error"]
