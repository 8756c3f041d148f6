"""
Attribution Resolver Tests

Priority chain, idempotent re-runs, unresolved reasons and the
confirmed correction mode.
"""

from datetime import date
from decimal import Decimal

import pytest

from attribution_resolver import (
    AttributionMethod,
    AttributionResolver,
    OwnerLookups,
    UnresolvedReason,
    parse_storage_reference,
)
from core.audit import AuditLogger, InMemoryAuditBackend
from core.errors import CorrectionNotConfirmed
from ledger import (
    InternalInvoice,
    MarkupStatus,
    Product,
    ReceivingOrder,
    ReturnOrder,
    Shipment,
    get_transaction,
    list_exceptions,
    upsert_products,
    upsert_receiving_orders,
    upsert_returns,
    upsert_shipments,
    upsert_transactions,
)
from ledger.db import (
    add_internal_invoice,
    get_internal_invoice,
    link_transactions,
    overwrite_client_id,
    write_markup_results,
)
from ledger.models import LedgerTransaction


@pytest.fixture
def resolver(attribution_settings, db_path):
    return AttributionResolver(attribution_settings, db_path=db_path)


@pytest.fixture
def owners(db_path):
    upsert_shipments([Shipment(shipment_id="s1", client_id="acme")], db_path)
    upsert_returns([ReturnOrder(return_id="r1", client_id="globex")], db_path)
    upsert_receiving_orders([ReceivingOrder(receiving_order_id="w1", client_id="initech")], db_path)
    upsert_products([Product(
        product_id="p1",
        client_id="umbrella",
        variants=[{"id": 1, "inventory": {"inventory_id": 20114295}}],
    )], db_path)


class TestStorageReference:

    def test_composite_reference(self):
        assert parse_storage_reference("156-20114295-Shelf") == "20114295"

    def test_falls_back_to_additional_details(self):
        assert parse_storage_reference("garbage", {"InventoryId": 20114295}) == "20114295"

    def test_location_with_dashes_or_missing(self):
        assert parse_storage_reference("156-777-Pallet-Large") == "777"
        assert parse_storage_reference("156-777") == "777"

    def test_empty_inventory_segment_falls_back(self):
        assert parse_storage_reference("156--Shelf", {"InventoryId": "42"}) == "42"

    def test_malformed_without_fallback(self):
        assert parse_storage_reference("156--Shelf") is None
        assert parse_storage_reference("Shelf") is None
        assert parse_storage_reference("", {}) is None


class TestPriorityChain:

    def test_resolves_each_reference_type(self, resolver, record, owners, db_path, attribution_settings):
        upsert_transactions([
            record("ship", reference_type="Shipment", reference_id="s1"),
            record("ret", reference_type="Return", reference_id="r1", fee_type="Return Label"),
            record("wro", reference_type="WRO", reference_id="w1", fee_type="WRO Receiving Fee"),
            record("stor", reference_type="Storage", reference_id="156-20114295-Shelf", fee_type="Warehousing Fee"),
            record("fc", reference_type="FC", reference_id="156-20114295-Bin", fee_type="Warehousing Fee"),
            record("pay", reference_type="Default", reference_id="0", fee_type="Payment", transaction_type="Payment"),
            record("cc", reference_type="Default", reference_id="0", fee_type="Credit Card Processing Fee"),
        ], db_path)

        result = resolver.run(run_id="r-1")

        assert result.examined == 7
        assert result.attributed == 7
        assert result.unresolved == []
        expected = {
            "ship": ("acme", AttributionMethod.SHIPMENT),
            "ret": ("globex", AttributionMethod.RETURN),
            "wro": ("initech", AttributionMethod.RECEIVING_ORDER),
            "stor": ("umbrella", AttributionMethod.STORAGE),
            "fc": ("umbrella", AttributionMethod.STORAGE),
            "pay": (attribution_settings.payments_house_client_id, AttributionMethod.SYSTEM_FEE),
            "cc": (attribution_settings.costs_house_client_id, AttributionMethod.SYSTEM_FEE),
        }
        for tx_id, (client_id, method) in expected.items():
            tx = get_transaction(tx_id, db_path)
            assert (tx.client_id, tx.attribution_method) == (client_id, method), tx_id

    def test_uro_joins_receiving_orders(self, resolver, record, owners, db_path):
        upsert_transactions([record("uro", reference_type="URO", reference_id="w1", fee_type="URO Storage Fee")], db_path)

        assert resolver.run().attributed == 1
        tx = get_transaction("uro", db_path)
        assert (tx.client_id, tx.attribution_method) == ("initech", AttributionMethod.RECEIVING_ORDER)

    def test_multi_segment_storage_location(self, resolver, record, owners, db_path):
        upsert_transactions([
            record("pallet", reference_type="FC", reference_id="156-20114295-Pallet-Large", fee_type="Warehousing Fee"),
        ], db_path)

        assert resolver.run().attributed == 1
        assert get_transaction("pallet", db_path).client_id == "umbrella"

    def test_credit_on_default_reference_falls_back(self, resolver, record, owners, db_path):
        upsert_transactions([
            record("cr-ship", reference_type="Default", reference_id="s1", fee_type="Credit", transaction_type="Credit"),
            record("cr-ret", reference_type="Default", reference_id="r1", fee_type="Credit", transaction_type="Credit"),
            record("cr-wro", reference_type="Default", reference_id="w1", fee_type="Credit", transaction_type="Credit"),
            record("cr-none", reference_type="Default", reference_id="x9", fee_type="Credit", transaction_type="Credit"),
        ], db_path)

        result = resolver.run()

        assert result.attributed == 3
        expected = {
            "cr-ship": ("acme", AttributionMethod.SHIPMENT),
            "cr-ret": ("globex", AttributionMethod.RETURN),
            "cr-wro": ("initech", AttributionMethod.RECEIVING_ORDER),
        }
        for tx_id, owner in expected.items():
            tx = get_transaction(tx_id, db_path)
            assert (tx.client_id, tx.attribution_method) == owner, tx_id
        assert result.by_reason == {UnresolvedReason.OWNER_NOT_SYNCED.value: 1}

    def test_credit_fallback_prefers_shipment(self, resolver, record, owners, db_path):
        upsert_returns([ReturnOrder(return_id="s1", client_id="globex")], db_path)
        upsert_transactions([record("cr", reference_type="Default", reference_id="s1", fee_type="Credit")], db_path)

        resolver.run()

        assert get_transaction("cr", db_path).client_id == "acme"

    def test_other_default_fees_do_not_join(self, resolver, record, owners, db_path):
        upsert_transactions([record("odd", reference_type="Default", reference_id="s1", fee_type="Others")], db_path)

        result = resolver.run()

        assert result.attributed == 0
        assert result.by_reason == {UnresolvedReason.UNSUPPORTED_REFERENCE_TYPE.value: 1}

    def test_join_wins_over_system_fee(self, resolver, record, owners, db_path):
        # A shipment-referenced "Payment" still belongs to the shipment's owner
        upsert_transactions([record("t1", reference_id="s1", fee_type="Payment")], db_path)
        resolver.run()
        assert get_transaction("t1", db_path).client_id == "acme"

    def test_resolve_is_pure(self, resolver, record):
        txs = [LedgerTransaction(**record("t1", reference_id="s9").model_dump())]
        attributions, unresolved = resolver.resolve(txs, OwnerLookups(shipments={"s9": "acme"}))

        assert [(a.transaction_id, a.client_id) for a in attributions] == [("t1", "acme")]
        assert unresolved == []


class TestUnresolved:

    def test_reasons(self, resolver, record, db_path):
        upsert_transactions([
            record("late", reference_type="Shipment", reference_id="s-not-synced"),
            record("uro", reference_type="URO", reference_id="u1", fee_type="URO Storage Fee"),
            record("ticket", reference_type="TicketNumber", reference_id="T-1", fee_type="Others"),
            record("bad", reference_type="Storage", reference_id="Shelf", fee_type="Warehousing Fee"),
        ], db_path)

        result = resolver.run(run_id="r-1")

        assert result.attributed == 0
        assert result.by_reason == {
            UnresolvedReason.OWNER_NOT_SYNCED.value: 2,
            UnresolvedReason.UNSUPPORTED_REFERENCE_TYPE.value: 1,
            UnresolvedReason.MALFORMED_STORAGE_REFERENCE.value: 1,
        }
        parked = {e.transaction_id: e for e in list_exceptions(bucket="unattributable", db_path=db_path)}
        assert set(parked) == {"late", "uro", "ticket", "bad"}
        assert parked["late"].run_id == "r-1"
        assert get_transaction("late", db_path).client_id is None

    def test_late_owner_sync_is_picked_up(self, resolver, record, db_path):
        upsert_transactions([record("late", reference_id="s2")], db_path)
        assert resolver.run().attributed == 0

        upsert_shipments([Shipment(shipment_id="s2", client_id="acme")], db_path)
        result = resolver.run()

        assert result.attributed == 1
        assert get_transaction("late", db_path).client_id == "acme"
        assert list_exceptions(bucket="unattributable", db_path=db_path) == []


class TestIdempotence:

    def test_rerun_changes_nothing(self, resolver, record, owners, db_path):
        upsert_transactions([record("t1", reference_id="s1")], db_path)
        resolver.run()
        before = get_transaction("t1", db_path)

        # Owner moves, but a normal run never touches attributed rows
        upsert_shipments([Shipment(shipment_id="s1", client_id="other")], db_path)
        second = resolver.run()

        assert second.examined == 0
        assert get_transaction("t1", db_path).client_id == before.client_id == "acme"

    def test_dry_run_writes_nothing(self, resolver, record, owners, db_path):
        upsert_transactions([record("t1", reference_id="s1"), record("t2", reference_id="nope")], db_path)
        result = resolver.run(dry_run=True)

        assert result.dry_run
        assert len(result.proposed) == 1
        assert result.attributed == 0
        assert get_transaction("t1", db_path).client_id is None
        assert list_exceptions(db_path=db_path) == []

    def test_threaded_batches(self, attribution_settings, record, db_path):
        attribution_settings.max_workers = 4
        attribution_settings.batch_size = 10
        upsert_shipments([Shipment(shipment_id=f"s{i}", client_id=f"c{i % 3}") for i in range(100)], db_path)
        upsert_transactions([record(f"t{i}", reference_id=f"s{i}") for i in range(100)], db_path)

        result = AttributionResolver(attribution_settings, db_path=db_path).run()

        assert result.attributed == 100
        assert get_transaction("t41", db_path).client_id == "c2"


class TestCorrection:

    @pytest.fixture
    def moved(self, resolver, record, owners, db_path):
        upsert_transactions([record("t1", reference_id="s1")], db_path)
        resolver.run()
        write_markup_results([("t1", Decimal("11.00"), Decimal("1.00"), Decimal("10.00"), 1)], db_path)
        upsert_shipments([Shipment(shipment_id="s1", client_id="acme-eu")], db_path)

    def test_requires_confirmation(self, resolver, moved):
        with pytest.raises(CorrectionNotConfirmed):
            resolver.correct_attributions()

    def test_dry_run_lists_candidates(self, resolver, moved, db_path):
        result = resolver.correct_attributions(dry_run=True)

        assert result.corrected == 0
        assert [(c.current_client_id, c.proposed_client_id) for c in result.candidates] == [("acme", "acme-eu")]
        assert get_transaction("t1", db_path).client_id == "acme"

    def test_confirmed_overwrites_and_resets_markup(self, attribution_settings, moved, db_path):
        backend = InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(backend)
        resolver = AttributionResolver(attribution_settings, db_path=db_path, audit=audit)

        result = resolver.correct_attributions(confirmed=True, actor="ops@example.com")

        assert result.corrected == 1
        tx = get_transaction("t1", db_path)
        assert tx.client_id == "acme-eu"
        assert tx.attribution_method == AttributionMethod.CORRECTION
        assert tx.markup_status == MarkupStatus.PENDING
        events = backend.query(event_type="ATTRIBUTION_CORRECTED")
        assert events[0].actor == "ops@example.com"
        assert events[0].details["previous_client_id"] == "acme"
        assert events[0].details["previous_internal_invoice_id"] is None
        assert result.unlinked == 0

    def test_correction_clears_previous_owners_invoice_link(self, resolver, moved, db_path):
        invoice = add_internal_invoice(InternalInvoice(
            internal_invoice_id="ii-acme", invoice_number="JP-0007",
            invoice_date=date(2025, 11, 10), client_id="acme",
        ), db_path)
        link_transactions([("t1", invoice, 9001)], db_path)

        result = resolver.correct_attributions(confirmed=True)

        assert result.corrected == 1
        assert result.unlinked == 1
        assert result.to_dict()["unlinked"] == 1
        tx = get_transaction("t1", db_path)
        assert tx.client_id == "acme-eu"
        assert tx.internal_invoice_id is None
        assert tx.internal_invoice_date is None
        # The old invoice keeps its upstream id set
        assert get_internal_invoice("ii-acme", db_path).upstream_invoice_ids == [9001]

    def test_stale_expected_owner_is_not_overwritten(self, moved, db_path):
        assert overwrite_client_id("t1", "someone-else", "acme-eu", db_path) == (False, None)
        assert get_transaction("t1", db_path).client_id == "acme"
