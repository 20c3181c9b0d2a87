from __future__ import annotations

import pytest

from meatledger.db import q
from meatledger.errors import Conflict, InvalidState, NotFound, Precondition, ValidationError
from meatledger.services.reconciliation import (
    complete_closing,
    complete_stock_count,
    get_closing,
    get_closing_for_date,
    list_closings,
    list_cash_denominations,
    list_stock_count_items,
    record_cash_count,
    record_stock_count_item,
    start_closing,
)
from meatledger.services.sales import SaleItemInput, create_sale, process_payment
from meatledger.utils import iso_today


def _count(closing, zone_code):
    return next(sc for sc in closing["stock_counts"] if sc["zone_code"] == zone_code)


def _cash(closing, code):
    return next(cc for cc in closing["cash_counts"] if cc["currency_code"] == code)


@pytest.fixture
def closing(conn, actor, stock_lot):
    stock_lot("BF-BRS", "COLD", 50.0, cost_per_kg=4.0)
    closing_id = start_closing(conn, actor, "2026-03-01")
    return get_closing(conn, actor, closing_id)


def _count_everything(conn, actor, closing):
    for sc in closing["stock_counts"]:
        for item in list_stock_count_items(conn, actor, int(sc["id"])):
            record_stock_count_item(conn, actor, int(item["id"]), actual_kg=float(item["expected_kg"]))
        complete_stock_count(conn, actor, int(sc["id"]))
    for cc in closing["cash_counts"]:
        record_cash_count(conn, actor, int(cc["id"]), counted_total=float(cc["expected_total"]))


class TestStartClosing:
    def test_counts_per_zone_and_currency(self, conn, actor, closing):
        assert closing["status"] == "in_progress"
        assert {sc["zone_code"] for sc in closing["stock_counts"]} == {"COLD", "DISP", "FRZ"}
        assert {cc["currency_code"] for cc in closing["cash_counts"]} == {"USD", "ZWG"}
        assert float(closing["expected_stock_kg"]) == pytest.approx(50.0)

        cold = _count(closing, "COLD")
        items = list_stock_count_items(conn, actor, int(cold["id"]))
        assert len(items) == 1
        assert float(items[0]["expected_kg"]) == pytest.approx(50.0)
        assert float(items[0]["expected_value"]) == pytest.approx(200.0)
        assert items[0]["is_counted"] == 0

        usd = _cash(closing, "USD")
        assert float(usd["opening_float"]) == pytest.approx(100.0)
        assert float(usd["expected_total"]) == pytest.approx(100.0)

    def test_duplicate_date_conflicts(self, conn, actor, closing):
        with pytest.raises(Conflict):
            start_closing(conn, actor, "2026-03-01")
        assert len(list_closings(conn, actor)) == 1

    def test_expected_cash_includes_cash_sales(self, conn, actor, ids, stock_lot):
        stock_lot("BF-RMP", "DISP", 5.0)
        sale_id = create_sale(
            conn,
            actor,
            zone_id=ids("zone", "DISP"),
            items=[
                SaleItemInput(product_id=ids("product", "BF-RMP"), quantity_kg=1.2, unit_price=12.0),
                SaleItemInput(product_id=ids("product", "BF-RMP"), quantity_kg=0.5, unit_price=8.0),
            ],
        )
        process_payment(conn, actor, sale_id, method="cash", currency_code="USD", amount=21.16, tendered=25.0)

        closing_id = start_closing(conn, actor, opening_floats={"USD": 50.0})
        c = get_closing(conn, actor, closing_id)
        usd = _cash(c, "USD")
        assert float(usd["opening_float"]) == pytest.approx(50.0)
        assert float(usd["cash_sales"]) == pytest.approx(21.16)
        assert float(usd["expected_total"]) == pytest.approx(71.16)
        assert float(c["total_sales"]) == pytest.approx(21.16)
        assert int(c["transaction_count"]) == 1
        assert get_closing_for_date(conn, actor, iso_today())["id"] == closing_id


class TestStockCount:
    def test_shortage_requires_reason(self, conn, actor, closing):
        item = list_stock_count_items(conn, actor, int(_count(closing, "COLD")["id"]))[0]

        with pytest.raises(ValidationError):
            record_stock_count_item(conn, actor, int(item["id"]), actual_kg=48.5)
        with pytest.raises(ValidationError):
            record_stock_count_item(conn, actor, int(item["id"]), actual_kg=48.5, reason="NOT_A_CODE")

        res = record_stock_count_item(conn, actor, int(item["id"]), actual_kg=48.5, reason="SPOILAGE")
        assert res["variance_kg"] == pytest.approx(-1.5)
        assert res["variance_percent"] == pytest.approx(-3.0)
        assert res["variance_value"] == pytest.approx(-6.0)

        sc = _count(get_closing(conn, actor, int(closing["id"])), "COLD")
        assert int(sc["items_counted"]) == 1
        assert int(sc["items_with_variance"]) == 1
        assert float(sc["variance_kg"]) == pytest.approx(-1.5)

    def test_exact_count_needs_no_reason(self, conn, actor, closing):
        item = list_stock_count_items(conn, actor, int(_count(closing, "COLD")["id"]))[0]
        res = record_stock_count_item(conn, actor, int(item["id"]), actual_kg=50.0)
        assert res["variance_kg"] == 0.0

    def test_negative_count_rejected(self, conn, actor, closing):
        item = list_stock_count_items(conn, actor, int(_count(closing, "COLD")["id"]))[0]
        with pytest.raises(ValidationError):
            record_stock_count_item(conn, actor, int(item["id"]), actual_kg=-1)

    def test_stale_version_conflicts(self, conn, actor, closing):
        item = list_stock_count_items(conn, actor, int(_count(closing, "COLD")["id"]))[0]
        record_stock_count_item(conn, actor, int(item["id"]), actual_kg=50.0, expected_version=1)
        with pytest.raises(Conflict):
            record_stock_count_item(conn, actor, int(item["id"]), actual_kg=49.0, reason="TRIM", expected_version=1)
        refreshed = list_stock_count_items(conn, actor, int(_count(closing, "COLD")["id"]))[0]
        assert float(refreshed["actual_kg"]) == pytest.approx(50.0)

    def test_cannot_complete_with_uncounted_items(self, conn, actor, closing):
        cold = _count(closing, "COLD")
        with pytest.raises(InvalidState):
            complete_stock_count(conn, actor, int(cold["id"]))

    def test_completed_count_is_locked(self, conn, actor, closing):
        cold = _count(closing, "COLD")
        item = list_stock_count_items(conn, actor, int(cold["id"]))[0]
        record_stock_count_item(conn, actor, int(item["id"]), actual_kg=50.0)
        complete_stock_count(conn, actor, int(cold["id"]))
        with pytest.raises(InvalidState):
            record_stock_count_item(conn, actor, int(item["id"]), actual_kg=40.0, reason="THEFT")
        with pytest.raises(InvalidState):
            complete_stock_count(conn, actor, int(cold["id"]))


class TestCashCount:
    def test_variance_and_denominations(self, conn, actor, closing):
        usd = _cash(closing, "USD")
        variance = record_cash_count(
            conn, actor, int(usd["id"]), counted_total=95.0, denominations={50: 1, 20: 2, 5: 1}
        )
        assert variance == pytest.approx(-5.0)
        denoms = list_cash_denominations(conn, actor, int(usd["id"]))
        assert [(float(d["denomination"]), int(d["count"])) for d in denoms] == [(50.0, 1), (20.0, 2), (5.0, 1)]

    def test_denominations_must_add_up(self, conn, actor, closing):
        usd = _cash(closing, "USD")
        with pytest.raises(ValidationError):
            record_cash_count(conn, actor, int(usd["id"]), counted_total=100.0, denominations={50: 1})

    def test_stale_version_conflicts(self, conn, actor, closing):
        usd = _cash(closing, "USD")
        record_cash_count(conn, actor, int(usd["id"]), counted_total=100.0, expected_version=1)
        with pytest.raises(Conflict):
            record_cash_count(conn, actor, int(usd["id"]), counted_total=90.0, expected_version=1)


class TestCompleteClosing:
    def test_precondition_until_everything_counted(self, conn, actor, closing):
        with pytest.raises(Precondition):
            complete_closing(conn, actor, int(closing["id"]))

        for sc in closing["stock_counts"]:
            for item in list_stock_count_items(conn, actor, int(sc["id"])):
                record_stock_count_item(conn, actor, int(item["id"]), actual_kg=48.5, reason="DRIP")
            complete_stock_count(conn, actor, int(sc["id"]))

        # stock done, cash still missing
        with pytest.raises(Precondition):
            complete_closing(conn, actor, int(closing["id"]))

        for cc in closing["cash_counts"]:
            record_cash_count(conn, actor, int(cc["id"]), counted_total=float(cc["expected_total"]))

        summary = complete_closing(conn, actor, int(closing["id"]), notes="quiet day")
        assert summary["expected_stock_kg"] == pytest.approx(50.0)
        assert summary["actual_stock_kg"] == pytest.approx(48.5)
        assert summary["stock_variance_kg"] == pytest.approx(-1.5)
        assert summary["stock_variance_percent"] == pytest.approx(-3.0)
        assert summary["stock_variance_value"] == pytest.approx(-6.0)

        done = get_closing(conn, actor, int(closing["id"]))
        assert done["status"] == "completed"
        assert done["notes"] == "quiet day"

    def test_completed_closing_is_terminal(self, conn, actor, closing):
        _count_everything(conn, actor, closing)
        complete_closing(conn, actor, int(closing["id"]))

        with pytest.raises(InvalidState):
            complete_closing(conn, actor, int(closing["id"]))
        usd = _cash(closing, "USD")
        with pytest.raises(InvalidState):
            record_cash_count(conn, actor, int(usd["id"]), counted_total=1.0)

    def test_other_organization_sees_nothing(self, conn, actor, closing):
        from meatledger.actor import Actor
        from meatledger.services.demo_data import upsert_reference_data

        other = Actor(organization_id=upsert_reference_data(conn, organization="Other Butchery"))
        with pytest.raises(NotFound):
            get_closing(conn, other, int(closing["id"]))
        assert get_closing_for_date(conn, other, "2026-03-01") is None
        # same date is free for another organization
        start_closing(conn, other, "2026-03-01")
        assert len(q(conn, "SELECT id FROM daily_closings WHERE closing_date='2026-03-01'")) == 2

    def test_cash_totals_rolled_up_in_base_currency(self, conn, actor, closing):
        for sc in closing["stock_counts"]:
            for item in list_stock_count_items(conn, actor, int(sc["id"])):
                record_stock_count_item(conn, actor, int(item["id"]), actual_kg=float(item["expected_kg"]))
            complete_stock_count(conn, actor, int(sc["id"]))
        record_cash_count(conn, actor, int(_cash(closing, "USD")["id"]), counted_total=95.0)
        record_cash_count(conn, actor, int(_cash(closing, "ZWG")["id"]), counted_total=500.0)

        summary = complete_closing(conn, actor, int(closing["id"]))

        # ZWG float of 500 at 26.5 per USD
        assert summary["expected_cash_base"] == pytest.approx(100.0 + 500.0 / 26.5, abs=0.01)
        assert summary["actual_cash_base"] == pytest.approx(95.0 + 500.0 / 26.5, abs=0.01)
        assert summary["cash_variance_base"] == pytest.approx(-5.0)
        by_code = {c["currency_code"]: c for c in summary["cash_by_currency"]}
        assert by_code["USD"]["variance"] == pytest.approx(-5.0)
        assert by_code["ZWG"]["variance"] == 0.0

        done = get_closing(conn, actor, int(closing["id"]))
        assert float(done["cash_variance_base"]) == pytest.approx(-5.0)
