from __future__ import annotations

import pytest

from meatledger.services.carcasses import receive_carcass
from meatledger.services.cutting import add_cut, complete_session, start_session
from meatledger.services.reports import carcass_yield_report, sales_summary, stock_valuation, top_products
from meatledger.services.sales import SaleItemInput, create_sale, process_payment, void_sale
from meatledger.utils import iso_today


def _sell(conn, actor, ids, lines):
    return create_sale(
        conn,
        actor,
        zone_id=ids("zone", "DISP"),
        items=[SaleItemInput(product_id=ids("product", sku), quantity_kg=q, unit_price=p) for sku, q, p in lines],
    )


class TestSalesSummary:
    def test_empty_range(self, conn, actor):
        s = sales_summary(conn, actor, date_from="2020-01-01", date_to="2020-01-31")
        assert s["transaction_count"] == 0
        assert s["total_sales"] == 0.0
        assert s["average_sale"] == 0.0
        assert s["by_day"].empty
        assert s["by_payment_method"].empty

    def test_totals_exclude_voided(self, conn, actor, ids, stock_lot):
        stock_lot("BF-RMP", "DISP", 10.0, cost_per_kg=6.0)
        stock_lot("BF-MNC", "DISP", 10.0, cost_per_kg=4.0)

        a = _sell(conn, actor, ids, [("BF-RMP", 1.2, 12.0), ("BF-MNC", 0.5, 8.0)])
        process_payment(conn, actor, a, method="cash", currency_code="USD", amount=21.16, tendered=25.0)
        b = _sell(conn, actor, ids, [("BF-MNC", 1.0, 10.0)])
        process_payment(conn, actor, b, method="card", currency_code="USD", amount=11.5)
        c = _sell(conn, actor, ids, [("BF-RMP", 2.0, 12.0)])
        void_sale(conn, actor, c, reason="test")

        s = sales_summary(conn, actor)
        assert s["transaction_count"] == 2
        assert s["total_sales"] == pytest.approx(32.66)
        assert s["average_sale"] == pytest.approx(16.33)
        assert s["total_cost"] == pytest.approx(9.2 + 4.0)
        assert s["total_margin"] == pytest.approx(32.66 - 13.2)

        by_method = dict(zip(s["by_payment_method"]["payment_method"], s["by_payment_method"]["amount_base"]))
        assert by_method == {"cash": pytest.approx(21.16), "card": pytest.approx(11.5)}

        assert list(s["by_day"]["sale_date"]) == [iso_today()]
        assert int(s["by_day"]["transaction_count"].iloc[0]) == 2


class TestTopProducts:
    def test_order_by_revenue_then_product_id(self, conn, actor, ids, stock_lot):
        for sku in ("BF-RMP", "BF-TBN", "BF-MNC"):
            stock_lot(sku, "DISP", 10.0)
        _sell(conn, actor, ids, [("BF-TBN", 1.0, 10.0), ("BF-RMP", 2.0, 5.0), ("BF-MNC", 1.0, 30.0)])

        top = top_products(conn, actor)
        assert list(top["product_id"]) == [
            ids("product", "BF-MNC"),
            min(ids("product", "BF-RMP"), ids("product", "BF-TBN")),
            max(ids("product", "BF-RMP"), ids("product", "BF-TBN")),
        ]
        assert list(top["revenue"]) == [30.0, 10.0, 10.0]

        assert len(top_products(conn, actor, limit=1)) == 1


class TestStockValuation:
    def test_totals_groups_and_low_stock(self, conn, actor, stock_lot):
        stock_lot("BF-RMP", "COLD", 4.0, cost_per_kg=6.0)  # min 10 -> 0.4
        stock_lot("BF-MNC", "DISP", 3.0, cost_per_kg=4.0)  # min 15 -> 0.2
        stock_lot("BF-SUP", "COLD", 20.0, cost_per_kg=1.0)  # no minimum

        v = stock_valuation(conn, actor)
        assert v["total_kg"] == pytest.approx(27.0)
        assert v["total_value"] == pytest.approx(24.0 + 12.0 + 20.0)

        by_zone = dict(zip(v["by_zone"]["zone"], v["by_zone"]["value"]))
        assert by_zone == {"Cold Room": pytest.approx(44.0), "Display Counter": pytest.approx(12.0)}

        low = list(v["low_stock"]["sku"])
        # products with nothing on hand are most severe (ratio 0)
        assert low.index("BF-MNC") < low.index("BF-RMP")
        assert low[-1] == "BF-RMP"
        assert "BF-SUP" not in low
        assert list(v["low_stock"]["ratio"]) == sorted(v["low_stock"]["ratio"])


class TestCarcassYield:
    def test_yield_and_margin_per_carcass(self, conn, actor, ids):
        cid = receive_carcass(conn, actor, weight_kg=285.0, cost_total=570.0, destination_zone_id=ids("zone", "DISP"))
        sid = start_session(conn, actor, cid)
        add_cut(conn, actor, sid, product_id=ids("product", "BF-RMP"), weight_kg=150.0)
        add_cut(conn, actor, sid, product_id=ids("product", "BF-MNC"), weight_kg=100.0)
        complete_session(conn, actor, sid, final_waste_kg=30.0)
        _sell(conn, actor, ids, [("BF-RMP", 10.0, 20.0)])

        df = carcass_yield_report(conn, actor, date_from="2000-01-01", date_to="2100-12-31")
        row = df[df["carcass_id"] == cid].iloc[0]
        assert row["yield_percent"] == pytest.approx(98.25)
        assert row["cost_per_kg"] == pytest.approx(2.0)
        assert row["total_revenue"] == pytest.approx(200.0)
        assert row["margin"] == pytest.approx(-370.0)
        assert row["margin_percent"] == pytest.approx(-185.0)
