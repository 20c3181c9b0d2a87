from __future__ import annotations

import pytest

from conftest import lot_kg, lot_units
from meatledger.db import q, transaction
from meatledger.errors import InsufficientStock, NotFound, ValidationError
from meatledger.services.stock import (
    adjust_stock,
    aggregated_stock,
    available_kg,
    consume_fifo,
    list_movements,
    post_stock_lot,
    transfer_stock,
    zone_stock_by_product,
)


class TestTransfer:
    def test_partial_transfer_splits_lot(self, conn, actor, ids, stock_lot):
        src = stock_lot("BF-RMP", "COLD", 10.0)
        dest = transfer_stock(conn, actor, src, to_zone_id=ids("zone", "DISP"), quantity_kg=4.0, reason="counter")

        assert dest != src
        assert lot_kg(conn, src) == pytest.approx(6.0)
        assert lot_kg(conn, dest) == pytest.approx(4.0)

        moves = q(conn, "SELECT stock_id, quantity_kg FROM stock_movements WHERE movement_type='transfer' ORDER BY id")
        assert [(int(m["stock_id"]), float(m["quantity_kg"])) for m in moves] == [(src, -4.0), (dest, 4.0)]

    def test_second_transfer_merges_into_same_lot(self, conn, actor, ids, stock_lot):
        src = stock_lot("BF-RMP", "COLD", 10.0)
        first = transfer_stock(conn, actor, src, to_zone_id=ids("zone", "DISP"), quantity_kg=2.0)
        second = transfer_stock(conn, actor, src, to_zone_id=ids("zone", "DISP"), quantity_kg=3.0)
        assert first == second
        assert lot_kg(conn, first) == pytest.approx(5.0)

    def test_same_zone_rejected(self, conn, actor, ids, stock_lot):
        src = stock_lot("BF-RMP", "COLD", 10.0)
        with pytest.raises(ValidationError):
            transfer_stock(conn, actor, src, to_zone_id=ids("zone", "COLD"), quantity_kg=1.0)

    def test_more_than_lot_rejected_and_nothing_moves(self, conn, actor, ids, stock_lot):
        src = stock_lot("BF-RMP", "COLD", 10.0)
        with pytest.raises(InsufficientStock) as exc:
            transfer_stock(conn, actor, src, to_zone_id=ids("zone", "DISP"), quantity_kg=10.5)
        assert exc.value.available_kg == pytest.approx(10.0)
        assert lot_kg(conn, src) == pytest.approx(10.0)
        assert list_movements(conn, actor) == []


class TestAdjust:
    def test_reason_required(self, conn, actor, stock_lot):
        src = stock_lot("BF-MNC", "COLD", 8.0)
        with pytest.raises(ValidationError):
            adjust_stock(conn, actor, src, new_quantity_kg=7.0, reason="  ")

    def test_signed_movement(self, conn, actor, stock_lot):
        src = stock_lot("BF-MNC", "COLD", 8.0, cost_per_kg=5.0)
        assert adjust_stock(conn, actor, src, new_quantity_kg=7.25, reason="drip loss") == pytest.approx(-0.75)
        m = list_movements(conn, actor, stock_id=src)[0]
        assert m["movement_type"] == "adjustment"
        assert float(m["quantity_kg"]) == pytest.approx(-0.75)
        total_cost = q(conn, "SELECT total_cost FROM stock WHERE id=?", (src,))[0]["total_cost"]
        assert float(total_cost) == pytest.approx(36.25)


class TestFifo:
    def test_oldest_lot_first(self, conn, actor, ids, stock_lot):
        old = stock_lot("BF-MNC", "DISP", 2.0, cost_per_kg=3.0, received_at="2026-01-01T08:00:00+00:00")
        new = stock_lot("BF-MNC", "DISP", 5.0, cost_per_kg=5.0, received_at="2026-01-03T08:00:00+00:00")

        with transaction(conn):
            allocations = consume_fifo(
                conn, actor, product_id=ids("product", "BF-MNC"), zone_id=ids("zone", "DISP"), quantity_kg=3.0
            )

        assert [(a.stock_id, a.quantity_kg) for a in allocations] == [(old, 2.0), (new, 1.0)]
        assert lot_kg(conn, old) == 0.0
        assert lot_kg(conn, new) == pytest.approx(4.0)
        assert available_kg(conn, actor, product_id=ids("product", "BF-MNC")) == pytest.approx(4.0)

    def test_insufficient(self, conn, actor, ids, stock_lot):
        stock_lot("BF-MNC", "DISP", 2.0)
        with pytest.raises(InsufficientStock):
            with transaction(conn):
                consume_fifo(conn, actor, product_id=ids("product", "BF-MNC"), zone_id=ids("zone", "DISP"), quantity_kg=2.5)


class TestViews:
    def test_zone_and_aggregate(self, conn, actor, ids, stock_lot):
        stock_lot("BF-RMP", "COLD", 3.0, cost_per_kg=6.0)
        stock_lot("BF-RMP", "DISP", 1.0, cost_per_kg=6.0)
        stock_lot("BF-LIV", "COLD", 2.0, cost_per_kg=1.5)

        cold = {int(r["product_id"]): float(r["quantity_kg"]) for r in zone_stock_by_product(conn, actor, ids("zone", "COLD"))}
        assert cold == {ids("product", "BF-RMP"): 3.0, ids("product", "BF-LIV"): 2.0}

        agg = {r["sku"]: r for r in aggregated_stock(conn, actor)}
        assert float(agg["BF-RMP"]["total_quantity_kg"]) == pytest.approx(4.0)
        assert int(agg["BF-RMP"]["zones"]) == 2
        assert float(agg["BF-LIV"]["avg_cost_per_kg"]) == pytest.approx(1.5)

    def test_unknown_lot(self, conn, actor, ids):
        with pytest.raises(NotFound):
            transfer_stock(conn, actor, 999, to_zone_id=ids("zone", "DISP"), quantity_kg=1.0)


class TestUnits:
    @pytest.fixture
    def counted_lot(self, conn, actor, ids):
        return post_stock_lot(
            conn,
            actor,
            product_id=ids("product", "BF-RIB"),
            zone_id=ids("zone", "COLD"),
            quantity_kg=10.0,
            quantity_units=8,
            cost_per_kg=7.0,
            source_type="receipt",
        )

    def test_whole_lot_transfer_moves_every_unit(self, conn, actor, ids, counted_lot):
        dest = transfer_stock(conn, actor, counted_lot, to_zone_id=ids("zone", "DISP"), quantity_kg=10.0)
        assert lot_units(conn, counted_lot) == 0
        assert lot_units(conn, dest) == 8

    def test_partial_transfer_splits_units_pro_rata(self, conn, actor, ids, counted_lot):
        dest = transfer_stock(conn, actor, counted_lot, to_zone_id=ids("zone", "DISP"), quantity_kg=5.0)
        assert lot_units(conn, counted_lot) + lot_units(conn, dest) == 8
        assert lot_units(conn, dest) == 4

        moves = list_movements(conn, actor, stock_id=dest)
        assert int(moves[0]["quantity_units"]) == 4

    def test_explicit_units_are_kept(self, conn, actor, ids, counted_lot):
        dest = transfer_stock(conn, actor, counted_lot, to_zone_id=ids("zone", "DISP"), quantity_kg=2.0, quantity_units=3)
        assert lot_units(conn, dest) == 3
        assert lot_units(conn, counted_lot) == 5

    def test_fifo_takes_units_with_kilograms(self, conn, actor, ids, counted_lot):
        with transaction(conn):
            allocations = consume_fifo(
                conn, actor, product_id=ids("product", "BF-RIB"), zone_id=ids("zone", "COLD"), quantity_kg=2.5
            )
        assert allocations[0].quantity_units == 2
        assert lot_units(conn, counted_lot) == 6
