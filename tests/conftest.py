"""
Pytest fixtures for the ledger services.

Every test gets its own in-memory SQLite ledger seeded with the demo
organization's reference data (zones, currencies, grades, products,
variance reasons) and an Actor for that organization.
"""
from __future__ import annotations

import pytest

from meatledger.actor import Actor
from meatledger.db import connect, ensure_schema, q1
from meatledger.services.demo_data import default_actor
from meatledger.services.stock import post_stock_lot


@pytest.fixture
def conn():
    c = connect(":memory:")
    ensure_schema(c)
    yield c
    c.close()


@pytest.fixture
def actor(conn) -> Actor:
    return default_actor(conn)


@pytest.fixture
def ids(conn, actor):
    """Seeded ids by natural key: ids("zone", "COLD"), ids("product", "BF-RMP")."""
    tables = {
        "zone": ("zones", "code"),
        "product": ("products", "sku"),
        "grade": ("grades", "code"),
        "supplier": ("suppliers", "name"),
        "user": ("users", "full_name"),
    }

    def _lookup(kind: str, key: str) -> int:
        table, column = tables[kind]
        r = q1(conn, f"SELECT id FROM {table} WHERE organization_id=? AND {column}=?", (actor.organization_id, key))
        assert r is not None, f"{kind} {key!r} not seeded"
        return int(r["id"])

    return _lookup


@pytest.fixture
def stock_lot(conn, actor, ids):
    """Post a lot directly: stock_lot("BF-RMP", "DISP", 10.0, cost_per_kg=4.0)."""

    def _post(sku: str, zone_code: str, quantity_kg: float, *, cost_per_kg: float = 4.0, received_at=None) -> int:
        return post_stock_lot(
            conn,
            actor,
            product_id=ids("product", sku),
            zone_id=ids("zone", zone_code),
            quantity_kg=quantity_kg,
            cost_per_kg=cost_per_kg,
            source_type="receipt",
            received_at=received_at,
        )

    return _post


def lot_kg(conn, stock_id: int) -> float:
    return float(q1(conn, "SELECT quantity_kg FROM stock WHERE id=?", (int(stock_id),))["quantity_kg"])


def count_rows(conn, table: str) -> int:
    return int(q1(conn, f"SELECT COUNT(1) AS n FROM {table}")["n"])


def lot_units(conn, stock_id: int) -> int:
    return int(q1(conn, "SELECT quantity_units FROM stock WHERE id=?", (int(stock_id),))["quantity_units"])
