from __future__ import annotations

import logging
import math
import random
from datetime import datetime, timedelta, timezone

from meatledger.actor import Actor
from meatledger.db import ensure_schema, q, q1, transaction, x
from meatledger.services.carcasses import receive_carcass
from meatledger.services.cutting import add_cut, complete_session, start_session
from meatledger.services.sales import SaleItemInput, create_sale, pos_products, process_payment
from meatledger.services.stock import list_stock, transfer_stock

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION = "Demo Butchery"
DEFAULT_USERS = ["Store Manager", "Head Butcher", "Cashier"]
# code, name, type, default receiving, pos zone, order
DEFAULT_ZONES = [
    ("COLD", "Cold Room", "storage", 1, 0, 1),
    ("DISP", "Display Counter", "display", 0, 1, 2),
    ("FRZ", "Freezer", "storage", 0, 0, 3),
]
# code, name, units per 1 USD, default opening float
DEFAULT_CURRENCIES = [
    ("USD", "US Dollar", 1.0, 100.0),
    ("ZWG", "Zimbabwe Gold", 26.5, 500.0),
]
DEFAULT_SUPPLIERS = ["Highveld Livestock", "Valley Farms"]
DEFAULT_GRADES = [
    ("A", "Grade A (Super)", 72.0, 1),
    ("B", "Grade B (Choice)", 68.0, 2),
    ("C", "Grade C (Commercial)", 64.0, 3),
]
DEFAULT_CATEGORIES = ["Prime Cuts", "Mince & Sausage", "Bones & Offal"]
# sku, name, category, minimum stock kg, shelf life days, share of a carcass
DEFAULT_PRODUCTS = [
    ("BF-RMP", "Rump Steak", "Prime Cuts", 10.0, 5, 0.14),
    ("BF-TBN", "T-Bone", "Prime Cuts", 10.0, 5, 0.11),
    ("BF-BRS", "Brisket", "Prime Cuts", 5.0, 7, 0.12),
    ("BF-RIB", "Short Ribs", "Prime Cuts", 5.0, 7, 0.10),
    ("BF-MNC", "Beef Mince", "Mince & Sausage", 15.0, 3, 0.28),
    ("BF-WRS", "Boerewors", "Mince & Sausage", 10.0, 4, 0.06),
    ("BF-SUP", "Soup Bones", "Bones & Offal", 0.0, 10, 0.07),
    ("BF-LIV", "Liver", "Bones & Offal", 2.0, 3, 0.02),
]
DEFAULT_VARIANCE_REASONS = [
    ("SPOILAGE", "Spoilage / expired", "stock"),
    ("TRIM", "Trim and handling loss", "stock"),
    ("DRIP", "Drip loss / dehydration", "stock"),
    ("MISCOUNT", "Previous miscount", "stock"),
    ("THEFT", "Suspected theft", "stock"),
    ("OTHER", "Other (see notes)", "stock"),
    ("SHORT_CHANGE", "Change given in error", "cash"),
    ("FLOAT", "Opening float error", "cash"),
]

# Delete order respects foreign keys.
_TABLES = [
    "cash_denominations",
    "cash_counts",
    "stock_count_items",
    "stock_counts",
    "daily_closings",
    "sale_payments",
    "sale_item_allocations",
    "sale_items",
    "sales",
    "held_sales",
    "stock_movements",
    "stock",
    "cutting_session_cuts",
    "cutting_sessions",
    "carcasses",
    "variance_reasons",
    "products",
    "product_categories",
    "grades",
    "suppliers",
    "currencies",
    "zones",
    "users",
    "organizations",
]


def upsert_reference_data(conn, *, organization: str = DEFAULT_ORGANIZATION) -> int:
    """Create the organization and its lookup data if missing. Returns the organization id."""
    ensure_schema(conn)

    with transaction(conn):
        x(conn, "INSERT OR IGNORE INTO organizations(name, base_currency_code) VALUES (?, 'USD')", (organization,))
        org_id = int(q1(conn, "SELECT id FROM organizations WHERE name=?", (organization,))["id"])

        for name in DEFAULT_USERS:
            x(conn, "INSERT OR IGNORE INTO users(organization_id, full_name) VALUES (?, ?)", (org_id, name))

        for code, name, zone_type, receiving, pos, order in DEFAULT_ZONES:
            x(
                conn,
                """
                INSERT OR IGNORE INTO zones(organization_id, code, name, zone_type, is_default_receiving, is_pos_zone, display_order)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (org_id, code, name, zone_type, receiving, pos, order),
            )

        for code, name, rate, opening in DEFAULT_CURRENCIES:
            x(
                conn,
                """
                INSERT OR IGNORE INTO currencies(organization_id, code, name, exchange_rate, default_opening_float)
                VALUES (?, ?, ?, ?, ?)
                """,
                (org_id, code, name, rate, opening),
            )

        for name in DEFAULT_SUPPLIERS:
            x(conn, "INSERT OR IGNORE INTO suppliers(organization_id, name) VALUES (?, ?)", (org_id, name))

        for code, name, expected_yield, order in DEFAULT_GRADES:
            x(
                conn,
                """
                INSERT OR IGNORE INTO grades(organization_id, code, name, expected_yield_percent, display_order)
                VALUES (?, ?, ?, ?, ?)
                """,
                (org_id, code, name, expected_yield, order),
            )

        for name in DEFAULT_CATEGORIES:
            x(conn, "INSERT OR IGNORE INTO product_categories(organization_id, name) VALUES (?, ?)", (org_id, name))

        for sku, name, category, minimum, shelf_life, _share in DEFAULT_PRODUCTS:
            x(
                conn,
                """
                INSERT OR IGNORE INTO products(organization_id, category_id, sku, name, minimum_stock_kg, shelf_life_days)
                VALUES (?, (SELECT id FROM product_categories WHERE organization_id=? AND name=?), ?, ?, ?, ?)
                """,
                (org_id, org_id, category, sku, name, minimum, shelf_life),
            )

        for order, (code, name, category) in enumerate(DEFAULT_VARIANCE_REASONS, start=1):
            x(
                conn,
                """
                INSERT OR IGNORE INTO variance_reasons(organization_id, code, name, category, display_order)
                VALUES (?, ?, ?, ?, ?)
                """,
                (org_id, code, name, category, order),
            )

    return org_id


def default_actor(conn, *, user_name: str = "Store Manager") -> Actor:
    org_id = upsert_reference_data(conn)
    user = q1(conn, "SELECT id FROM users WHERE organization_id=? AND full_name=?", (org_id, user_name))
    return Actor(organization_id=org_id, user_id=int(user["id"]) if user else None)


def wipe_all(conn) -> None:
    # Keep schema, delete data.
    with transaction(conn):
        for t in _TABLES:
            x(conn, f"DELETE FROM {t};")
    logger.info("Wiped all ledger data")


def load_demo_data(conn, *, seed: int = 7) -> Actor:
    random.seed(seed)
    actor = default_actor(conn)

    def _id(table: str, column: str, value: str) -> int:
        return int(q1(conn, f"SELECT id FROM {table} WHERE organization_id=? AND {column}=?", (actor.organization_id, value))["id"])

    cold = _id("zones", "code", "COLD")
    display = _id("zones", "code", "DISP")
    butcher = _id("users", "full_name", "Head Butcher")
    suppliers = q(conn, "SELECT id FROM suppliers WHERE organization_id=? ORDER BY id", (actor.organization_id,))
    grades = q(conn, "SELECT id FROM grades WHERE organization_id=? ORDER BY display_order", (actor.organization_id,))
    products = {sku: _id("products", "sku", sku) for sku, *_ in DEFAULT_PRODUCTS}

    # Three carcasses over the last few days; the newest stays pending.
    now = datetime.now(timezone.utc).replace(microsecond=0)
    carcass_ids = []
    for i in range(3):
        weight = round(random.uniform(240, 300), 1)
        carcass_ids.append(
            receive_carcass(
                conn,
                actor,
                weight_kg=weight,
                cost_total=round(weight * random.uniform(2.0, 2.4), 2),
                supplier_id=int(random.choice(suppliers)["id"]),
                grade_id=int(random.choice(grades)["id"]),
                destination_zone_id=cold,
                live_weight_kg=round(weight / random.uniform(0.55, 0.6), 1),
                received_at=(now - timedelta(days=2 - i)).isoformat(),
                notes="Demo carcass",
            )
        )

    for carcass_id in carcass_ids[:2]:
        weight = float(q1(conn, "SELECT weight_kg FROM carcasses WHERE id=?", (carcass_id,))["weight_kg"])
        session_id = start_session(conn, actor, carcass_id, butcher_id=butcher, station="Block 1")
        for sku, _name, _cat, _min, _life, share in DEFAULT_PRODUCTS:
            add_cut(
                conn,
                actor,
                session_id,
                product_id=products[sku],
                weight_kg=round(weight * share * random.uniform(0.9, 1.0), 3),
            )
        complete_session(conn, actor, session_id, final_waste_kg=round(weight * random.uniform(0.06, 0.09), 3))

    # Stock the display counter.
    for sku in ["BF-RMP", "BF-TBN", "BF-MNC", "BF-WRS", "BF-BRS"]:
        for lot in list_stock(conn, actor, zone_id=cold, product_id=products[sku])[:1]:
            transfer_stock(
                conn,
                actor,
                int(lot["id"]),
                to_zone_id=display,
                quantity_kg=min(12.0, float(lot["quantity_kg"])),
                reason="Counter replenishment",
            )

    # A handful of counter sales, paid in cash.
    for _ in range(6):
        menu = [p for p in pos_products(conn, actor, zone_id=display) if p["available_kg"] > 3]
        if not menu:
            break
        items = [
            SaleItemInput(
                product_id=p["product_id"],
                quantity_kg=round(random.uniform(0.5, 2.5), 3),
                unit_price=p["price"],
            )
            for p in random.sample(menu, k=min(len(menu), random.randint(1, 2)))
        ]
        sale_id = create_sale(conn, actor, zone_id=display, items=items, customer_name="Walk-in")
        total = float(q1(conn, "SELECT total_amount FROM sales WHERE id=?", (sale_id,))["total_amount"])
        process_payment(
            conn,
            actor,
            sale_id,
            method="cash",
            currency_code="USD",
            amount=total,
            tendered=float(math.ceil(total / 5.0) * 5),
        )

    logger.info("Loaded demo data (seed=%s)", seed)
    return actor
