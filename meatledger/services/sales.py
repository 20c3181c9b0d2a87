from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from meatledger.actor import Actor
from meatledger.db import q, q1, transaction, u, x
from meatledger.errors import Conflict, InvalidState, NotFound, ValidationError
from meatledger.services import costing
from meatledger.services.refs import currency_rate, next_document_number, require_product, require_zone
from meatledger.services.stock import EPS_KG, consume_fifo, restore_allocation
from meatledger.utils import clean_text, iso_now, iso_today, kg, money

logger = logging.getLogger(__name__)

DEFAULT_TAX_RATE_PERCENT = 15.0
# Suggested shelf price when no explicit price list exists.
DEFAULT_MARKUP = 1.5
FALLBACK_PRICE = 10.0
PAYMENT_METHODS = ("cash", "card", "mobile", "bank_transfer", "account")
_CENT = 0.005


@dataclass
class SaleItemInput:
    product_id: int
    quantity_kg: float
    unit_price: float
    stock_id: Optional[int] = None
    line_discount: float = 0.0
    tax_rate_percent: Optional[float] = None


@dataclass
class PaymentResult:
    payment_id: int
    amount_base: float
    change_amount: Optional[float]
    amount_paid: float
    balance_due: float
    payment_status: str


def _as_item(raw) -> SaleItemInput:
    if isinstance(raw, SaleItemInput):
        return raw
    if isinstance(raw, dict):
        return SaleItemInput(**raw)
    raise ValidationError("Sale items must be SaleItemInput or dict.")


def _validate_items(items) -> list[SaleItemInput]:
    if not items:
        raise ValidationError("A sale needs at least one item.")
    out = []
    for raw in items:
        it = _as_item(raw)
        try:
            qty = float(it.quantity_kg)
            price = float(it.unit_price)
            disc = float(it.line_discount or 0.0)
        except (TypeError, ValueError):
            raise ValidationError("Quantity, price and discount must be numbers.")
        if qty <= 0:
            raise ValidationError("Item quantity (kg) must be > 0.")
        if price < 0:
            raise ValidationError("Unit price cannot be negative.")
        if disc < 0 or disc > qty * price + _CENT:
            raise ValidationError("Line discount must be between 0 and the line subtotal.")
        out.append(it)
    return out


def _tax_rate_for(item: SaleItemInput, product, default_rate: float) -> float:
    if item.tax_rate_percent is not None:
        return float(item.tax_rate_percent)
    if product["tax_rate_percent"] is not None:
        return float(product["tax_rate_percent"])
    return float(default_rate)


def get_sale(conn, actor: Actor, sale_id: int):
    r = q1(conn, "SELECT * FROM sales WHERE id=? AND organization_id=?", (int(sale_id), actor.organization_id))
    if r is None:
        raise NotFound("Sale not found.")
    return r


def list_sale_items(conn, actor: Actor, sale_id: int):
    get_sale(conn, actor, sale_id)
    return q(
        conn,
        """
        SELECT si.*, p.name AS product_name, p.sku
        FROM sale_items si
        JOIN products p ON p.id = si.product_id
        WHERE si.sale_id=?
        ORDER BY si.id
        """,
        (int(sale_id),),
    )


def list_payments(conn, actor: Actor, sale_id: int):
    get_sale(conn, actor, sale_id)
    return q(conn, "SELECT * FROM sale_payments WHERE sale_id=? ORDER BY id", (int(sale_id),))


def list_sales(conn, actor: Actor, *, sale_date: Optional[str] = None, status: Optional[str] = None, limit: int = 50):
    sql = """
        SELECT s.*, z.name AS zone_name, u.full_name AS cashier
        FROM sales s
        JOIN zones z ON z.id = s.zone_id
        LEFT JOIN users u ON u.id = s.cashier_id
        WHERE s.organization_id=?
    """
    params: list = [actor.organization_id]
    if sale_date:
        sql += " AND s.sale_date=?"
        params.append(sale_date)
    if status:
        sql += " AND s.status=?"
        params.append(status)
    sql += " ORDER BY s.sold_at DESC, s.id DESC LIMIT ?"
    params.append(int(limit))
    return q(conn, sql, params)


def _apply_carcass_revenue(conn, carcass_id: int, delta: float) -> None:
    c = q1(conn, "SELECT cost_total, total_revenue FROM carcasses WHERE id=?", (int(carcass_id),))
    if c is None:
        return
    revenue = money(float(c["total_revenue"]) + float(delta))
    margin = money(revenue - float(c["cost_total"]))
    x(
        conn,
        "UPDATE carcasses SET total_revenue=?, realized_margin=?, margin_percentage=? WHERE id=?",
        (revenue, margin, costing.margin_percent(margin, revenue), int(carcass_id)),
    )


def create_sale(
    conn,
    actor: Actor,
    *,
    zone_id: int,
    items: list,
    discount_amount: float = 0.0,
    discount_reason: Optional[str] = None,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    notes: Optional[str] = None,
    default_tax_rate_percent: float = DEFAULT_TAX_RATE_PERCENT,
) -> int:
    """
    Record a completed sale and take its weight out of stock (FIFO within the zone).

    Sale, items, lot decrements and carcass revenue commit as one unit.
    Raises InsufficientStock if any line asks for more than the zone holds.
    """
    lines_in = _validate_items(items)
    if float(discount_amount or 0) < 0:
        raise ValidationError("Discount cannot be negative.")

    with transaction(conn):
        require_zone(conn, actor, zone_id)

        priced = []
        for it in lines_in:
            product = require_product(conn, actor, it.product_id)
            if not int(product["can_be_sold"]) or not int(product["is_active"]):
                raise ValidationError(f"Product '{product['name']}' cannot be sold.")
            amounts = costing.line_amounts(
                it.quantity_kg,
                it.unit_price,
                _tax_rate_for(it, product, default_tax_rate_percent),
                it.line_discount,
            )
            priced.append((it, amounts))

        subtotal = money(sum(a.line_total for _, a in priced))
        discount = money(discount_amount or 0.0)
        if discount > subtotal + _CENT:
            raise ValidationError("Discount exceeds the sale subtotal.")
        tax = money(sum(a.tax_amount for _, a in priced))
        total = money(subtotal - discount + tax)
        weight = kg(sum(float(it.quantity_kg) for it, _ in priced))
        # nothing to collect on a zero-total sale
        payment_status = "paid" if total <= _CENT else "unpaid"

        sold_at = iso_now()
        sale_date = iso_today()
        number = next_document_number(conn, actor, table="sales", column="sale_number", prefix="SAL", on_date=sale_date)

        sale_id = x(
            conn,
            """
            INSERT INTO sales (
                organization_id, sale_number, sale_date, sold_at, cashier_id, zone_id,
                subtotal, discount_amount, discount_reason, tax_amount, total_amount, total_weight_kg,
                payment_status, status, customer_name, customer_phone, notes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'completed', ?, ?, ?)
            """,
            (
                actor.organization_id,
                number,
                sale_date,
                sold_at,
                actor.user_id,
                int(zone_id),
                subtotal,
                discount,
                clean_text(discount_reason),
                tax,
                total,
                weight,
                payment_status,
                clean_text(customer_name),
                clean_text(customer_phone),
                clean_text(notes),
            ),
        )

        total_cost = 0.0
        for it, a in priced:
            item_id = x(
                conn,
                """
                INSERT INTO sale_items (
                    sale_id, product_id, quantity_kg, unit_price, line_subtotal, line_discount,
                    line_total, tax_rate_percent, tax_amount, unit_cost
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    int(sale_id),
                    int(it.product_id),
                    kg(it.quantity_kg),
                    float(it.unit_price),
                    a.line_subtotal,
                    a.line_discount,
                    a.line_total,
                    a.tax_rate_percent,
                    a.tax_amount,
                ),
            )

            allocations = consume_fifo(
                conn,
                actor,
                product_id=int(it.product_id),
                zone_id=int(zone_id),
                quantity_kg=float(it.quantity_kg),
                stock_id=it.stock_id,
                reference_type="sale",
                reference_id=int(sale_id),
            )
            unit_cost = costing.weighted_cost_per_kg((al.quantity_kg, al.cost_per_kg) for al in allocations)
            x(conn, "UPDATE sale_items SET unit_cost=? WHERE id=?", (unit_cost, int(item_id)))
            total_cost += float(it.quantity_kg) * unit_cost

            for al in allocations:
                revenue = money(a.line_total * al.quantity_kg / float(it.quantity_kg))
                x(
                    conn,
                    """
                    INSERT INTO sale_item_allocations (
                        sale_item_id, stock_id, quantity_kg, quantity_units, cost_per_kg, carcass_id, revenue
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (int(item_id), al.stock_id, al.quantity_kg, al.quantity_units, al.cost_per_kg, al.carcass_id, revenue),
                )
                if al.carcass_id is not None:
                    _apply_carcass_revenue(conn, int(al.carcass_id), revenue)

        total_cost = money(total_cost)
        margin = money(total - total_cost)
        x(
            conn,
            "UPDATE sales SET total_cost=?, margin_amount=?, margin_percent=? WHERE id=?",
            (total_cost, margin, costing.margin_percent(margin, total), int(sale_id)),
        )

    logger.info("Sale %s: %d line(s), %.3f kg, total %.2f", number, len(priced), weight, total)
    return int(sale_id)


def process_payment(
    conn,
    actor: Actor,
    sale_id: int,
    *,
    method: str,
    currency_code: str,
    amount: float,
    tendered: Optional[float] = None,
    exchange_rate: Optional[float] = None,
    reference: Optional[str] = None,
) -> PaymentResult:
    """
    Apply one tender to a sale. Several tenders (split payment) are allowed,
    but together they may not exceed the sale total.
    """
    method = str(method or "").strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method '{method}'.")
    if float(amount) <= 0:
        raise ValidationError("Payment amount must be > 0.")
    if tendered is not None and float(tendered) < float(amount) - _CENT:
        raise ValidationError("Tendered amount is less than the payment amount.")
    code = str(currency_code or "").strip().upper()

    with transaction(conn):
        sale = get_sale(conn, actor, sale_id)
        if sale["status"] == "voided":
            raise InvalidState(f"Sale {sale['sale_number']} is voided.")

        rate = float(exchange_rate) if exchange_rate is not None else currency_rate(conn, actor, code)
        if rate <= 0:
            raise ValidationError("Exchange rate must be > 0.")

        amount_base = money(float(amount) / rate)
        due = money(float(sale["total_amount"]) - float(sale["amount_paid"]))
        if due <= 0:
            raise InvalidState(f"Sale {sale['sale_number']} is already paid in full.")
        if amount_base > due + _CENT:
            raise ValidationError(f"Payment {amount_base:.2f} exceeds the balance due {due:.2f}.")

        change = money(float(tendered) - float(amount)) if tendered is not None else None

        payment_id = x(
            conn,
            """
            INSERT INTO sale_payments (
                sale_id, payment_method, currency_code, amount, exchange_rate, amount_base,
                tendered, change_amount, reference, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'completed', ?)
            """,
            (
                int(sale_id),
                method,
                code,
                money(amount),
                rate,
                amount_base,
                float(tendered) if tendered is not None else None,
                change,
                clean_text(reference),
                iso_now(),
            ),
        )

        paid = money(float(sale["amount_paid"]) + amount_base)
        balance_due = money(max(0.0, float(sale["total_amount"]) - paid))
        status = "paid" if balance_due <= _CENT else "partial"
        change_base = money((change or 0.0) / rate)
        x(
            conn,
            "UPDATE sales SET amount_paid=?, change_given=change_given + ?, payment_status=? WHERE id=?",
            (paid, change_base, status, int(sale_id)),
        )

    return PaymentResult(
        payment_id=int(payment_id),
        amount_base=amount_base,
        change_amount=change,
        amount_paid=paid,
        balance_due=balance_due,
        payment_status=status,
    )


def void_sale(conn, actor: Actor, sale_id: int, *, reason: str) -> None:
    """Void a sale and put every consumed kilogram back into the lot it came from."""
    reason = clean_text(reason)
    if not reason:
        raise ValidationError("A void reason is required.")

    with transaction(conn):
        sale = get_sale(conn, actor, sale_id)
        if sale["status"] == "voided":
            raise InvalidState(f"Sale {sale['sale_number']} is already voided.")

        allocations = q(
            conn,
            """
            SELECT a.*
            FROM sale_item_allocations a
            JOIN sale_items si ON si.id = a.sale_item_id
            WHERE si.sale_id=?
            ORDER BY a.id
            """,
            (int(sale_id),),
        )
        for al in allocations:
            restore_allocation(
                conn,
                actor,
                stock_id=int(al["stock_id"]),
                quantity_kg=float(al["quantity_kg"]),
                quantity_units=int(al["quantity_units"]),
                reason=f"Void {sale['sale_number']}: {reason}",
                reference_type="sale",
                reference_id=int(sale_id),
            )
            if al["carcass_id"] is not None:
                _apply_carcass_revenue(conn, int(al["carcass_id"]), -float(al["revenue"]))

        x(
            conn,
            "UPDATE sales SET status='voided', void_reason=?, voided_at=?, voided_by=? WHERE id=?",
            (reason, iso_now(), actor.user_id, int(sale_id)),
        )

    logger.info("Voided sale %s (%s); restored %d allocation(s)", sale["sale_number"], reason, len(allocations))


# -------------------------
# Held (parked) carts
# -------------------------

def hold_sale(
    conn,
    actor: Actor,
    *,
    zone_id: int,
    items: list,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    lines = _validate_items(items)
    require_zone(conn, actor, zone_id)

    subtotal = money(sum(float(it.quantity_kg) * float(it.unit_price) - float(it.line_discount or 0) for it in lines))
    weight = kg(sum(float(it.quantity_kg) for it in lines))
    held_id = x(
        conn,
        """
        INSERT INTO held_sales (
            organization_id, zone_id, items, subtotal, total_weight_kg,
            customer_name, customer_phone, notes, status, held_by, held_at, version
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'held', ?, ?, 1)
        """,
        (
            actor.organization_id,
            int(zone_id),
            json.dumps([asdict(it) for it in lines]),
            subtotal,
            weight,
            clean_text(customer_name),
            clean_text(customer_phone),
            clean_text(notes),
            actor.user_id,
            iso_now(),
        ),
    )
    return int(held_id)


def list_held_sales(conn, actor: Actor):
    return q(
        conn,
        """
        SELECT h.*, z.name AS zone_name, u.full_name AS held_by_name
        FROM held_sales h
        JOIN zones z ON z.id = h.zone_id
        LEFT JOIN users u ON u.id = h.held_by
        WHERE h.organization_id=? AND h.status='held'
        ORDER BY h.held_at DESC, h.id DESC
        """,
        (actor.organization_id,),
    )


def recall_held_sale(conn, actor: Actor, held_sale_id: int, *, expected_version: Optional[int] = None) -> dict:
    """
    Mark a held cart as recalled and hand back its contents.

    Only one caller can win: the update is conditional on status and version.
    """
    held = q1(
        conn,
        "SELECT * FROM held_sales WHERE id=? AND organization_id=?",
        (int(held_sale_id), actor.organization_id),
    )
    if held is None:
        raise NotFound("Held sale not found.")
    if held["status"] != "held":
        raise InvalidState("This sale has already been recalled.")

    version = int(held["version"]) if expected_version is None else int(expected_version)
    n = u(
        conn,
        """
        UPDATE held_sales
        SET status='recalled', recalled_at=?, recalled_by=?, version=version + 1
        WHERE id=? AND status='held' AND version=?
        """,
        (iso_now(), actor.user_id, int(held_sale_id), version),
    )
    if n == 0:
        current = q1(conn, "SELECT status FROM held_sales WHERE id=?", (int(held_sale_id),))
        if current is not None and current["status"] != "held":
            raise InvalidState("This sale has already been recalled.")
        raise Conflict("Held sale was changed by someone else; reload and try again.")

    return {
        "held_sale_id": int(held["id"]),
        "zone_id": int(held["zone_id"]),
        "items": [SaleItemInput(**d) for d in json.loads(held["items"])],
        "subtotal": float(held["subtotal"]),
        "total_weight_kg": float(held["total_weight_kg"]),
        "customer_name": held["customer_name"],
        "customer_phone": held["customer_phone"],
        "notes": held["notes"],
    }


def pos_products(conn, actor: Actor, *, zone_id: Optional[int] = None, search: Optional[str] = None) -> list[dict]:
    """Sellable products with on-hand kg, average cost and a suggested price."""
    stock_filter = "AND s.zone_id=?" if zone_id is not None else ""
    sql = f"""
        SELECT
          p.id, p.name, p.sku, p.category_id, p.tax_rate_percent,
          COALESCE(SUM(s.quantity_kg), 0) AS available_kg,
          COALESCE(SUM(s.total_cost), 0) AS stock_cost
        FROM products p
        LEFT JOIN stock s
          ON s.product_id = p.id AND s.organization_id = p.organization_id
         AND s.quantity_kg > ? {stock_filter}
        WHERE p.organization_id=? AND p.is_active=1 AND p.can_be_sold=1
    """
    params: list = [EPS_KG]
    if zone_id is not None:
        params.append(int(zone_id))
    params.append(actor.organization_id)
    if search:
        sql += " AND (p.name LIKE ? OR p.sku LIKE ?)"
        params.extend([f"%{search.strip()}%"] * 2)
    sql += " GROUP BY p.id ORDER BY p.name"

    out = []
    for r in q(conn, sql, params):
        avail = float(r["available_kg"])
        avg_cost = costing.cost_per_kg(float(r["stock_cost"]), avail)
        out.append(
            {
                "product_id": int(r["id"]),
                "name": str(r["name"]),
                "sku": str(r["sku"]),
                "category_id": r["category_id"],
                "tax_rate_percent": r["tax_rate_percent"],
                "available_kg": kg(avail),
                "avg_cost": avg_cost,
                "price": money(avg_cost * DEFAULT_MARKUP) if avg_cost > 0 else FALLBACK_PRICE,
            }
        )
    return out
