from __future__ import annotations

from typing import Optional

import pandas as pd

from meatledger.actor import Actor
from meatledger.db import q
from meatledger.services import costing
from meatledger.services.stock import EPS_KG
from meatledger.utils import iso_today, kg, money

PAYMENT_COLUMNS = ["payment_method", "amount_base", "count"]
DAY_COLUMNS = ["sale_date", "total_sales", "transaction_count", "total_weight_kg"]


def _range(date_from: Optional[str], date_to: Optional[str]) -> tuple[str, str]:
    date_to = date_to or iso_today()
    date_from = date_from or date_to
    if date_from > date_to:
        date_from, date_to = date_to, date_from
    return date_from, date_to


def _frame(rows, columns: list[str]) -> pd.DataFrame:
    return pd.DataFrame([dict(r) for r in rows], columns=columns)


def sales_summary(conn, actor: Actor, *, date_from: Optional[str] = None, date_to: Optional[str] = None) -> dict:
    """Completed (non-voided) sales between two ISO dates, inclusive."""
    date_from, date_to = _range(date_from, date_to)

    sales = _frame(
        q(
            conn,
            """
            SELECT id, sale_date, total_amount, total_cost, margin_amount, total_weight_kg
            FROM sales
            WHERE organization_id=? AND status='completed' AND sale_date BETWEEN ? AND ?
            """,
            (actor.organization_id, date_from, date_to),
        ),
        ["id", "sale_date", "total_amount", "total_cost", "margin_amount", "total_weight_kg"],
    )
    for col in ["total_amount", "total_cost", "margin_amount", "total_weight_kg"]:
        sales[col] = pd.to_numeric(sales[col], errors="coerce").fillna(0.0)

    total = float(sales["total_amount"].sum())
    count = int(len(sales))
    margin = float(sales["margin_amount"].sum())

    if sales.empty:
        by_day = pd.DataFrame(columns=DAY_COLUMNS)
    else:
        by_day = (
            sales.groupby("sale_date", as_index=False)
            .agg(
                total_sales=("total_amount", "sum"),
                transaction_count=("id", "count"),
                total_weight_kg=("total_weight_kg", "sum"),
            )
            .sort_values("sale_date")
            .reset_index(drop=True)
        )
        by_day["total_sales"] = by_day["total_sales"].round(2)
        by_day["total_weight_kg"] = by_day["total_weight_kg"].round(3)

    payments = _frame(
        q(
            conn,
            """
            SELECT sp.payment_method, sp.amount_base
            FROM sale_payments sp
            JOIN sales s ON s.id = sp.sale_id
            WHERE s.organization_id=? AND s.status='completed' AND sp.status='completed'
              AND s.sale_date BETWEEN ? AND ?
            """,
            (actor.organization_id, date_from, date_to),
        ),
        ["payment_method", "amount_base"],
    )
    if payments.empty:
        by_method = pd.DataFrame(columns=PAYMENT_COLUMNS)
    else:
        payments["amount_base"] = pd.to_numeric(payments["amount_base"], errors="coerce").fillna(0.0)
        by_method = (
            payments.groupby("payment_method", as_index=False)
            .agg(amount_base=("amount_base", "sum"), count=("amount_base", "count"))
            .sort_values(["amount_base", "payment_method"], ascending=[False, True])
            .reset_index(drop=True)
        )
        by_method["amount_base"] = by_method["amount_base"].round(2)

    return {
        "date_from": date_from,
        "date_to": date_to,
        "total_sales": money(total),
        "transaction_count": count,
        "average_sale": money(total / count) if count else 0.0,
        "total_weight_kg": kg(sales["total_weight_kg"].sum()),
        "total_cost": money(sales["total_cost"].sum()),
        "total_margin": money(margin),
        "margin_percent": costing.margin_percent(margin, total),
        "by_payment_method": by_method,
        "by_day": by_day,
    }


def stock_valuation(conn, actor: Actor) -> dict:
    """
    On-hand stock at cost, by zone and by category, plus products under their
    minimum level. Low stock is sorted most severe first (current/minimum
    ascending).
    """
    lots = _frame(
        q(
            conn,
            """
            SELECT z.name AS zone, COALESCE(c.name, 'Uncategorized') AS category,
                   s.quantity_kg, s.total_cost
            FROM stock s
            JOIN zones z ON z.id = s.zone_id
            JOIN products p ON p.id = s.product_id
            LEFT JOIN product_categories c ON c.id = p.category_id
            WHERE s.organization_id=? AND s.quantity_kg > ?
            """,
            (actor.organization_id, EPS_KG),
        ),
        ["zone", "category", "quantity_kg", "total_cost"],
    )
    for col in ["quantity_kg", "total_cost"]:
        lots[col] = pd.to_numeric(lots[col], errors="coerce").fillna(0.0)

    def _group(by: str) -> pd.DataFrame:
        if lots.empty:
            return pd.DataFrame(columns=[by, "quantity_kg", "value"])
        out = (
            lots.groupby(by, as_index=False)
            .agg(quantity_kg=("quantity_kg", "sum"), value=("total_cost", "sum"))
            .sort_values("value", ascending=False)
            .reset_index(drop=True)
        )
        out["quantity_kg"] = out["quantity_kg"].round(3)
        out["value"] = out["value"].round(2)
        return out

    levels = _frame(
        q(
            conn,
            """
            SELECT p.id AS product_id, p.sku, p.name AS product_name, p.minimum_stock_kg,
                   COALESCE(SUM(CASE WHEN s.quantity_kg > ? THEN s.quantity_kg ELSE 0 END), 0) AS current_kg
            FROM products p
            LEFT JOIN stock s ON s.product_id = p.id AND s.organization_id = p.organization_id
            WHERE p.organization_id=? AND p.is_active=1 AND p.minimum_stock_kg > 0
            GROUP BY p.id
            """,
            (EPS_KG, actor.organization_id),
        ),
        ["product_id", "sku", "product_name", "minimum_stock_kg", "current_kg"],
    )
    for col in ["minimum_stock_kg", "current_kg"]:
        levels[col] = pd.to_numeric(levels[col], errors="coerce").fillna(0.0)
    low = levels[levels["current_kg"] < levels["minimum_stock_kg"]].copy()
    low["ratio"] = low["current_kg"] / low["minimum_stock_kg"]
    low = low.sort_values(["ratio", "product_id"], kind="mergesort").reset_index(drop=True)

    return {
        "total_kg": kg(lots["quantity_kg"].sum()),
        "total_value": money(lots["total_cost"].sum()),
        "by_zone": _group("zone"),
        "by_category": _group("category"),
        "low_stock": low,
    }


def carcass_yield_report(
    conn,
    actor: Actor,
    *,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> pd.DataFrame:
    date_from, date_to = _range(date_from, date_to)
    rows = q(
        conn,
        """
        SELECT c.id, c.carcass_number, substr(c.received_at, 1, 10) AS received_date,
               c.status, c.weight_kg, c.cost_total, c.cost_per_kg,
               c.total_output_kg, c.waste_kg, c.total_revenue
        FROM carcasses c
        WHERE c.organization_id=? AND substr(c.received_at, 1, 10) BETWEEN ? AND ?
        ORDER BY c.received_at, c.id
        """,
        (actor.organization_id, date_from, date_to),
    )
    out = []
    for r in rows:
        revenue = float(r["total_revenue"])
        margin = revenue - float(r["cost_total"])
        out.append(
            {
                "carcass_id": int(r["id"]),
                "carcass_number": r["carcass_number"],
                "received_date": r["received_date"],
                "status": r["status"],
                "weight_kg": float(r["weight_kg"]),
                "total_output_kg": float(r["total_output_kg"]),
                "waste_kg": float(r["waste_kg"]),
                "yield_percent": round(
                    costing.yield_percent(float(r["total_output_kg"]), float(r["waste_kg"]), float(r["weight_kg"])), 2
                ),
                "cost_per_kg": money(r["cost_per_kg"]),
                "cost_total": money(r["cost_total"]),
                "total_revenue": money(revenue),
                "margin": money(margin),
                "margin_percent": round(costing.margin_percent(margin, revenue), 2),
            }
        )
    cols = [
        "carcass_id", "carcass_number", "received_date", "status", "weight_kg", "total_output_kg",
        "waste_kg", "yield_percent", "cost_per_kg", "cost_total", "total_revenue", "margin", "margin_percent",
    ]
    return pd.DataFrame(out, columns=cols)


def top_products(
    conn,
    actor: Actor,
    *,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 10,
) -> pd.DataFrame:
    """Best sellers by revenue (line totals); ties go to the lower product id."""
    date_from, date_to = _range(date_from, date_to)
    df = _frame(
        q(
            conn,
            """
            SELECT si.product_id, p.name AS product_name,
                   SUM(si.quantity_kg) AS quantity_kg,
                   SUM(si.line_total) AS revenue,
                   SUM(si.quantity_kg * si.unit_cost) AS cost
            FROM sale_items si
            JOIN sales s ON s.id = si.sale_id
            JOIN products p ON p.id = si.product_id
            WHERE s.organization_id=? AND s.status='completed' AND s.sale_date BETWEEN ? AND ?
            GROUP BY si.product_id
            """,
            (actor.organization_id, date_from, date_to),
        ),
        ["product_id", "product_name", "quantity_kg", "revenue", "cost"],
    )
    for col in ["quantity_kg", "revenue", "cost"]:
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)
    df["margin"] = (df["revenue"] - df["cost"]).round(2)
    df["revenue"] = df["revenue"].round(2)
    df["cost"] = df["cost"].round(2)
    df["quantity_kg"] = df["quantity_kg"].round(3)

    df = df.sort_values(["revenue", "product_id"], ascending=[False, True], kind="mergesort")
    return df.head(max(0, int(limit))).reset_index(drop=True)
