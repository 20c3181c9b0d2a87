"""
End-of-day reconciliation: one daily closing per organization per date,
with a stock count per active zone and a cash count per active currency.

    none -> in_progress -> completed   (completed is terminal; no reopen)

Expected figures are snapshotted when the closing starts, under the write
lock, so sales posted meanwhile cannot skew them.
"""
from __future__ import annotations

import logging
from typing import Optional

from meatledger.actor import Actor
from meatledger.db import q, q1, transaction, u, x
from meatledger.errors import Conflict, InvalidState, NotFound, Precondition, ValidationError
from meatledger.services import costing
from meatledger.services.refs import active_currencies, active_zones
from meatledger.services.stock import zone_stock_by_product
from meatledger.utils import clean_text, iso_now, iso_today, kg, money

logger = logging.getLogger(__name__)

EPS = 1e-6


# -------------------------
# Reads
# -------------------------

def get_closing(conn, actor: Actor, closing_id: int) -> dict:
    r = q1(
        conn,
        "SELECT * FROM daily_closings WHERE id=? AND organization_id=?",
        (int(closing_id), actor.organization_id),
    )
    if r is None:
        raise NotFound("Daily closing not found.")
    out = dict(r)
    out["stock_counts"] = [
        dict(sc)
        for sc in q(
            conn,
            """
            SELECT sc.*, z.name AS zone_name, z.code AS zone_code
            FROM stock_counts sc
            JOIN zones z ON z.id = sc.zone_id
            WHERE sc.daily_closing_id=?
            ORDER BY z.display_order, z.id
            """,
            (int(closing_id),),
        )
    ]
    out["cash_counts"] = [
        dict(cc)
        for cc in q(conn, "SELECT * FROM cash_counts WHERE daily_closing_id=? ORDER BY id", (int(closing_id),))
    ]
    return out


def get_closing_for_date(conn, actor: Actor, closing_date: Optional[str] = None) -> Optional[dict]:
    r = q1(
        conn,
        "SELECT id FROM daily_closings WHERE organization_id=? AND closing_date=?",
        (actor.organization_id, closing_date or iso_today()),
    )
    return get_closing(conn, actor, int(r["id"])) if r else None


def list_closings(conn, actor: Actor, *, status: Optional[str] = None, limit: int = 30):
    sql = "SELECT * FROM daily_closings WHERE organization_id=?"
    params: list = [actor.organization_id]
    if status:
        sql += " AND status=?"
        params.append(status)
    sql += " ORDER BY closing_date DESC LIMIT ?"
    params.append(int(limit))
    return q(conn, sql, params)


def list_stock_count_items(conn, actor: Actor, stock_count_id: int):
    _get_stock_count(conn, actor, stock_count_id)
    return q(
        conn,
        """
        SELECT i.*, p.name AS product_name, p.sku
        FROM stock_count_items i
        JOIN products p ON p.id = i.product_id
        WHERE i.stock_count_id=?
        ORDER BY p.name
        """,
        (int(stock_count_id),),
    )


def list_cash_denominations(conn, actor: Actor, cash_count_id: int):
    _get_cash_count(conn, actor, cash_count_id)
    return q(
        conn,
        "SELECT * FROM cash_denominations WHERE cash_count_id=? ORDER BY denomination DESC",
        (int(cash_count_id),),
    )


def variance_reasons(conn, actor: Actor, *, category: str = "stock"):
    return q(
        conn,
        """
        SELECT * FROM variance_reasons
        WHERE organization_id=? AND category=? AND is_active=1
        ORDER BY display_order, id
        """,
        (actor.organization_id, category),
    )


def _get_stock_count(conn, actor: Actor, stock_count_id: int):
    r = q1(
        conn,
        """
        SELECT sc.*, dc.status AS closing_status
        FROM stock_counts sc
        JOIN daily_closings dc ON dc.id = sc.daily_closing_id
        WHERE sc.id=? AND dc.organization_id=?
        """,
        (int(stock_count_id), actor.organization_id),
    )
    if r is None:
        raise NotFound("Stock count not found.")
    return r


def _get_cash_count(conn, actor: Actor, cash_count_id: int):
    r = q1(
        conn,
        """
        SELECT cc.*, dc.status AS closing_status
        FROM cash_counts cc
        JOIN daily_closings dc ON dc.id = cc.daily_closing_id
        WHERE cc.id=? AND dc.organization_id=?
        """,
        (int(cash_count_id), actor.organization_id),
    )
    if r is None:
        raise NotFound("Cash count not found.")
    return r


# -------------------------
# Start
# -------------------------

def _cash_sales(conn, actor: Actor, closing_date: str, currency_code: str) -> float:
    r = q1(
        conn,
        """
        SELECT COALESCE(SUM(sp.amount), 0) AS amt
        FROM sale_payments sp
        JOIN sales s ON s.id = sp.sale_id
        WHERE s.organization_id=? AND s.sale_date=? AND s.status='completed'
          AND sp.payment_method='cash' AND sp.currency_code=? AND sp.status='completed'
        """,
        (actor.organization_id, closing_date, currency_code),
    )
    return money(r["amt"])


def start_closing(
    conn,
    actor: Actor,
    closing_date: Optional[str] = None,
    *,
    opening_floats: Optional[dict[str, float]] = None,
) -> int:
    closing_date = closing_date or iso_today()
    opening_floats = {str(k).upper(): float(v) for k, v in (opening_floats or {}).items()}

    with transaction(conn):
        existing = q1(
            conn,
            "SELECT id, status FROM daily_closings WHERE organization_id=? AND closing_date=?",
            (actor.organization_id, closing_date),
        )
        if existing is not None:
            raise Conflict(f"A daily closing for {closing_date} already exists ({existing['status']}).")

        day = q1(
            conn,
            """
            SELECT COUNT(1) AS n,
                   COALESCE(SUM(total_amount), 0) AS total,
                   COALESCE(SUM(total_weight_kg), 0) AS weight
            FROM sales
            WHERE organization_id=? AND sale_date=? AND status='completed'
            """,
            (actor.organization_id, closing_date),
        )

        closing_id = x(
            conn,
            """
            INSERT INTO daily_closings (
                organization_id, closing_date, status, started_at, started_by,
                total_sales, transaction_count, total_weight_sold_kg
            ) VALUES (?, ?, 'in_progress', ?, ?, ?, ?, ?)
            """,
            (
                actor.organization_id,
                closing_date,
                iso_now(),
                actor.user_id,
                money(day["total"]),
                int(day["n"]),
                kg(day["weight"]),
            ),
        )

        expected_stock = 0.0
        for zone in active_zones(conn, actor):
            lines = zone_stock_by_product(conn, actor, int(zone["id"]))
            zone_kg = kg(sum(float(l["quantity_kg"]) for l in lines))
            expected_stock += zone_kg
            count_id = x(
                conn,
                """
                INSERT INTO stock_counts (daily_closing_id, zone_id, status, expected_total_kg, total_items)
                VALUES (?, ?, 'pending', ?, ?)
                """,
                (int(closing_id), int(zone["id"]), zone_kg, len(lines)),
            )
            for l in lines:
                x(
                    conn,
                    """
                    INSERT INTO stock_count_items (stock_count_id, product_id, expected_kg, expected_value)
                    VALUES (?, ?, ?, ?)
                    """,
                    (int(count_id), int(l["product_id"]), kg(l["quantity_kg"]), money(l["total_cost"])),
                )

        for cur in active_currencies(conn, actor):
            code = str(cur["code"])
            opening = money(opening_floats.get(code, float(cur["default_opening_float"])))
            cash = _cash_sales(conn, actor, closing_date, code)
            x(
                conn,
                """
                INSERT INTO cash_counts (daily_closing_id, currency_code, opening_float, cash_sales, expected_total)
                VALUES (?, ?, ?, ?, ?)
                """,
                (int(closing_id), code, opening, cash, money(opening + cash)),
            )

        x(conn, "UPDATE daily_closings SET expected_stock_kg=? WHERE id=?", (kg(expected_stock), int(closing_id)))

    logger.info("Started daily closing %s for %s", closing_id, closing_date)
    return int(closing_id)


# -------------------------
# Stock counts
# -------------------------

def _refresh_stock_count(conn, stock_count_id: int) -> None:
    agg = q1(
        conn,
        """
        SELECT
          COALESCE(SUM(CASE WHEN is_counted=1 THEN actual_kg ELSE 0 END), 0) AS actual_kg,
          COALESCE(SUM(CASE WHEN is_counted=1 THEN variance_kg ELSE 0 END), 0) AS variance_kg,
          COALESCE(SUM(CASE WHEN is_counted=1 THEN variance_value ELSE 0 END), 0) AS variance_value,
          COALESCE(SUM(is_counted), 0) AS counted,
          COALESCE(SUM(CASE WHEN is_counted=1 AND ABS(variance_kg) > ? THEN 1 ELSE 0 END), 0) AS with_variance
        FROM stock_count_items
        WHERE stock_count_id=?
        """,
        (EPS, int(stock_count_id)),
    )
    x(
        conn,
        """
        UPDATE stock_counts
        SET actual_total_kg=?, variance_kg=?, variance_value=?, items_counted=?, items_with_variance=?
        WHERE id=?
        """,
        (
            kg(agg["actual_kg"]),
            kg(agg["variance_kg"]),
            money(agg["variance_value"]),
            int(agg["counted"]),
            int(agg["with_variance"]),
            int(stock_count_id),
        ),
    )


def record_stock_count_item(
    conn,
    actor: Actor,
    item_id: int,
    *,
    actual_kg: float,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> dict:
    """
    Enter the counted weight for one product in a zone.

    A non-zero variance must carry one of the organization's stock variance
    reason codes.
    """
    try:
        actual = kg(actual_kg)
    except (TypeError, ValueError):
        raise ValidationError("Counted weight must be a number.")
    if actual < 0:
        raise ValidationError("Counted weight cannot be negative.")
    reason = clean_text(reason)

    with transaction(conn):
        item = q1(
            conn,
            """
            SELECT i.*, sc.status AS count_status, dc.status AS closing_status
            FROM stock_count_items i
            JOIN stock_counts sc ON sc.id = i.stock_count_id
            JOIN daily_closings dc ON dc.id = sc.daily_closing_id
            WHERE i.id=? AND dc.organization_id=?
            """,
            (int(item_id), actor.organization_id),
        )
        if item is None:
            raise NotFound("Stock count item not found.")
        if item["closing_status"] == "completed" or item["count_status"] == "completed":
            raise InvalidState("This stock count is already completed.")

        expected = float(item["expected_kg"])
        var_kg = kg(costing.variance(actual, expected))
        var_pct = costing.variance_percent(actual, expected)
        unit_value = costing.cost_per_kg(float(item["expected_value"]), expected)
        var_value = money(var_kg * unit_value)

        if abs(var_kg) > EPS:
            if not reason:
                raise ValidationError("A variance reason is required when the count differs from expected.")
            codes = {str(r["code"]) for r in variance_reasons(conn, actor, category="stock")}
            if reason not in codes:
                raise ValidationError(f"Unknown variance reason '{reason}'.")
        else:
            reason = None

        version = int(item["version"]) if expected_version is None else int(expected_version)
        n = u(
            conn,
            """
            UPDATE stock_count_items
            SET actual_kg=?, is_counted=1, variance_kg=?, variance_percent=?, variance_value=?,
                variance_reason=?, variance_notes=?, counted_at=?, counted_by=?, version=version + 1
            WHERE id=? AND version=?
            """,
            (
                actual,
                var_kg,
                var_pct,
                var_value,
                reason,
                clean_text(notes),
                iso_now(),
                actor.user_id,
                int(item_id),
                version,
            ),
        )
        if n == 0:
            raise Conflict("This count line was changed by someone else; reload and try again.")

        _refresh_stock_count(conn, int(item["stock_count_id"]))

    if abs(var_kg) > EPS:
        logger.warning("Stock count item %s: variance %+.3f kg (%s)", item_id, var_kg, reason)
    return {
        "variance_kg": var_kg,
        "variance_percent": var_pct,
        "variance_value": var_value,
        "version": version + 1,
    }


def complete_stock_count(conn, actor: Actor, stock_count_id: int) -> None:
    with transaction(conn):
        sc = _get_stock_count(conn, actor, stock_count_id)
        if sc["status"] == "completed":
            raise InvalidState("This stock count is already completed.")
        if sc["closing_status"] == "completed":
            raise InvalidState("The daily closing is already completed.")

        uncounted = q1(
            conn,
            "SELECT COUNT(1) AS n FROM stock_count_items WHERE stock_count_id=? AND is_counted=0",
            (int(stock_count_id),),
        )
        if int(uncounted["n"]) > 0:
            raise InvalidState(f"{int(uncounted['n'])} item(s) have not been counted yet.")

        _refresh_stock_count(conn, int(stock_count_id))
        x(
            conn,
            "UPDATE stock_counts SET status='completed', completed_at=?, completed_by=? WHERE id=?",
            (iso_now(), actor.user_id, int(stock_count_id)),
        )
    logger.info("Completed stock count %s", stock_count_id)


# -------------------------
# Cash counts
# -------------------------

def record_cash_count(
    conn,
    actor: Actor,
    cash_count_id: int,
    *,
    counted_total: float,
    denominations: Optional[dict[float, int]] = None,
    notes: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> float:
    """Enter the counted drawer total for one currency. Returns the variance."""
    counted = money(counted_total)
    if counted < 0:
        raise ValidationError("Counted cash cannot be negative.")

    breakdown = []
    if denominations:
        for denom, count in denominations.items():
            if float(denom) <= 0 or int(count) < 0:
                raise ValidationError("Denominations must be > 0 and counts >= 0.")
            if int(count) > 0:
                breakdown.append((float(denom), int(count), money(float(denom) * int(count))))
        if abs(sum(t for _, _, t in breakdown) - counted) > 0.005:
            raise ValidationError("Denomination breakdown does not add up to the counted total.")

    with transaction(conn):
        cc = _get_cash_count(conn, actor, cash_count_id)
        if cc["closing_status"] == "completed":
            raise InvalidState("The daily closing is already completed.")

        var = money(costing.variance(counted, float(cc["expected_total"])))
        version = int(cc["version"]) if expected_version is None else int(expected_version)
        n = u(
            conn,
            """
            UPDATE cash_counts
            SET counted_total=?, variance=?, counted_at=?, counted_by=?, notes=?, version=version + 1
            WHERE id=? AND version=?
            """,
            (counted, var, iso_now(), actor.user_id, clean_text(notes), int(cash_count_id), version),
        )
        if n == 0:
            raise Conflict("This cash count was changed by someone else; reload and try again.")

        if denominations is not None:
            x(conn, "DELETE FROM cash_denominations WHERE cash_count_id=?", (int(cash_count_id),))
            for denom, count, total in breakdown:
                x(
                    conn,
                    "INSERT INTO cash_denominations (cash_count_id, denomination, count, total) VALUES (?, ?, ?, ?)",
                    (int(cash_count_id), denom, count, total),
                )

    if abs(var) > 0.005:
        logger.warning("Cash count %s (%s): variance %+.2f", cash_count_id, cc["currency_code"], var)
    return var


# -------------------------
# Complete
# -------------------------

def complete_closing(conn, actor: Actor, closing_id: int, *, notes: Optional[str] = None) -> dict:
    with transaction(conn):
        closing = q1(
            conn,
            "SELECT * FROM daily_closings WHERE id=? AND organization_id=?",
            (int(closing_id), actor.organization_id),
        )
        if closing is None:
            raise NotFound("Daily closing not found.")
        if closing["status"] == "completed":
            raise InvalidState(f"The closing for {closing['closing_date']} is already completed.")

        open_counts = q1(
            conn,
            "SELECT COUNT(1) AS n FROM stock_counts WHERE daily_closing_id=? AND status != 'completed'",
            (int(closing_id),),
        )
        uncounted_cash = q1(
            conn,
            "SELECT COUNT(1) AS n FROM cash_counts WHERE daily_closing_id=? AND counted_at IS NULL",
            (int(closing_id),),
        )
        missing = []
        if int(open_counts["n"]):
            missing.append(f"{int(open_counts['n'])} stock count(s) not completed")
        if int(uncounted_cash["n"]):
            missing.append(f"{int(uncounted_cash['n'])} cash count(s) not counted")
        if missing:
            raise Precondition("Cannot complete closing: " + "; ".join(missing) + ".")

        totals = q1(
            conn,
            """
            SELECT COALESCE(SUM(expected_total_kg), 0) AS expected_kg,
                   COALESCE(SUM(actual_total_kg), 0) AS actual_kg,
                   COALESCE(SUM(variance_value), 0) AS variance_value
            FROM stock_counts
            WHERE daily_closing_id=?
            """,
            (int(closing_id),),
        )
        expected_kg = kg(totals["expected_kg"])
        actual_kg = kg(totals["actual_kg"])

        cash = q(
            conn,
            """
            SELECT cc.currency_code, cc.expected_total, cc.counted_total, cc.variance,
                   COALESCE(c.exchange_rate, 1) AS exchange_rate
            FROM cash_counts cc
            LEFT JOIN currencies c ON c.organization_id=? AND c.code = cc.currency_code
            WHERE cc.daily_closing_id=?
            ORDER BY cc.currency_code
            """,
            (actor.organization_id, int(closing_id)),
        )
        by_currency = [
            {
                "currency_code": str(r["currency_code"]),
                "expected_total": money(r["expected_total"]),
                "counted_total": money(r["counted_total"]),
                "variance": money(r["variance"]),
            }
            for r in cash
        ]

        def _base(column: str) -> float:
            return money(sum(float(r[column]) / (float(r["exchange_rate"]) or 1.0) for r in cash))

        summary = {
            "expected_stock_kg": expected_kg,
            "actual_stock_kg": actual_kg,
            "stock_variance_kg": kg(costing.variance(actual_kg, expected_kg)),
            "stock_variance_percent": costing.variance_percent(actual_kg, expected_kg),
            "stock_variance_value": money(totals["variance_value"]),
            "expected_cash_base": _base("expected_total"),
            "actual_cash_base": _base("counted_total"),
            "cash_variance_base": _base("variance"),
            "cash_by_currency": by_currency,
        }
        x(
            conn,
            """
            UPDATE daily_closings
            SET status='completed', completed_at=?, completed_by=?,
                expected_stock_kg=?, actual_stock_kg=?, stock_variance_kg=?,
                stock_variance_percent=?, stock_variance_value=?,
                expected_cash_base=?, actual_cash_base=?, cash_variance_base=?,
                notes=COALESCE(?, notes)
            WHERE id=?
            """,
            (
                iso_now(),
                actor.user_id,
                summary["expected_stock_kg"],
                summary["actual_stock_kg"],
                summary["stock_variance_kg"],
                summary["stock_variance_percent"],
                summary["stock_variance_value"],
                summary["expected_cash_base"],
                summary["actual_cash_base"],
                summary["cash_variance_base"],
                clean_text(notes),
                int(closing_id),
            ),
        )

    logger.info(
        "Completed daily closing %s: stock variance %+.3f kg (%.2f%%), cash variance %+.2f",
        closing["closing_date"],
        summary["stock_variance_kg"],
        summary["stock_variance_percent"],
        summary["cash_variance_base"],
    )
    return summary
