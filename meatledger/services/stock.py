from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from meatledger.actor import Actor
from meatledger.db import q, q1, transaction, x
from meatledger.errors import InsufficientStock, NotFound, ValidationError
from meatledger.services.refs import require_product, require_zone
from meatledger.utils import clean_text, iso_now, kg, money

logger = logging.getLogger(__name__)

EPS_KG = 1e-6
MOVEMENT_TYPES = ("transfer", "adjustment", "sale")


@dataclass
class Allocation:
    stock_id: int
    quantity_kg: float
    cost_per_kg: float
    carcass_id: Optional[int]
    quantity_units: int = 0


def get_lot(conn, actor: Actor, stock_id: int):
    r = q1(conn, "SELECT * FROM stock WHERE id=? AND organization_id=?", (int(stock_id), actor.organization_id))
    if r is None:
        raise NotFound("Stock item not found.")
    return r


def _expiry_for(product, received_at: str) -> Optional[str]:
    days = product["shelf_life_days"]
    if days is None:
        return None
    received = datetime.fromisoformat(received_at)
    return (received + timedelta(days=int(days))).date().isoformat()


def record_movement(
    conn,
    actor: Actor,
    *,
    stock_id: Optional[int],
    movement_type: str,
    quantity_kg: float,
    quantity_units: int = 0,
    from_zone_id: Optional[int] = None,
    to_zone_id: Optional[int] = None,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
) -> int:
    """Append to the audit trail. quantity_kg is the signed change to the lot."""
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type '{movement_type}'.")
    return x(
        conn,
        """
        INSERT INTO stock_movements (
            organization_id, stock_id, movement_type, quantity_kg, quantity_units,
            from_zone_id, to_zone_id, reason, reference_type, reference_id,
            performed_by, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            actor.organization_id,
            stock_id,
            movement_type,
            float(quantity_kg),
            int(quantity_units),
            from_zone_id,
            to_zone_id,
            clean_text(reason),
            reference_type,
            reference_id,
            actor.user_id,
            iso_now(),
        ),
    )


def units_for(lot, take_kg: float) -> int:
    """Units that go with take_kg of a lot: all of them for the whole lot, else pro rata."""
    lot_kg = float(lot["quantity_kg"])
    lot_units = int(lot["quantity_units"])
    if lot_units <= 0 or lot_kg <= EPS_KG:
        return 0
    if float(take_kg) >= lot_kg - EPS_KG:
        return lot_units
    return min(lot_units, int(round(lot_units * float(take_kg) / lot_kg)))


def _set_lot_quantity(conn, lot, new_kg: float, new_units: int) -> None:
    new_kg = max(0.0, kg(new_kg))
    new_units = max(0, int(new_units))
    if new_kg <= EPS_KG:
        new_units = 0
    x(
        conn,
        "UPDATE stock SET quantity_kg=?, quantity_units=?, total_cost=? WHERE id=?",
        (new_kg, new_units, money(new_kg * float(lot["cost_per_kg"])), int(lot["id"])),
    )


def post_stock_lot(
    conn,
    actor: Actor,
    *,
    product_id: int,
    zone_id: int,
    quantity_kg: float,
    cost_per_kg: float,
    source_type: str,
    quantity_units: int = 0,
    grade_id: Optional[int] = None,
    batch_number: Optional[str] = None,
    source_id: Optional[int] = None,
    carcass_id: Optional[int] = None,
    received_at: Optional[str] = None,
    expires_at: Optional[str] = None,
) -> int:
    if float(quantity_kg) <= 0:
        raise ValidationError("Stock quantity (kg) must be > 0.")
    if float(cost_per_kg) < 0:
        raise ValidationError("Cost per kg cannot be negative.")

    product = require_product(conn, actor, product_id)
    require_zone(conn, actor, zone_id)

    received_at = received_at or iso_now()
    if expires_at is None:
        expires_at = _expiry_for(product, received_at)

    qty = kg(quantity_kg)
    return x(
        conn,
        """
        INSERT INTO stock (
            organization_id, product_id, zone_id, grade_id,
            quantity_kg, quantity_units, cost_per_kg, total_cost,
            batch_number, source_type, source_id, carcass_id, received_at, expires_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            actor.organization_id,
            int(product_id),
            int(zone_id),
            grade_id,
            qty,
            int(quantity_units),
            float(cost_per_kg),
            money(qty * float(cost_per_kg)),
            batch_number,
            source_type,
            source_id,
            carcass_id,
            received_at,
            expires_at,
        ),
    )


def transfer_stock(
    conn,
    actor: Actor,
    stock_id: int,
    *,
    to_zone_id: int,
    quantity_kg: float,
    quantity_units: Optional[int] = None,
    reason: Optional[str] = None,
) -> int:
    """
    Move part (or all) of a lot into another zone. Returns the destination lot id.

    The moved portion merges into an existing lot of the same product, grade,
    batch number and cost in the destination zone, otherwise a new lot is split off.
    Units follow the kilograms pro rata unless given; moving the whole lot
    always moves all of its units.
    """
    qty = float(quantity_kg)
    if qty <= 0:
        raise ValidationError("Transfer quantity (kg) must be > 0.")
    if quantity_units is not None and int(quantity_units) < 0:
        raise ValidationError("Transfer units cannot be negative.")

    with transaction(conn):
        lot = get_lot(conn, actor, stock_id)
        require_zone(conn, actor, to_zone_id)
        from_zone_id = int(lot["zone_id"])
        if from_zone_id == int(to_zone_id):
            raise ValidationError("Source and destination zone are the same.")
        if qty > float(lot["quantity_kg"]) + EPS_KG:
            raise InsufficientStock(
                f"Only {float(lot['quantity_kg']):.3f} kg available in this lot.",
                requested_kg=qty,
                available_kg=float(lot["quantity_kg"]),
            )
        whole_lot = qty >= float(lot["quantity_kg"]) - EPS_KG
        if quantity_units is None or whole_lot:
            units = units_for(lot, qty)
        else:
            units = int(quantity_units)
        if quantity_units is not None and int(quantity_units) > int(lot["quantity_units"]):
            raise InsufficientStock(f"Only {int(lot['quantity_units'])} units available in this lot.")

        _set_lot_quantity(conn, lot, float(lot["quantity_kg"]) - qty, int(lot["quantity_units"]) - units)

        dest = q1(
            conn,
            """
            SELECT * FROM stock
            WHERE organization_id=? AND product_id=? AND zone_id=?
              AND COALESCE(grade_id, 0)=COALESCE(?, 0)
              AND COALESCE(batch_number, '')=COALESCE(?, '')
              AND ABS(cost_per_kg - ?) < 1e-9
            ORDER BY id
            LIMIT 1
            """,
            (
                actor.organization_id,
                int(lot["product_id"]),
                int(to_zone_id),
                lot["grade_id"],
                lot["batch_number"],
                float(lot["cost_per_kg"]),
            ),
        )
        if dest is not None:
            dest_id = int(dest["id"])
            _set_lot_quantity(conn, dest, float(dest["quantity_kg"]) + qty, int(dest["quantity_units"]) + units)
        else:
            dest_id = post_stock_lot(
                conn,
                actor,
                product_id=int(lot["product_id"]),
                zone_id=int(to_zone_id),
                quantity_kg=qty,
                quantity_units=units,
                cost_per_kg=float(lot["cost_per_kg"]),
                grade_id=lot["grade_id"],
                batch_number=lot["batch_number"],
                source_type="transfer",
                source_id=int(lot["id"]),
                carcass_id=lot["carcass_id"],
                # keep the lot's age so FIFO still picks it first
                received_at=lot["received_at"],
                expires_at=lot["expires_at"],
            )

        for sid, sign in ((int(lot["id"]), -1), (dest_id, 1)):
            record_movement(
                conn,
                actor,
                stock_id=sid,
                movement_type="transfer",
                quantity_kg=sign * qty,
                quantity_units=sign * units,
                from_zone_id=from_zone_id,
                to_zone_id=int(to_zone_id),
                reason=reason,
                reference_type="stock",
                reference_id=int(lot["id"]),
            )

    logger.info("Transferred %.3f kg of lot %s from zone %s to zone %s", qty, stock_id, from_zone_id, to_zone_id)
    return dest_id


def adjust_stock(
    conn,
    actor: Actor,
    stock_id: int,
    *,
    new_quantity_kg: float,
    new_quantity_units: Optional[int] = None,
    reason: str,
) -> float:
    """Set a lot to a counted quantity. Returns the signed kg delta."""
    reason = clean_text(reason)
    if not reason:
        raise ValidationError("An adjustment reason is required.")
    if float(new_quantity_kg) < 0:
        raise ValidationError("Quantity cannot be negative.")

    with transaction(conn):
        lot = get_lot(conn, actor, stock_id)
        units = int(lot["quantity_units"]) if new_quantity_units is None else int(new_quantity_units)
        if units < 0:
            raise ValidationError("Units cannot be negative.")

        diff_kg = kg(float(new_quantity_kg) - float(lot["quantity_kg"]))
        diff_units = units - int(lot["quantity_units"])
        _set_lot_quantity(conn, lot, float(new_quantity_kg), units)
        record_movement(
            conn,
            actor,
            stock_id=int(lot["id"]),
            movement_type="adjustment",
            quantity_kg=diff_kg,
            quantity_units=diff_units,
            from_zone_id=int(lot["zone_id"]),
            reason=reason,
        )

    logger.info("Adjusted lot %s by %+.3f kg (%s)", stock_id, diff_kg, reason)
    return diff_kg


def fifo_lots(conn, actor: Actor, *, product_id: int, zone_id: int):
    """Lots of a product in a zone with stock on hand, oldest first."""
    return q(
        conn,
        """
        SELECT * FROM stock
        WHERE organization_id=? AND product_id=? AND zone_id=? AND quantity_kg > ?
        ORDER BY received_at ASC, id ASC
        """,
        (actor.organization_id, int(product_id), int(zone_id), EPS_KG),
    )


def available_kg(conn, actor: Actor, *, product_id: int, zone_id: Optional[int] = None) -> float:
    sql = "SELECT COALESCE(SUM(quantity_kg),0) AS kg FROM stock WHERE organization_id=? AND product_id=?"
    params: list = [actor.organization_id, int(product_id)]
    if zone_id is not None:
        sql += " AND zone_id=?"
        params.append(int(zone_id))
    return float(q1(conn, sql, params)["kg"])


def consume_fifo(
    conn,
    actor: Actor,
    *,
    product_id: int,
    zone_id: int,
    quantity_kg: float,
    stock_id: Optional[int] = None,
    reference_type: str = "sale",
    reference_id: Optional[int] = None,
) -> list[Allocation]:
    """
    Take quantity_kg of a product out of a zone, oldest lot first (or only the
    named lot). Must run inside the caller's unit of work.
    """
    requested = float(quantity_kg)
    if stock_id is not None:
        lot = get_lot(conn, actor, stock_id)
        if int(lot["product_id"]) != int(product_id):
            raise ValidationError("Stock item does not hold this product.")
        if int(lot["zone_id"]) != int(zone_id):
            raise ValidationError("Stock item is not in the selling zone.")
        lots = [lot] if float(lot["quantity_kg"]) > EPS_KG else []
    else:
        lots = fifo_lots(conn, actor, product_id=product_id, zone_id=zone_id)

    on_hand = sum(float(l["quantity_kg"]) for l in lots)
    if requested > on_hand + EPS_KG:
        raise InsufficientStock(
            f"Only {on_hand:.3f} kg available, {requested:.3f} kg requested.",
            requested_kg=requested,
            available_kg=on_hand,
        )

    remaining = requested
    out: list[Allocation] = []
    for lot in lots:
        if remaining <= EPS_KG:
            break
        take = min(remaining, float(lot["quantity_kg"]))
        if take <= EPS_KG:
            continue

        take_units = units_for(lot, take)
        _set_lot_quantity(conn, lot, float(lot["quantity_kg"]) - take, int(lot["quantity_units"]) - take_units)
        record_movement(
            conn,
            actor,
            stock_id=int(lot["id"]),
            movement_type="sale",
            quantity_kg=-take,
            quantity_units=-take_units,
            from_zone_id=int(lot["zone_id"]),
            reference_type=reference_type,
            reference_id=reference_id,
        )
        out.append(
            Allocation(
                stock_id=int(lot["id"]),
                quantity_kg=float(take),
                cost_per_kg=float(lot["cost_per_kg"]),
                carcass_id=lot["carcass_id"],
                quantity_units=take_units,
            )
        )
        remaining -= take

    return out


def restore_allocation(
    conn,
    actor: Actor,
    *,
    stock_id: int,
    quantity_kg: float,
    reason: Optional[str],
    quantity_units: int = 0,
    reference_type: str = "sale",
    reference_id: Optional[int] = None,
) -> None:
    lot = get_lot(conn, actor, stock_id)
    units = int(lot["quantity_units"]) + int(quantity_units or 0)
    _set_lot_quantity(conn, lot, float(lot["quantity_kg"]) + float(quantity_kg), units)
    record_movement(
        conn,
        actor,
        stock_id=int(lot["id"]),
        movement_type="sale",
        quantity_kg=float(quantity_kg),
        quantity_units=int(quantity_units or 0),
        to_zone_id=int(lot["zone_id"]),
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )


def zone_stock_by_product(conn, actor: Actor, zone_id: int):
    return q(
        conn,
        """
        SELECT product_id,
               SUM(quantity_kg) AS quantity_kg,
               SUM(total_cost) AS total_cost
        FROM stock
        WHERE organization_id=? AND zone_id=? AND quantity_kg > ?
        GROUP BY product_id
        ORDER BY product_id
        """,
        (actor.organization_id, int(zone_id), EPS_KG),
    )


def list_stock(conn, actor: Actor, *, zone_id: Optional[int] = None, product_id: Optional[int] = None):
    sql = """
        SELECT s.*, p.name AS product_name, p.sku, z.name AS zone_name, g.code AS grade_code
        FROM stock s
        JOIN products p ON p.id = s.product_id
        JOIN zones z ON z.id = s.zone_id
        LEFT JOIN grades g ON g.id = s.grade_id
        WHERE s.organization_id=? AND s.quantity_kg > ?
    """
    params: list[Any] = [actor.organization_id, EPS_KG]
    if zone_id is not None:
        sql += " AND s.zone_id=?"
        params.append(int(zone_id))
    if product_id is not None:
        sql += " AND s.product_id=?"
        params.append(int(product_id))
    sql += " ORDER BY p.name, s.received_at, s.id"
    return q(conn, sql, params)


def aggregated_stock(conn, actor: Actor, *, category_id: Optional[int] = None, search: Optional[str] = None):
    sql = """
        SELECT
          p.id AS product_id,
          p.sku,
          p.name AS product_name,
          COALESCE(c.name, 'Uncategorized') AS category,
          p.minimum_stock_kg,
          p.reorder_point_kg,
          ROUND(SUM(s.quantity_kg), 3) AS total_quantity_kg,
          SUM(s.quantity_units) AS total_quantity_units,
          ROUND(SUM(s.total_cost), 2) AS total_cost,
          CASE WHEN SUM(s.quantity_kg) > 0
               THEN SUM(s.total_cost) / SUM(s.quantity_kg) ELSE 0 END AS avg_cost_per_kg,
          COUNT(DISTINCT s.zone_id) AS zones
        FROM stock s
        JOIN products p ON p.id = s.product_id
        LEFT JOIN product_categories c ON c.id = p.category_id
        WHERE s.organization_id=? AND s.quantity_kg > ?
    """
    params: list[Any] = [actor.organization_id, EPS_KG]
    if category_id is not None:
        sql += " AND p.category_id=?"
        params.append(int(category_id))
    if search:
        sql += " AND (p.name LIKE ? OR p.sku LIKE ?)"
        params.extend([f"%{search.strip()}%"] * 2)
    sql += " GROUP BY p.id ORDER BY p.name"
    return q(conn, sql, params)


def list_movements(
    conn,
    actor: Actor,
    *,
    stock_id: Optional[int] = None,
    zone_id: Optional[int] = None,
    limit: int = 50,
):
    sql = """
        SELECT m.*, p.name AS product_name, fz.name AS from_zone, tz.name AS to_zone
        FROM stock_movements m
        LEFT JOIN stock s ON s.id = m.stock_id
        LEFT JOIN products p ON p.id = s.product_id
        LEFT JOIN zones fz ON fz.id = m.from_zone_id
        LEFT JOIN zones tz ON tz.id = m.to_zone_id
        WHERE m.organization_id=?
    """
    params: list[Any] = [actor.organization_id]
    if stock_id is not None:
        sql += " AND m.stock_id=?"
        params.append(int(stock_id))
    if zone_id is not None:
        sql += " AND (m.from_zone_id=? OR m.to_zone_id=?)"
        params.extend([int(zone_id), int(zone_id)])
    sql += " ORDER BY m.id DESC LIMIT ?"
    params.append(int(limit))
    return q(conn, sql, params)
