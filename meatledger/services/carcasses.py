from __future__ import annotations

import logging
from typing import Optional

from meatledger.actor import Actor
from meatledger.db import q, q1, x
from meatledger.errors import NotFound, ValidationError
from meatledger.services import costing
from meatledger.services.refs import next_document_number, require_grade, require_supplier, require_zone
from meatledger.utils import clean_text, iso_now, iso_today

logger = logging.getLogger(__name__)

CARCASS_STATUSES = ("pending", "processing", "completed")


def _positive(value, label: str) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a number.")
    if v <= 0:
        raise ValidationError(f"{label} must be > 0.")
    return v


def receive_carcass(
    conn,
    actor: Actor,
    *,
    weight_kg: float,
    cost_total: float,
    supplier_id: Optional[int] = None,
    grade_id: Optional[int] = None,
    destination_zone_id: Optional[int] = None,
    live_weight_kg: Optional[float] = None,
    carcass_number: Optional[str] = None,
    received_at: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    """
    Record a received carcass in `pending` status.

    weight_kg is the cold (hanging) weight and is the costing basis:
    cost_per_kg = cost_total / weight_kg.
    """
    weight = _positive(weight_kg, "Carcass weight (kg)")
    try:
        cost = float(cost_total)
    except (TypeError, ValueError):
        raise ValidationError("Carcass cost must be a number.")
    if cost < 0:
        raise ValidationError("Carcass cost cannot be negative.")

    live = None
    if live_weight_kg is not None:
        live = _positive(live_weight_kg, "Live weight (kg)")

    require_supplier(conn, actor, supplier_id)
    require_grade(conn, actor, grade_id)
    if destination_zone_id is not None:
        require_zone(conn, actor, destination_zone_id)

    received_at = received_at or iso_now()
    number = clean_text(carcass_number) or next_document_number(
        conn, actor, table="carcasses", column="carcass_number", prefix="CRC", on_date=received_at[:10] or iso_today()
    )

    carcass_id = x(
        conn,
        """
        INSERT INTO carcasses (
            organization_id, carcass_number, supplier_id, grade_id, destination_zone_id,
            received_at, received_by, live_weight_kg, weight_kg, cost_total, cost_per_kg,
            status, notes
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
        """,
        (
            actor.organization_id,
            number,
            supplier_id,
            grade_id,
            destination_zone_id,
            received_at,
            actor.user_id,
            live,
            weight,
            cost,
            costing.cost_per_kg(cost, weight),
            clean_text(notes),
        ),
    )
    logger.info("Received carcass %s (%.3f kg, cost %.2f)", number, weight, cost)
    return int(carcass_id)


def get_carcass(conn, actor: Actor, carcass_id: int):
    r = q1(
        conn,
        "SELECT * FROM carcasses WHERE id=? AND organization_id=?",
        (int(carcass_id), actor.organization_id),
    )
    if r is None:
        raise NotFound("Carcass not found.")
    return r


def list_carcasses(conn, actor: Actor, *, status: Optional[str] = None, search: Optional[str] = None):
    sql = """
        SELECT c.*, s.name AS supplier_name, g.code AS grade_code, z.name AS destination_zone
        FROM carcasses c
        LEFT JOIN suppliers s ON s.id = c.supplier_id
        LEFT JOIN grades g ON g.id = c.grade_id
        LEFT JOIN zones z ON z.id = c.destination_zone_id
        WHERE c.organization_id=?
    """
    params: list = [actor.organization_id]
    if status:
        if status not in CARCASS_STATUSES:
            raise ValidationError(f"Unknown carcass status '{status}'.")
        sql += " AND c.status=?"
        params.append(status)
    if search:
        sql += " AND c.carcass_number LIKE ?"
        params.append(f"%{search.strip()}%")
    sql += " ORDER BY c.received_at DESC, c.id DESC"
    return q(conn, sql, params)
