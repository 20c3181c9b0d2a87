from __future__ import annotations

from typing import Optional

from meatledger.actor import Actor
from meatledger.db import q, q1
from meatledger.errors import NotFound, ValidationError


def require_zone(conn, actor: Actor, zone_id: int, *, active_only: bool = True):
    r = q1(conn, "SELECT * FROM zones WHERE id=? AND organization_id=?", (int(zone_id), actor.organization_id))
    if r is None:
        raise NotFound("Zone not found.")
    if active_only and not int(r["is_active"]):
        raise ValidationError(f"Zone '{r['name']}' is inactive.")
    return r


def require_product(conn, actor: Actor, product_id: int):
    r = q1(conn, "SELECT * FROM products WHERE id=? AND organization_id=?", (int(product_id), actor.organization_id))
    if r is None:
        raise NotFound("Product not found.")
    return r


def require_grade(conn, actor: Actor, grade_id: Optional[int]):
    if grade_id is None:
        return None
    r = q1(conn, "SELECT * FROM grades WHERE id=? AND organization_id=?", (int(grade_id), actor.organization_id))
    if r is None:
        raise NotFound("Grade not found.")
    return r


def require_supplier(conn, actor: Actor, supplier_id: Optional[int]):
    if supplier_id is None:
        return None
    r = q1(conn, "SELECT * FROM suppliers WHERE id=? AND organization_id=?", (int(supplier_id), actor.organization_id))
    if r is None:
        raise NotFound("Supplier not found.")
    return r


def default_receiving_zone(conn, actor: Actor):
    r = q1(
        conn,
        """
        SELECT * FROM zones
        WHERE organization_id=? AND is_active=1
        ORDER BY is_default_receiving DESC, display_order, id
        LIMIT 1
        """,
        (actor.organization_id,),
    )
    if r is None:
        raise NotFound("No active zone configured.")
    return r


def active_zones(conn, actor: Actor):
    return q(
        conn,
        "SELECT * FROM zones WHERE organization_id=? AND is_active=1 ORDER BY display_order, id",
        (actor.organization_id,),
    )


def active_currencies(conn, actor: Actor):
    return q(
        conn,
        "SELECT * FROM currencies WHERE organization_id=? AND is_active=1 ORDER BY id",
        (actor.organization_id,),
    )


def currency_rate(conn, actor: Actor, currency_code: str) -> float:
    r = q1(
        conn,
        "SELECT exchange_rate FROM currencies WHERE organization_id=? AND code=?",
        (actor.organization_id, str(currency_code).strip().upper()),
    )
    if r is None:
        raise NotFound(f"Currency '{currency_code}' not configured.")
    return float(r["exchange_rate"])


def next_document_number(conn, actor: Actor, *, table: str, column: str, prefix: str, on_date: str) -> str:
    """
    Consistent system code:
      {PREFIX}-{YYYYMMDD}-{NNN}

    Example:
      CRC-20260218-001
    """
    stem = f"{prefix}-{str(on_date).replace('-', '')[:8]}-"
    r = q1(
        conn,
        f"SELECT COUNT(1) AS n FROM {table} WHERE organization_id=? AND {column} LIKE ?",
        (actor.organization_id, stem + "%"),
    )
    n = int(r["n"]) if r else 0
    return f"{stem}{n + 1:03d}"
