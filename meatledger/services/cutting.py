from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from meatledger.actor import Actor
from meatledger.db import q, q1, transaction, x
from meatledger.errors import InvalidState, NotFound, ValidationError
from meatledger.services import costing
from meatledger.services.carcasses import get_carcass
from meatledger.services.refs import default_receiving_zone, next_document_number, require_grade, require_product
from meatledger.services.stock import post_stock_lot
from meatledger.utils import clean_text, iso_now, kg

logger = logging.getLogger(__name__)

# Operators are warned (never blocked) when more than this is unexplained.
DEFAULT_UNACCOUNTED_TOLERANCE_KG = 0.5


@dataclass
class SessionBalance:
    input_weight_kg: float
    total_output_kg: float
    waste_kg: float
    remaining_kg: float
    yield_percent: float
    warn_unaccounted: bool


def get_session(conn, actor: Actor, session_id: int):
    r = q1(
        conn,
        "SELECT * FROM cutting_sessions WHERE id=? AND organization_id=?",
        (int(session_id), actor.organization_id),
    )
    if r is None:
        raise NotFound("Cutting session not found.")
    return r


def list_sessions(conn, actor: Actor, *, status: Optional[str] = None, carcass_id: Optional[int] = None):
    sql = """
        SELECT cs.*, c.carcass_number, u.full_name AS butcher
        FROM cutting_sessions cs
        LEFT JOIN carcasses c ON c.id = cs.carcass_id
        LEFT JOIN users u ON u.id = cs.butcher_id
        WHERE cs.organization_id=?
    """
    params: list = [actor.organization_id]
    if status:
        sql += " AND cs.status=?"
        params.append(status)
    if carcass_id is not None:
        sql += " AND cs.carcass_id=?"
        params.append(int(carcass_id))
    sql += " ORDER BY cs.started_at DESC, cs.id DESC"
    return q(conn, sql, params)


def list_cuts(conn, actor: Actor, session_id: int):
    get_session(conn, actor, session_id)
    return q(
        conn,
        """
        SELECT cut.*, p.name AS product_name, p.sku, g.code AS grade_code
        FROM cutting_session_cuts cut
        JOIN products p ON p.id = cut.product_id
        LEFT JOIN grades g ON g.id = cut.grade_id
        WHERE cut.session_id=?
        ORDER BY cut.id
        """,
        (int(session_id),),
    )


def _require_status(session, *allowed: str) -> None:
    if session["status"] not in allowed:
        raise InvalidState(
            f"Session {session['session_number']} is {session['status']}; "
            f"expected {' or '.join(allowed)}."
        )


def _sum_cuts(conn, session_id: int) -> float:
    r = q1(
        conn,
        "SELECT COALESCE(SUM(weight_kg),0) AS kg FROM cutting_session_cuts WHERE session_id=?",
        (int(session_id),),
    )
    return kg(r["kg"])


def _refresh_output(conn, session_id: int) -> float:
    # Always the full sum, never an increment, so removals stay correct.
    total = _sum_cuts(conn, session_id)
    x(conn, "UPDATE cutting_sessions SET total_output_kg=? WHERE id=?", (total, int(session_id)))
    return total


def _new_session(
    conn,
    actor: Actor,
    *,
    carcass_id: Optional[int],
    input_weight_kg: float,
    butcher_id: Optional[int],
    station: Optional[str],
    notes: Optional[str],
) -> int:
    started_at = iso_now()
    number = next_document_number(
        conn, actor, table="cutting_sessions", column="session_number", prefix="CUT", on_date=started_at[:10]
    )
    return x(
        conn,
        """
        INSERT INTO cutting_sessions (
            organization_id, session_number, carcass_id, butcher_id, station, status,
            input_weight_kg, total_output_kg, waste_kg, started_at, started_by, notes
        ) VALUES (?, ?, ?, ?, ?, 'active', ?, 0, 0, ?, ?, ?)
        """,
        (
            actor.organization_id,
            number,
            carcass_id,
            butcher_id,
            clean_text(station),
            float(input_weight_kg),
            started_at,
            actor.user_id,
            clean_text(notes),
        ),
    )


def start_session(
    conn,
    actor: Actor,
    carcass_id: int,
    *,
    butcher_id: Optional[int] = None,
    station: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    with transaction(conn):
        carcass = get_carcass(conn, actor, carcass_id)
        if carcass["status"] != "pending":
            raise InvalidState(f"Carcass {carcass['carcass_number']} is {carcass['status']}, not pending.")

        session_id = _new_session(
            conn,
            actor,
            carcass_id=int(carcass["id"]),
            input_weight_kg=float(carcass["weight_kg"]),
            butcher_id=butcher_id,
            station=station,
            notes=notes,
        )
        x(conn, "UPDATE carcasses SET status='processing' WHERE id=?", (int(carcass["id"]),))

    logger.info("Started cutting session %s on carcass %s", session_id, carcass["carcass_number"])
    return int(session_id)


def start_session_without_carcass(
    conn,
    actor: Actor,
    *,
    input_weight_kg: float = 0.0,
    butcher_id: Optional[int] = None,
    station: Optional[str] = None,
    notes: Optional[str] = None,
) -> int:
    if float(input_weight_kg) < 0:
        raise ValidationError("Input weight cannot be negative.")
    session_id = _new_session(
        conn,
        actor,
        carcass_id=None,
        input_weight_kg=float(input_weight_kg),
        butcher_id=butcher_id,
        station=station,
        notes=notes,
    )
    logger.info("Started cutting session %s without a carcass", session_id)
    return int(session_id)


def pause_session(conn, actor: Actor, session_id: int) -> None:
    session = get_session(conn, actor, session_id)
    _require_status(session, "active")
    x(conn, "UPDATE cutting_sessions SET status='paused' WHERE id=?", (int(session_id),))


def resume_session(conn, actor: Actor, session_id: int) -> None:
    session = get_session(conn, actor, session_id)
    _require_status(session, "paused")
    x(conn, "UPDATE cutting_sessions SET status='active' WHERE id=?", (int(session_id),))


def add_cut(
    conn,
    actor: Actor,
    session_id: int,
    *,
    product_id: int,
    weight_kg: float,
    quantity: int = 1,
    grade_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> int:
    try:
        weight = float(weight_kg)
    except (TypeError, ValueError):
        raise ValidationError("Cut weight must be a number.")
    if weight <= 0:
        raise ValidationError("Cut weight (kg) must be > 0.")
    if int(quantity) < 0:
        raise ValidationError("Cut quantity cannot be negative.")

    with transaction(conn):
        session = get_session(conn, actor, session_id)
        _require_status(session, "active")
        require_product(conn, actor, product_id)
        require_grade(conn, actor, grade_id)

        cut_id = x(
            conn,
            """
            INSERT INTO cutting_session_cuts (session_id, product_id, grade_id, weight_kg, quantity, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (int(session_id), int(product_id), grade_id, kg(weight), int(quantity), clean_text(notes), iso_now()),
        )
        _refresh_output(conn, int(session_id))
    return int(cut_id)


def remove_cut(conn, actor: Actor, cut_id: int) -> None:
    with transaction(conn):
        cut = q1(
            conn,
            """
            SELECT cut.id, cut.session_id
            FROM cutting_session_cuts cut
            JOIN cutting_sessions cs ON cs.id = cut.session_id
            WHERE cut.id=? AND cs.organization_id=?
            """,
            (int(cut_id), actor.organization_id),
        )
        if cut is None:
            raise NotFound("Cut not found.")
        session = get_session(conn, actor, int(cut["session_id"]))
        _require_status(session, "active")

        x(conn, "DELETE FROM cutting_session_cuts WHERE id=?", (int(cut_id),))
        _refresh_output(conn, int(cut["session_id"]))


def record_waste(conn, actor: Actor, session_id: int, waste_kg: float) -> None:
    """Overwrite (not add to) the session waste so a miscount can be corrected."""
    if float(waste_kg) < 0:
        raise ValidationError("Waste (kg) cannot be negative.")
    session = get_session(conn, actor, session_id)
    _require_status(session, "active", "paused")
    x(conn, "UPDATE cutting_sessions SET waste_kg=? WHERE id=?", (kg(waste_kg), int(session_id)))


def _balance(input_kg: float, output_kg: float, waste_kg: float, reference_kg: float, tolerance_kg: float) -> SessionBalance:
    remaining = kg(costing.unaccounted_kg(input_kg, output_kg, waste_kg))
    return SessionBalance(
        input_weight_kg=float(input_kg),
        total_output_kg=float(output_kg),
        waste_kg=float(waste_kg),
        remaining_kg=remaining,
        yield_percent=costing.yield_percent(output_kg, waste_kg, reference_kg),
        warn_unaccounted=remaining > float(tolerance_kg),
    )


def session_balance(
    conn,
    actor: Actor,
    session_id: int,
    *,
    tolerance_kg: float = DEFAULT_UNACCOUNTED_TOLERANCE_KG,
) -> SessionBalance:
    session = get_session(conn, actor, session_id)
    output = _sum_cuts(conn, int(session_id))
    return _balance(
        float(session["input_weight_kg"]),
        output,
        float(session["waste_kg"]),
        float(session["input_weight_kg"]),
        tolerance_kg,
    )


def complete_session(
    conn,
    actor: Actor,
    session_id: int,
    *,
    final_waste_kg: float,
    notes: Optional[str] = None,
    tolerance_kg: float = DEFAULT_UNACCOUNTED_TOLERANCE_KG,
) -> SessionBalance:
    """
    Close the session, post its cuts to stock and roll totals up to the carcass.

    Session, stock postings and carcass commit together or not at all.
    Unaccounted weight above tolerance only sets warn_unaccounted on the result.
    """
    if float(final_waste_kg) < 0:
        raise ValidationError("Waste (kg) cannot be negative.")
    waste = kg(final_waste_kg)

    with transaction(conn):
        session = get_session(conn, actor, session_id)
        _require_status(session, "active")

        total_output = _sum_cuts(conn, int(session_id))
        carcass = get_carcass(conn, actor, session["carcass_id"]) if session["carcass_id"] is not None else None

        ended_at = iso_now()
        x(
            conn,
            """
            UPDATE cutting_sessions
            SET status='completed', ended_at=?, waste_kg=?, total_output_kg=?, notes=COALESCE(?, notes)
            WHERE id=?
            """,
            (ended_at, waste, total_output, clean_text(notes), int(session_id)),
        )

        if carcass is not None and carcass["destination_zone_id"] is not None:
            zone_id = int(carcass["destination_zone_id"])
        else:
            zone_id = int(default_receiving_zone(conn, actor)["id"])

        # Uniform allocation: every cut carries the carcass cost/kg.
        unit_cost = float(carcass["cost_per_kg"]) if carcass is not None else 0.0
        batch_number = carcass["carcass_number"] if carcass is not None else session["session_number"]

        outputs = q(
            conn,
            """
            SELECT product_id, grade_id, SUM(weight_kg) AS weight_kg, SUM(quantity) AS quantity
            FROM cutting_session_cuts
            WHERE session_id=?
            GROUP BY product_id, grade_id
            ORDER BY product_id, grade_id
            """,
            (int(session_id),),
        )
        for o in outputs:
            post_stock_lot(
                conn,
                actor,
                product_id=int(o["product_id"]),
                zone_id=zone_id,
                quantity_kg=float(o["weight_kg"]),
                quantity_units=int(o["quantity"]),
                cost_per_kg=unit_cost,
                grade_id=o["grade_id"],
                batch_number=batch_number,
                source_type="cutting_session",
                source_id=int(session_id),
                carcass_id=int(carcass["id"]) if carcass is not None else None,
                received_at=ended_at,
            )

        if carcass is not None:
            x(
                conn,
                """
                UPDATE carcasses
                SET status='completed', total_output_kg=?, waste_kg=?, yield_percentage=?
                WHERE id=?
                """,
                (
                    total_output,
                    waste,
                    costing.yield_percent(total_output, waste, float(carcass["weight_kg"])),
                    int(carcass["id"]),
                ),
            )

    reference = float(carcass["weight_kg"]) if carcass is not None else float(session["input_weight_kg"])
    balance = _balance(float(session["input_weight_kg"]), total_output, waste, reference, tolerance_kg)
    if balance.warn_unaccounted:
        logger.warning(
            "Session %s completed with %.3f kg unaccounted (tolerance %.3f kg)",
            session["session_number"],
            balance.remaining_kg,
            float(tolerance_kg),
        )
    logger.info(
        "Completed session %s: output %.3f kg, waste %.3f kg, %d stock lot(s)",
        session["session_number"],
        total_output,
        waste,
        len(outputs),
    )
    return balance


def cancel_session(conn, actor: Actor, session_id: int, *, reason: Optional[str] = None) -> None:
    """Abandon a session. Nothing is posted to stock; the carcass goes back to pending."""
    with transaction(conn):
        session = get_session(conn, actor, session_id)
        _require_status(session, "active", "paused")
        x(
            conn,
            """
            UPDATE cutting_sessions
            SET status='cancelled', ended_at=?, notes=COALESCE(?, notes)
            WHERE id=?
            """,
            (iso_now(), clean_text(reason), int(session_id)),
        )
        if session["carcass_id"] is not None:
            x(
                conn,
                "UPDATE carcasses SET status='pending' WHERE id=? AND status='processing'",
                (int(session["carcass_id"]),),
            )
    logger.info("Cancelled session %s", session["session_number"])
