"""Gateway webhook receipts.

One row per (gateway, event_id); the insert is the dedupe guard for
at-least-once delivery.
"""

from __future__ import annotations

from psycopg2.extensions import cursor as PgCursor


def record_event_receipt(
    cur: PgCursor,
    *,
    gateway: str,
    event_id: str,
    event_type: str,
) -> bool:
    """Insert the receipt. Returns False if this event was already recorded."""
    cur.execute(
        """
        INSERT INTO gateway_events (gateway, event_id, event_type)
        VALUES (%s, %s, %s)
        ON CONFLICT (gateway, event_id) DO NOTHING
        """,
        (gateway, event_id, event_type),
    )
    return cur.rowcount > 0
