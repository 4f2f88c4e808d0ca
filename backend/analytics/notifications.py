from __future__ import annotations

from typing import Any, Dict, List, Optional
import json
import logging
import sqlite3
import time

logger = logging.getLogger(__name__)


class NotificationQueue:
    """
    Outbox for operator notifications. Delivery (email etc.) happens
    elsewhere; we only guarantee one row per dedupe key.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def enqueue(self, kind: str, payload: Dict[str, Any], dedupe_key: str, now: Optional[int] = None) -> bool:
        """True when a new notification was queued, False when the key was already there"""
        now = int(time.time()) if now is None else now
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO notification_outbox(dedupe_key, kind, payload_json, created_at)
            VALUES(?,?,?,?)
            """,
            (dedupe_key, kind, json.dumps(payload), now),
        )
        self.conn.commit()
        created = cur.rowcount == 1
        if created:
            logger.info("notification queued: %s (%s)", kind, dedupe_key)
        return created

    def pending(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT id, dedupe_key, kind, payload_json, created_at FROM notification_outbox
            WHERE delivered_at IS NULL
            ORDER BY id ASC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [
            {
                "id": int(r["id"]),
                "dedupe_key": r["dedupe_key"],
                "kind": r["kind"],
                "payload": json.loads(r["payload_json"]),
                "created_at": int(r["created_at"]),
            }
            for r in rows
        ]

    def mark_delivered(self, notification_id: int, now: Optional[int] = None) -> None:
        now = int(time.time()) if now is None else now
        self.conn.execute(
            "UPDATE notification_outbox SET delivered_at = ? WHERE id = ? AND delivered_at IS NULL",
            (now, int(notification_id)),
        )
        self.conn.commit()


def significant_result_key(experiment_id: str, winner: str) -> str:
    return f"experiment:{experiment_id}:significant:{winner}"
