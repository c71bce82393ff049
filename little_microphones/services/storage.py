"""Persistence helpers for the LMID pool backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .naming import generate_share_token


STATUS_FREE = "free"
STATUS_USED = "used"

_SHARE_TOKEN_ATTEMPTS = 10
_BUSY_TIMEOUT_SECONDS = 10.0


@dataclass
class LmidRecord:
    lmid: int
    status: str
    assigned_to_member_id: Optional[str]
    assigned_to_member_email: Optional[str]
    assigned_at: Optional[str]
    share_id: str

    @property
    def is_used(self) -> bool:
        return self.status == STATUS_USED


@dataclass
class ShareLinkRecord:
    share_id: str
    lmid: int
    world: str
    created_at: str


class ShareTokenCollision(RuntimeError):
    """Raised when a unique share token could not be generated."""


LOGGER = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class LmidRepository:
    """Repository exposing the LMID pool and the per-world share links."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting database events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter("DB_QUERY", action, payload=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    def _executemany(
        self,
        connection: sqlite3.Connection,
        statement: str,
        rows: Sequence[Tuple[Any, ...]],
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            row_count=len(rows),
        ):
            return connection.executemany(statement, rows)

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path, timeout=_BUSY_TIMEOUT_SECONDS)
        connection.row_factory = sqlite3.Row
        self._execute(connection, "PRAGMA foreign_keys = ON", action="pragma_foreign_keys")
        return connection

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose work is committed on success and closed afterwards."""

        connection = self._connect()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> LmidRecord:
        return LmidRecord(
            lmid=int(row["lmid"]),
            status=row["status"],
            assigned_to_member_id=row["assigned_to_member_id"],
            assigned_to_member_email=row["assigned_to_member_email"],
            assigned_at=row["assigned_at"],
            share_id=row["share_id"],
        )

    # ---------------------------------------------------------------------
    # Pool management
    # ---------------------------------------------------------------------
    def seed(self, count: int, *, start: Optional[int] = None) -> List[int]:
        """Create *count* free LMIDs, continuing after the highest existing id."""

        if count <= 0:
            return []
        LOGGER.debug("Seeding %s LMID(s) starting at %s", count, start or "<next>")
        with self._track_db_event("seed", table="lmids", count=count, start=start) as event:
            with self._transaction() as connection:
                if start is None:
                    cursor = self._execute(
                        connection,
                        "SELECT COALESCE(MAX(lmid), 0) + 1 FROM lmids",
                        action="lmids.next_id",
                        table="lmids",
                    )
                    start = int(cursor.fetchone()[0])
                lmids = list(range(start, start + count))
                rows = [(lmid, STATUS_FREE, generate_share_token()) for lmid in lmids]
                self._executemany(
                    connection,
                    "INSERT INTO lmids(lmid, status, share_id) VALUES (?, ?, ?)",
                    rows,
                    action="lmids.insert",
                    table="lmids",
                )
                event.update({"first": lmids[0], "last": lmids[-1]})
        LOGGER.info("Seeded LMIDs %s-%s", lmids[0], lmids[-1])
        return lmids

    def get(self, lmid: int) -> Optional[LmidRecord]:
        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "SELECT lmid, status, assigned_to_member_id, assigned_to_member_email, "
                "assigned_at, share_id FROM lmids WHERE lmid = ?",
                (lmid,),
                action="lmids.get",
                table="lmids",
            )
            row = cursor.fetchone()
        return self._record_from_row(row) if row else None

    def free_lmids(self, *, limit: int = 25) -> List[int]:
        """Return up to *limit* free LMIDs in ascending order."""

        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "SELECT lmid FROM lmids WHERE status = ? ORDER BY lmid LIMIT ?",
                (STATUS_FREE, limit),
                action="lmids.free_candidates",
                table="lmids",
            )
            return [int(row["lmid"]) for row in cursor.fetchall()]

    def claim(self, lmid: int, member_id: str, member_email: Optional[str]) -> Optional[LmidRecord]:
        """Atomically mark *lmid* as used by *member_id* if it is still free.

        Returns the updated record, or ``None`` when another writer claimed the
        row first.
        """

        LOGGER.debug("Claiming LMID %s for %s", lmid, member_id)
        with self._track_db_event("claim", table="lmids", lmid=lmid, member_id=member_id) as event:
            with self._transaction() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE lmids SET status = ?, assigned_to_member_id = ?, "
                    "assigned_to_member_email = ?, assigned_at = ? "
                    "WHERE lmid = ? AND status = ?",
                    (STATUS_USED, member_id, member_email, _utcnow(), lmid, STATUS_FREE),
                    action="lmids.claim",
                    table="lmids",
                )
                claimed = cursor.rowcount == 1
                event["claimed"] = claimed
                if not claimed:
                    return None
                row = self._execute(
                    connection,
                    "SELECT lmid, status, assigned_to_member_id, assigned_to_member_email, "
                    "assigned_at, share_id FROM lmids WHERE lmid = ?",
                    (lmid,),
                    action="lmids.get",
                    table="lmids",
                ).fetchone()
        return self._record_from_row(row)

    def release(self, lmid: int, member_id: str) -> bool:
        """Return *lmid* to the free pool if it is owned by *member_id*.

        The LMID-level share token is rotated and every world share link is
        dropped so that previously published links stop resolving.
        """

        LOGGER.debug("Releasing LMID %s owned by %s", lmid, member_id)
        with self._track_db_event("release", table="lmids", lmid=lmid, member_id=member_id) as event:
            for _ in range(_SHARE_TOKEN_ATTEMPTS):
                try:
                    with self._transaction() as connection:
                        cursor = self._execute(
                            connection,
                            "UPDATE lmids SET status = ?, assigned_to_member_id = NULL, "
                            "assigned_to_member_email = NULL, assigned_at = NULL, share_id = ? "
                            "WHERE lmid = ? AND status = ? AND assigned_to_member_id = ?",
                            (STATUS_FREE, generate_share_token(), lmid, STATUS_USED, member_id),
                            action="lmids.release",
                            table="lmids",
                        )
                        released = cursor.rowcount == 1
                        if released:
                            self._execute(
                                connection,
                                "DELETE FROM share_links WHERE lmid = ?",
                                (lmid,),
                                action="share_links.delete_for_lmid",
                                table="share_links",
                            )
                except sqlite3.IntegrityError:
                    LOGGER.debug("Share token collision while releasing LMID %s; retrying", lmid)
                    continue
                event["released"] = released
                return released
        raise ShareTokenCollision(f"Could not rotate share token for LMID {lmid}")

    def owned_by(self, member_id: str) -> List[int]:
        """Return the LMIDs currently assigned to *member_id* in ascending order."""

        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "SELECT lmid FROM lmids WHERE assigned_to_member_id = ? AND status = ? "
                "ORDER BY lmid",
                (member_id, STATUS_USED),
                action="lmids.owned_by",
                table="lmids",
            )
            return [int(row["lmid"]) for row in cursor.fetchall()]

    def status_counts(self) -> Dict[str, int]:
        counts = {STATUS_FREE: 0, STATUS_USED: 0}
        with self._transaction() as connection:
            cursor = self._execute(
                connection,
                "SELECT status, COUNT(*) AS total FROM lmids GROUP BY status",
                action="lmids.status_counts",
                table="lmids",
            )
            for row in cursor.fetchall():
                counts[row["status"]] = int(row["total"])
        return counts

    # ---------------------------------------------------------------------
    # Share links
    # ---------------------------------------------------------------------
    def get_share_link(self, lmid: int, world: str) -> Optional[ShareLinkRecord]:
        with self._transaction() as connection:
            row = self._execute(
                connection,
                "SELECT share_id, lmid, world, created_at FROM share_links "
                "WHERE lmid = ? AND world = ?",
                (lmid, world),
                action="share_links.get",
                table="share_links",
            ).fetchone()
        return ShareLinkRecord(**row) if row else None

    def create_share_link(self, lmid: int, world: str) -> ShareLinkRecord:
        """Return the share link for (*lmid*, *world*), creating it when missing."""

        with self._track_db_event(
            "create_share_link", table="share_links", lmid=lmid, world=world
        ) as event:
            for attempt in range(1, _SHARE_TOKEN_ATTEMPTS + 1):
                share_id = generate_share_token()
                created_at = _utcnow()
                try:
                    with self._transaction() as connection:
                        self._execute(
                            connection,
                            "INSERT INTO share_links(share_id, lmid, world, created_at) "
                            "VALUES (?, ?, ?, ?)",
                            (share_id, lmid, world, created_at),
                            action="share_links.insert",
                            table="share_links",
                        )
                except sqlite3.IntegrityError:
                    existing = self.get_share_link(lmid, world)
                    if existing is not None:
                        event.update({"share_id": existing.share_id, "created": False})
                        return existing
                    LOGGER.debug(
                        "Share token collision for LMID %s/%s (attempt %s)", lmid, world, attempt
                    )
                    continue
                event.update({"share_id": share_id, "created": True, "attempts": attempt})
                return ShareLinkRecord(
                    share_id=share_id, lmid=lmid, world=world, created_at=created_at
                )
        raise ShareTokenCollision(
            f"Could not generate a unique share id after {_SHARE_TOKEN_ATTEMPTS} attempts"
        )

    def resolve_share_link(self, share_id: str) -> Optional[ShareLinkRecord]:
        with self._transaction() as connection:
            row = self._execute(
                connection,
                "SELECT share_id, lmid, world, created_at FROM share_links WHERE share_id = ?",
                (share_id,),
                action="share_links.resolve",
                table="share_links",
            ).fetchone()
        return ShareLinkRecord(**row) if row else None


__all__ = [
    "LmidRecord",
    "LmidRepository",
    "STATUS_FREE",
    "STATUS_USED",
    "ShareLinkRecord",
    "ShareTokenCollision",
]
