from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
import json
import logging
from pathlib import Path
import random
import string
from typing import Any

import duckdb

from correlator import ChainState
from records import CompletionRecord, has_record_sections
from sse_parser import epoch_ms

logger = logging.getLogger(__name__)


ACTIVE_SESSION_KEY = "active_session_id"
SESSION_SUFFIX_CHARS = string.ascii_lowercase + string.digits


def make_session_id(now: datetime | None = None) -> str:
    moment = (now or datetime.now()).astimezone()
    suffix = "".join(random.choices(SESSION_SUFFIX_CHARS, k=6))
    return f"{moment.strftime('%Y-%m-%dT%H-%M-%S%z')}-{suffix}"


def record_key(
    session_id: str,
    captured_at_ms: int | float,
    trace_id: str,
    completion_id: str | None,
) -> str:
    return f"{session_id}::{captured_at_ms}::{trace_id}::{completion_id or 'noid'}"


class DuckDBChainStateStore:
    def __init__(self, connection: duckdb.DuckDBPyConnection) -> None:
        self.connection = connection

    def get(self, context_id: str) -> ChainState | None:
        row = self.connection.execute(
            "SELECT state_json FROM chain_state WHERE context_id = ?",
            [context_id],
        ).fetchone()
        if row is None:
            return None
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError:
            logger.debug("Discarding unreadable chain state for context %s", context_id)
            return None
        if not isinstance(data, Mapping):
            return None
        return ChainState.from_dict(data)

    def put(self, context_id: str, state: ChainState) -> None:
        self.connection.execute(
            """
            INSERT INTO chain_state (context_id, state_json, updated_at_ms)
            VALUES (?, ?, ?)
            ON CONFLICT (context_id) DO UPDATE SET
                state_json = excluded.state_json,
                updated_at_ms = excluded.updated_at_ms
            """,
            [context_id, json.dumps(state.to_dict(), ensure_ascii=True), epoch_ms()],
        )

    def delete(self, context_id: str) -> None:
        self.connection.execute("DELETE FROM chain_state WHERE context_id = ?", [context_id])

    def list_contexts(self) -> list[str]:
        rows = self.connection.execute(
            "SELECT context_id FROM chain_state ORDER BY context_id ASC"
        ).fetchall()
        return [row[0] for row in rows]


class MetricsStorage:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()
        self.chain_states = DuckDBChainStateStore(self.connection)

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id VARCHAR PRIMARY KEY,
                created_at_ms BIGINT NOT NULL,
                name VARCHAR
            );

            CREATE TABLE IF NOT EXISTS records (
                key VARCHAR PRIMARY KEY,
                session_id VARCHAR NOT NULL,
                captured_at_ms DOUBLE NOT NULL,
                trace_id VARCHAR NOT NULL,
                record_json VARCHAR NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chain_state (
                context_id VARCHAR PRIMARY KEY,
                state_json VARCHAR NOT NULL,
                updated_at_ms BIGINT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS app_state (
                key VARCHAR PRIMARY KEY,
                value VARCHAR
            );
            """
        )

    def get_active_session_id(self) -> str:
        row = self.connection.execute(
            "SELECT value FROM app_state WHERE key = ?", [ACTIVE_SESSION_KEY]
        ).fetchone()
        if row is not None and row[0]:
            return row[0]
        return self.start_new_session()

    def set_active_session(self, session_id: str) -> None:
        self.connection.execute(
            """
            INSERT INTO app_state (key, value)
            VALUES (?, ?)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
            [ACTIVE_SESSION_KEY, session_id],
        )
        self.connection.execute(
            """
            INSERT INTO sessions (session_id, created_at_ms, name)
            VALUES (?, ?, NULL)
            ON CONFLICT (session_id) DO NOTHING
            """,
            [session_id, epoch_ms()],
        )
        logger.debug("Active session set: %s", session_id)

    def start_new_session(self) -> str:
        session_id = make_session_id()
        self.set_active_session(session_id)
        return session_id

    def add_record(self, record: CompletionRecord) -> dict[str, Any]:
        session_id = self.get_active_session_id()
        captured_at_ms = record.captured_at_ms
        if captured_at_ms is None:
            captured_at_ms = epoch_ms()
        completion_id = record.response.id if record.response is not None else None
        key = record_key(session_id, captured_at_ms, record.trace_id, completion_id)
        self.connection.execute(
            """
            INSERT INTO records (key, session_id, captured_at_ms, trace_id, record_json)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (key) DO UPDATE SET record_json = excluded.record_json
            """,
            [key, session_id, captured_at_ms, record.trace_id, record.to_json()],
        )
        logger.debug(
            "[trace %s] Record added: key=%s chain=%s turn=%s",
            record.trace_id,
            key,
            record.chain_id,
            record.turn_number,
        )
        return {"session_id": session_id, "key": key}

    def list_records(self, session_id: str | None = None) -> list[CompletionRecord]:
        sid = session_id or self.get_active_session_id()
        rows = self.connection.execute(
            """
            SELECT record_json
            FROM records
            WHERE session_id = ?
            ORDER BY captured_at_ms ASC, key ASC
            """,
            [sid],
        ).fetchall()
        return [CompletionRecord.from_json(row[0]) for row in rows]

    def count_records(self, session_id: str | None = None) -> int:
        sid = session_id or self.get_active_session_id()
        row = self.connection.execute(
            "SELECT COUNT(*) FROM records WHERE session_id = ?", [sid]
        ).fetchone()
        return int(row[0] or 0) if row is not None else 0

    def estimate_session_size_bytes(self, session_id: str | None = None) -> int:
        sid = session_id or self.get_active_session_id()
        row = self.connection.execute(
            """
            SELECT COALESCE(SUM(strlen(record_json)), 0)
            FROM records
            WHERE session_id = ?
            """,
            [sid],
        ).fetchone()
        return int(row[0] or 0) if row is not None else 0

    def list_sessions_with_stats(self) -> list[dict[str, Any]]:
        active = self.get_active_session_id()
        rows = self.connection.execute(
            """
            WITH record_counts AS (
                SELECT
                    session_id,
                    COUNT(*) AS record_count,
                    MAX(captured_at_ms) AS last_captured_at_ms
                FROM records
                GROUP BY session_id
            )
            SELECT
                sessions.session_id,
                sessions.created_at_ms,
                sessions.name,
                COALESCE(record_counts.record_count, 0) AS record_count,
                record_counts.last_captured_at_ms
            FROM sessions
            LEFT JOIN record_counts USING (session_id)
            ORDER BY sessions.created_at_ms DESC, sessions.session_id DESC
            """
        ).fetchall()
        return [
            {
                "session_id": row[0],
                "created_at_ms": row[1],
                "name": row[2],
                "record_count": int(row[3] or 0),
                "last_captured_at_ms": row[4],
                "active": row[0] == active,
            }
            for row in rows
        ]

    def export_jsonl(self, session_id: str | None = None) -> str:
        sid = session_id or self.get_active_session_id()
        lines = []
        for record in self.list_records(sid):
            data = record.to_dict()
            data["session_id"] = sid
            lines.append(json.dumps(data, ensure_ascii=False))
        logger.debug("Exported %d record(s) from session %s", len(lines), sid)
        return "\n".join(lines) + ("\n" if lines else "")

    def import_records(self, records: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
        if not records:
            raise ValueError("No records provided")
        for index, data in enumerate(records):
            if not has_record_sections(data):
                raise ValueError(f"Invalid record at index {index}")

        first_session = records[0].get("session_id")
        session_id = (
            first_session if isinstance(first_session, str) and first_session else make_session_id()
        )
        now_ms = epoch_ms()
        rows = []
        for index, data in enumerate(records):
            record = CompletionRecord.from_dict(data)
            captured_at_ms = record.captured_at_ms
            if captured_at_ms is None:
                captured_at_ms = now_ms
            trace_id = data.get("trace_id") or f"import-{index}"
            completion_id = record.response.id if record.response is not None else None
            key = "::".join(
                [
                    session_id,
                    str(captured_at_ms),
                    str(trace_id),
                    completion_id or f"noid-{index}",
                    str(index),
                ]
            )
            rows.append((key, session_id, captured_at_ms, str(trace_id), record.to_json()))

        logger.debug("Importing %d record(s) into session %s", len(rows), session_id)
        self.connection.execute("BEGIN TRANSACTION")
        try:
            self._delete_everything()
            self.connection.executemany(
                """
                INSERT INTO records (key, session_id, captured_at_ms, trace_id, record_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )
            self.set_active_session(session_id)
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error during import, rolling back transaction", exc_info=True)
            self.connection.execute("ROLLBACK")
            raise
        return {"session_id": session_id, "imported": len(rows)}

    def clear_all(self) -> None:
        logger.debug("Clearing all data")
        self.connection.execute("BEGIN TRANSACTION")
        try:
            self._delete_everything()
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error while clearing data, rolling back transaction", exc_info=True)
            self.connection.execute("ROLLBACK")
            raise

    def get_session(self, session_id: str) -> dict[str, Any]:
        row = self.connection.execute(
            "SELECT session_id, created_at_ms, name FROM sessions WHERE session_id = ?",
            [session_id],
        ).fetchone()
        if row is None:
            raise KeyError(session_id)
        return {"session_id": row[0], "created_at_ms": row[1], "name": row[2]}

    def close(self) -> None:
        self.connection.close()

    def _delete_everything(self) -> None:
        self.connection.execute("DELETE FROM records")
        self.connection.execute("DELETE FROM sessions")
        self.connection.execute("DELETE FROM chain_state")
        self.connection.execute("DELETE FROM app_state")
