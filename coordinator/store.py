"""
Decision Core — Checkpoint Store

Durable persistence for workflow states, the decision history, the
communication log and the receiver dedup table. Backed by engine.db
(SQLite by default, PostgreSQL when configured) so a crashed instance
resumes exactly where it left off.

Write rules:
  - save_state is a compare-and-swap on the state's version column.
    A lost race raises ConcurrentModification; the caller reloads.
  - save_decision is idempotent by decision_id and keeps at most one
    non-superseded decision per request (DecisionConflict otherwise).
  - communication_log and processed_messages are insert-if-absent.
  - Every database error surfaces as StoreUnavailable.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator

from coordinator.errors import ConcurrentModification, DecisionConflict, StoreUnavailable
from coordinator.types import Decision, WorkflowState, WorkflowStatus
from engine.db import DatabaseBackend, create_backend
from protocol.messages import AgentMessage

logger = logging.getLogger("decision_core.store")


SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_states (
    request_id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    status TEXT NOT NULL,
    version INTEGER NOT NULL,
    trigger TEXT NOT NULL,
    created_at DOUBLE PRECISION NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_workflow_states_conversation ON workflow_states(conversation_id);
CREATE INDEX IF NOT EXISTS idx_workflow_states_status ON workflow_states(status);

CREATE TABLE IF NOT EXISTS decision_history (
    decision_id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL,
    revision INTEGER NOT NULL,
    decision_type TEXT NOT NULL,
    source TEXT NOT NULL,
    human_approval_status TEXT,
    superseded_by TEXT,
    created_at DOUBLE PRECISION NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_decision_history_request ON decision_history(request_id);

CREATE TABLE IF NOT EXISTS communication_log (
    message_id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    correlation_id TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    recipient_id TEXT NOT NULL,
    message_type TEXT NOT NULL,
    priority TEXT NOT NULL,
    direction TEXT NOT NULL,
    status TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at DOUBLE PRECISION NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_communication_log_conversation ON communication_log(conversation_id);

CREATE TABLE IF NOT EXISTS processed_messages (
    message_id TEXT PRIMARY KEY,
    response TEXT NOT NULL,
    processed_at DOUBLE PRECISION NOT NULL
)
"""

_PAUSED_OR_TERMINAL = (
    WorkflowStatus.COMPLETED.value,
    WorkflowStatus.ERROR.value,
    WorkflowStatus.PAUSED_FOR_HUMAN.value,
)


class CheckpointStore:
    """Persistence port for the workflow runtime."""

    def __init__(self, db: DatabaseBackend | None = None, path: str = ":memory:"):
        self._db = db or create_backend("sqlite", path=path)
        with self._guard("create_tables"):
            self._db.executescript(SCHEMA)

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | None) -> CheckpointStore:
        """
        Config format:
            store:
              backend: sqlite        # or postgres
              path: coordinator.db
              dsn: postgresql://...
        """
        cfg = cfg or {}
        db = create_backend(
            cfg.get("backend"),
            path=cfg.get("path", "coordinator.db"),
            dsn=cfg.get("dsn", ""),
        )
        return cls(db=db)

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except self._db.errors as e:
            logger.error("Store operation %s failed: %s", operation, e)
            raise StoreUnavailable(f"{operation}: {e}") from e

    def transaction(self):
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                store.save_decision(decision)
                store.save_state(state)
                # Both committed atomically, or both rolled back
        """
        return self._db.transaction()

    # ─── Workflow States ─────────────────────────────────────────────

    def save_state(self, state: WorkflowState) -> None:
        """
        Compare-and-swap write. On success state.version is bumped.

        Raises:
            ConcurrentModification: the stored version is not state.version
            StoreUnavailable: database error
        """
        expected = state.version
        new_version = expected + 1
        record = state.to_dict()
        record["version"] = new_version
        data = json.dumps(record, default=str)

        with self._guard("save_state"):
            if expected == 0:
                cur = self._db.execute("""
                    INSERT INTO workflow_states
                    (request_id, conversation_id, status, version, trigger,
                     created_at, updated_at, data)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (request_id) DO NOTHING
                """, (
                    state.request_id, state.conversation_id, state.status.value,
                    new_version, state.request.trigger, state.request.created_at,
                    state.updated_at, data,
                ))
            else:
                cur = self._db.execute("""
                    UPDATE workflow_states
                    SET status = ?, version = ?, updated_at = ?, data = ?
                    WHERE request_id = ? AND version = ?
                """, (
                    state.status.value, new_version, state.updated_at, data,
                    state.request_id, expected,
                ))
            applied = cur.rowcount == 1

        if not applied:
            raise ConcurrentModification(state.request_id, expected)
        state.version = new_version

    def load_state(self, request_id: str) -> WorkflowState | None:
        with self._guard("load_state"):
            row = self._db.fetchone(
                "SELECT version, data FROM workflow_states WHERE request_id = ?",
                (request_id,),
            )
        if row is None:
            return None
        return self._row_to_state(row)

    def list_states(
        self,
        status: str | WorkflowStatus | None = None,
        conversation_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkflowState]:
        query = "SELECT version, data FROM workflow_states WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(WorkflowStatus(status).value)
        if conversation_id:
            query += " AND conversation_id = ?"
            params.append(conversation_id)
        query += " ORDER BY created_at DESC, request_id LIMIT ?"
        params.append(limit)
        with self._guard("list_states"):
            rows = self._db.fetchall(query, tuple(params))
        return [self._row_to_state(r) for r in rows]

    def list_resumable(self) -> list[WorkflowState]:
        """Workflows a booting instance should drive forward."""
        with self._guard("list_resumable"):
            rows = self._db.fetchall(
                "SELECT version, data FROM workflow_states "
                "WHERE status NOT IN (?, ?, ?) ORDER BY created_at, request_id",
                _PAUSED_OR_TERMINAL,
            )
        return [self._row_to_state(r) for r in rows]

    @staticmethod
    def _row_to_state(row: dict[str, Any]) -> WorkflowState:
        state = WorkflowState.from_dict(json.loads(row["data"]))
        state.version = int(row["version"])
        return state

    # ─── Decision History ────────────────────────────────────────────

    def save_decision(self, decision: Decision) -> None:
        """
        Record a decision. Re-saving an existing decision_id only updates
        its human-approval fields. A decision with `supersedes` retires the
        prior one in the same transaction.

        Raises:
            DecisionConflict: another non-superseded decision exists, or the
                decision_id is already recorded with another type or source
            StoreUnavailable: database error
        """
        data = json.dumps(decision.to_dict(), default=str)
        with self._guard("save_decision"), self._db.transaction():
            existing = self._db.fetchone(
                "SELECT decision_type, source, superseded_by FROM decision_history "
                "WHERE decision_id = ?",
                (decision.decision_id,),
            )
            if existing is not None:
                if (existing["decision_type"], existing["source"]) != (decision.decision_type, decision.source):
                    raise DecisionConflict(
                        f"decision {decision.decision_id} is recorded as {existing['source']} "
                        f"{existing['decision_type']}; refusing to rewrite it as "
                        f"{decision.source} {decision.decision_type}"
                    )
                if existing["superseded_by"] is None:
                    self._db.execute("""
                        UPDATE decision_history SET human_approval_status = ?, data = ?
                        WHERE decision_id = ?
                    """, (decision.human_approval_status, data, decision.decision_id))
                return

            if decision.supersedes:
                self._db.execute("""
                    UPDATE decision_history SET superseded_by = ?
                    WHERE decision_id = ? AND superseded_by IS NULL
                """, (decision.decision_id, decision.supersedes))

            active = self._db.fetchone(
                "SELECT decision_id FROM decision_history "
                "WHERE request_id = ? AND superseded_by IS NULL",
                (decision.request_id,),
            )
            if active is not None:
                raise DecisionConflict(
                    f"request {decision.request_id} already has live decision "
                    f"{active['decision_id']}; {decision.decision_id} must supersede it"
                )

            self._db.execute("""
                INSERT INTO decision_history
                (decision_id, request_id, revision, decision_type, source,
                 human_approval_status, superseded_by, created_at, data)
                VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """, (
                decision.decision_id, decision.request_id, decision.revision,
                decision.decision_type, decision.source, decision.human_approval_status,
                decision.created_at, data,
            ))
        logger.debug("Recorded decision %s (%s)", decision.decision_id, decision.decision_type)

    def get_decisions(self, request_id: str) -> list[dict[str, Any]]:
        """Full decision history for a request, oldest revision first."""
        with self._guard("get_decisions"):
            rows = self._db.fetchall(
                "SELECT data, superseded_by FROM decision_history "
                "WHERE request_id = ? ORDER BY revision",
                (request_id,),
            )
        return [
            {**json.loads(r["data"]), "superseded_by": r["superseded_by"]}
            for r in rows
        ]

    def get_active_decision(self, request_id: str) -> Decision | None:
        with self._guard("get_active_decision"):
            row = self._db.fetchone(
                "SELECT data FROM decision_history "
                "WHERE request_id = ? AND superseded_by IS NULL",
                (request_id,),
            )
        return Decision.from_dict(json.loads(row["data"])) if row else None

    # ─── Communication Log ───────────────────────────────────────────

    def append_communication_log(self, message: AgentMessage, direction: str, status: str) -> bool:
        """Append a message; False if its message_id is already logged."""
        with self._guard("append_communication_log"):
            cur = self._db.execute("""
                INSERT INTO communication_log
                (message_id, conversation_id, correlation_id, sender_id, recipient_id,
                 message_type, priority, direction, status, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (message_id) DO NOTHING
            """, (
                message.message_id, message.conversation_id, message.correlation_id,
                message.sender_id, message.recipient_id, message.type, message.priority,
                direction, status, json.dumps(message.payload, default=str), time.time(),
            ))
            return cur.rowcount == 1

    def get_communication_log(self, conversation_id: str) -> list[dict[str, Any]]:
        with self._guard("get_communication_log"):
            rows = self._db.fetchall(
                "SELECT * FROM communication_log WHERE conversation_id = ? "
                "ORDER BY created_at, message_id",
                (conversation_id,),
            )
        for r in rows:
            r["payload"] = json.loads(r["payload"])
        return rows

    # ─── Receiver Dedup ──────────────────────────────────────────────

    def get_processed(self, message_id: str) -> dict[str, Any] | None:
        with self._guard("get_processed"):
            row = self._db.fetchone(
                "SELECT response FROM processed_messages WHERE message_id = ?",
                (message_id,),
            )
        return json.loads(row["response"]) if row else None

    def record_processed(self, message_id: str, response: dict[str, Any]) -> bool:
        with self._guard("record_processed"):
            cur = self._db.execute("""
                INSERT INTO processed_messages (message_id, response, processed_at)
                VALUES (?, ?, ?)
                ON CONFLICT (message_id) DO NOTHING
            """, (message_id, json.dumps(response, default=str), time.time()))
            return cur.rowcount == 1

    def dedup_table(self) -> StoreDedupTable:
        return StoreDedupTable(self)

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self, days: int = 7) -> dict[str, Any]:
        """Workflow counts, latency and success rate over a window."""
        since = time.time() - days * 86400
        with self._guard("stats"):
            by_status = self._db.fetchall(
                "SELECT status, COUNT(*) AS cnt FROM workflow_states "
                "WHERE created_at >= ? GROUP BY status",
                (since,),
            )
            latency = self._db.fetchone(
                "SELECT AVG(updated_at - created_at) AS avg_s FROM workflow_states "
                "WHERE created_at >= ? AND status = ?",
                (since, WorkflowStatus.COMPLETED.value),
            )
            by_source = self._db.fetchall(
                "SELECT source, COUNT(*) AS cnt FROM decision_history "
                "WHERE created_at >= ? AND superseded_by IS NULL GROUP BY source",
                (since,),
            )

        counts = {r["status"]: int(r["cnt"]) for r in by_status}
        completed = counts.get(WorkflowStatus.COMPLETED.value, 0)
        failed = counts.get(WorkflowStatus.ERROR.value, 0)
        finished = completed + failed
        avg = latency["avg_s"] if latency else None
        return {
            "window_days": days,
            "total": sum(counts.values()),
            "by_status": counts,
            "pending_approvals": counts.get(WorkflowStatus.PAUSED_FOR_HUMAN.value, 0),
            "avg_latency_s": round(float(avg), 3) if avg is not None else None,
            "success_rate": round(completed / finished, 4) if finished else None,
            "decisions_by_source": {r["source"]: int(r["cnt"]) for r in by_source},
        }

    def close(self):
        self._db.close()


class StoreDedupTable:
    """Receiver dedup table persisted in processed_messages."""

    def __init__(self, store: CheckpointStore):
        self._store = store

    def get(self, message_id: str) -> dict[str, Any] | None:
        return self._store.get_processed(message_id)

    def put(self, message_id: str, response: dict[str, Any]) -> bool:
        return self._store.record_processed(message_id, response)
