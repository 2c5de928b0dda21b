from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

import aiosqlite

from fleetalerts.config import settings
from fleetalerts.models.alert import ACTIVE_STATUSES, Alert, AlertTransition, as_utc
from fleetalerts.models.fact import Fact
from fleetalerts.models.timer import Timer, TimerKind

logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

_ALERT_COLUMNS = (
    "id", "category", "severity", "status", "title", "description",
    "company_id", "vessel_id", "source_module", "related_entity_type",
    "related_entity_id", "assigned_to_user_id", "created_at", "due_at",
    "acknowledged_at", "acknowledged_by", "snoozed_until", "last_snooze_reason",
    "resolved_at", "resolved_by", "escalated_at", "auto_dismissed_at",
    "escalation_deadline_at", "snooze_count", "escalation_target_roles",
    "rule_version", "metadata", "version",
)
# Columns an update may touch; identity, scope and severity never change
_MUTABLE_COLUMNS = (
    "status", "title", "description", "assigned_to_user_id", "due_at",
    "acknowledged_at", "acknowledged_by", "snoozed_until", "last_snooze_reason",
    "resolved_at", "resolved_by", "escalated_at", "auto_dismissed_at",
    "escalation_deadline_at", "snooze_count", "escalation_target_roles", "metadata",
)
_JSON_COLUMNS = ("escalation_target_roles", "metadata")


async def _connect() -> aiosqlite.Connection:
    """Open a new connection with WAL mode and Row factory."""
    db = await aiosqlite.connect(settings.db_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    return db


async def init_db() -> None:
    Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)
    schema = _SCHEMA_PATH.read_text()
    db = await _connect()
    try:
        await db.executescript(schema)
        await db.commit()
    finally:
        await db.close()


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


# ── Alerts ───────────────────────────────────────────────


def _alert_values(alert: Alert, columns: tuple[str, ...]) -> list:
    data = alert.model_dump(mode="python")
    values = []
    for col in columns:
        value = data[col]
        if col in _JSON_COLUMNS:
            value = json.dumps(value, default=str)
        elif isinstance(value, datetime):
            value = to_iso(value)
        elif hasattr(value, "value"):
            value = value.value
        values.append(value)
    return values


async def insert_alert(alert: Alert, transition: AlertTransition | None = None) -> None:
    placeholders = ", ".join("?" for _ in _ALERT_COLUMNS)
    db = await _connect()
    try:
        await db.execute(
            f"INSERT INTO alerts ({', '.join(_ALERT_COLUMNS)}) VALUES ({placeholders})",
            _alert_values(alert, _ALERT_COLUMNS),
        )
        if transition is not None:
            await _insert_transition(db, transition)
        await db.commit()
    finally:
        await db.close()


async def update_alert(
    alert: Alert,
    expected_version: int,
    transition: AlertTransition | None = None,
) -> bool:
    """Write ``alert`` only if the stored version is still ``expected_version``.

    Returns False on a version mismatch (or a missing row); nothing is written
    in that case. The transition row commits atomically with the update.
    """
    assignments = ", ".join(f"{col} = ?" for col in _MUTABLE_COLUMNS)
    params = _alert_values(alert, _MUTABLE_COLUMNS) + [alert.id, expected_version]
    db = await _connect()
    try:
        cursor = await db.execute(
            f"UPDATE alerts SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
            params,
        )
        if cursor.rowcount == 0:
            await db.rollback()
            return False
        if transition is not None:
            await _insert_transition(db, transition)
        await db.commit()
        return True
    finally:
        await db.close()


async def get_alert(alert_id: str) -> Alert | None:
    db = await _connect()
    try:
        cursor = await db.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,))
        row = await cursor.fetchone()
    finally:
        await db.close()
    return _row_to_alert(row) if row else None


async def list_alerts(
    company_id: str,
    vessel_id: str | None = None,
    severity: str | None = None,
    category: str | None = None,
    status: str | None = None,
    include_terminal: bool = False,
    limit: int | None = None,
    offset: int = 0,
) -> list[Alert]:
    """Alerts of one company; ``vessel_id=None`` means every vessel."""
    clauses: list[str] = ["company_id = ?"]
    params: list = [company_id]
    if vessel_id is not None:
        clauses.append("vessel_id = ?")
        params.append(vessel_id)
    if severity:
        clauses.append("severity = ?")
        params.append(severity)
    if category:
        clauses.append("category = ?")
        params.append(category)
    if status:
        clauses.append("status = ?")
        params.append(status)
    elif not include_terminal:
        clauses.append(f"status IN ({', '.join('?' for _ in ACTIVE_STATUSES)})")
        params.extend(sorted(s.value for s in ACTIVE_STATUSES))
    query = f"SELECT * FROM alerts WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, id"
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
    db = await _connect()
    try:
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
    finally:
        await db.close()
    return [_row_to_alert(r) for r in rows]


async def list_all_active_alerts() -> list[Alert]:
    statuses = sorted(s.value for s in ACTIVE_STATUSES)
    db = await _connect()
    try:
        cursor = await db.execute(
            f"SELECT * FROM alerts WHERE status IN ({', '.join('?' for _ in statuses)}) ORDER BY created_at",
            statuses,
        )
        rows = await cursor.fetchall()
    finally:
        await db.close()
    return [_row_to_alert(r) for r in rows]


async def get_active_alerts_for_entity(company_id: str, category: str, entity_id: str) -> list[Alert]:
    statuses = sorted(s.value for s in ACTIVE_STATUSES)
    db = await _connect()
    try:
        cursor = await db.execute(
            f"""SELECT * FROM alerts
                WHERE company_id = ? AND category = ? AND related_entity_id = ?
                  AND status IN ({', '.join('?' for _ in statuses)})
                ORDER BY created_at""",
            (company_id, category, entity_id, *statuses),
        )
        rows = await cursor.fetchall()
    finally:
        await db.close()
    return [_row_to_alert(r) for r in rows]


# ── Transition history ───────────────────────────────────


async def _insert_transition(db: aiosqlite.Connection, transition: AlertTransition) -> None:
    await db.execute(
        """INSERT INTO alert_transitions (alert_id, from_status, to_status, actor, reason, at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (
            transition.alert_id,
            transition.from_status.value if transition.from_status else None,
            transition.to_status.value,
            transition.actor,
            transition.reason,
            to_iso(transition.at),
        ),
    )


async def get_transitions(alert_id: str) -> list[AlertTransition]:
    db = await _connect()
    try:
        cursor = await db.execute(
            "SELECT * FROM alert_transitions WHERE alert_id = ? ORDER BY id", (alert_id,)
        )
        rows = await cursor.fetchall()
    finally:
        await db.close()
    return [
        AlertTransition(
            alert_id=r["alert_id"],
            from_status=r["from_status"],
            to_status=r["to_status"],
            actor=r["actor"],
            reason=r["reason"],
            at=r["at"],
        )
        for r in rows
    ]


# ── Timers ───────────────────────────────────────────────


async def upsert_timer(alert_id: str, kind: TimerKind, fire_at: datetime) -> None:
    db = await _connect()
    try:
        await db.execute(
            "INSERT OR REPLACE INTO timers (alert_id, kind, fire_at) VALUES (?, ?, ?)",
            (alert_id, kind.value, to_iso(fire_at)),
        )
        await db.commit()
    finally:
        await db.close()


async def delete_timers(alert_id: str, kinds: list[TimerKind] | None = None) -> int:
    db = await _connect()
    try:
        if kinds:
            cursor = await db.execute(
                f"DELETE FROM timers WHERE alert_id = ? AND kind IN ({', '.join('?' for _ in kinds)})",
                (alert_id, *[k.value for k in kinds]),
            )
        else:
            cursor = await db.execute("DELETE FROM timers WHERE alert_id = ?", (alert_id,))
        await db.commit()
        return cursor.rowcount
    finally:
        await db.close()


async def delete_timer_if_unchanged(timer: Timer) -> bool:
    """Remove a fired timer unless it was rescheduled while its handler ran."""
    db = await _connect()
    try:
        cursor = await db.execute(
            "DELETE FROM timers WHERE alert_id = ? AND kind = ? AND fire_at = ?",
            (timer.alert_id, timer.kind.value, to_iso(timer.fire_at)),
        )
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


async def get_due_timers(now: datetime, limit: int = 500) -> list[Timer]:
    db = await _connect()
    try:
        cursor = await db.execute(
            "SELECT * FROM timers WHERE fire_at <= ? ORDER BY fire_at LIMIT ?",
            (to_iso(now), limit),
        )
        rows = await cursor.fetchall()
    finally:
        await db.close()
    return [Timer(alert_id=r["alert_id"], kind=r["kind"], fire_at=r["fire_at"]) for r in rows]


async def get_timers(alert_id: str) -> list[Timer]:
    db = await _connect()
    try:
        cursor = await db.execute(
            "SELECT * FROM timers WHERE alert_id = ? ORDER BY fire_at", (alert_id,)
        )
        rows = await cursor.fetchall()
    finally:
        await db.close()
    return [Timer(alert_id=r["alert_id"], kind=r["kind"], fire_at=r["fire_at"]) for r in rows]


# ── Fact log ─────────────────────────────────────────────


async def insert_fact(fact: Fact) -> None:
    db = await _connect()
    try:
        await db.execute(
            """INSERT OR IGNORE INTO facts
               (id, category, entity_id, company_id, vessel_id, attributes, cleared, source_module, observed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                fact.id,
                fact.category,
                fact.entity_id,
                fact.company_id,
                fact.vessel_id,
                json.dumps(fact.attributes, default=str),
                int(fact.cleared),
                fact.source_module,
                to_iso(fact.observed_at),
            ),
        )
        await db.commit()
    finally:
        await db.close()


async def count_facts() -> int:
    db = await _connect()
    try:
        cursor = await db.execute("SELECT COUNT(*) AS n FROM facts")
        row = await cursor.fetchone()
    finally:
        await db.close()
    return row["n"]


# ── Helpers ──────────────────────────────────────────────


def _row_to_alert(row: aiosqlite.Row) -> Alert:
    d = dict(row)
    for col in _JSON_COLUMNS:
        if isinstance(d.get(col), str):
            try:
                d[col] = json.loads(d[col])
            except (json.JSONDecodeError, TypeError):
                logger.warning("Alert %s has unreadable %s column", d.get("id"), col)
                d[col] = [] if col == "escalation_target_roles" else {}
    return Alert.model_validate(d)
