from __future__ import annotations

import json
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from fleetalerts import permissions
from fleetalerts.db import database as db
from fleetalerts.engine.runtime import AlertEngine
from fleetalerts.errors import OperationRejected, ReasonCode, TimerSchedulingError
from fleetalerts.models.alert import Alert, AlertCategory, AlertStatus, AlertTransition, Severity
from fleetalerts.models.fact import Fact
from fleetalerts.models.scope import AlertFilters, Caller, Role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# ── WebSocket manager ────────────────────────────────────

_ws_clients: list[WebSocket] = []


async def broadcast_event(data: dict) -> None:
    dead: list[WebSocket] = []
    payload = json.dumps(data, default=str)
    for ws in _ws_clients:
        try:
            await ws.send_text(payload)
        except Exception:
            dead.append(ws)
    for ws in dead:
        _ws_clients.remove(ws)


async def broadcast_transition(alert: Alert, transition: AlertTransition) -> None:
    await broadcast_event({
        "type": "alert_transition",
        "data": {
            "alert": alert.model_dump(mode="json"),
            "transition": transition.model_dump(mode="json"),
        },
    })


# ── Dependencies ─────────────────────────────────────────

_STATUS_CODES = {
    ReasonCode.NOT_FOUND: 404,
    ReasonCode.PERMISSION_DENIED: 403,
    ReasonCode.CONCURRENCY_CONFLICT: 409,
}


def _http_error(exc: OperationRejected | TimerSchedulingError) -> HTTPException:
    if isinstance(exc, TimerSchedulingError):
        # Nothing was committed; the caller may retry once the store is back
        return HTTPException(503, detail={"message": str(exc), "code": ReasonCode.TIMER_STORE_UNAVAILABLE.value})
    return HTTPException(
        _STATUS_CODES.get(exc.code, 422),
        detail={"message": exc.message, "code": exc.code.value},
    )


def get_engine(request: Request) -> AlertEngine:
    return request.app.state.engine


async def get_caller(
    x_user_id: str | None = Header(None),
    x_role: str | None = Header(None),
    x_company_id: str | None = Header(None),
    x_vessel_id: str | None = Header(None),
) -> Caller:
    if not (x_user_id and x_role and x_company_id):
        raise HTTPException(401, "Caller identity headers missing")
    try:
        role = Role(x_role.lower())
    except ValueError:
        raise HTTPException(400, f"Unknown role {x_role!r}")
    try:
        grant = permissions.grant_for(role, x_company_id, x_vessel_id)
    except OperationRejected as exc:
        raise _http_error(exc)
    return Caller(user_id=x_user_id, role=role, grant=grant)


# ── Alerts ───────────────────────────────────────────────

@router.get("/alerts")
async def list_alerts(
    severity: Severity | None = None,
    category: AlertCategory | None = None,
    status: AlertStatus | None = None,
    vessel_id: str | None = None,
    include_terminal: bool = False,
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        permissions.require_list(caller)
    except OperationRejected as exc:
        raise _http_error(exc)
    filters = AlertFilters(
        severity=severity, category=category, status=status, vessel_id=vessel_id,
        include_terminal=include_terminal, limit=limit, offset=offset,
    )
    alerts = await engine.scope.visible_alerts(caller, filters)
    return {"alerts": [a.model_dump(mode="json") for a in alerts], "count": len(alerts)}


@router.get("/alerts/counts")
async def alert_counts(
    vessel_id: str | None = None,
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        permissions.require(caller, "view_summary")
    except OperationRejected as exc:
        raise _http_error(exc)
    counts = await engine.scope.aggregate_counts(caller, AlertFilters(vessel_id=vessel_id))
    return counts.model_dump(mode="json")


@router.get("/alerts/counts/vessels")
async def alert_counts_by_vessel(
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        permissions.require(caller, "view_summary")
    except OperationRejected as exc:
        raise _http_error(exc)
    views = await engine.scope.per_vessel_counts(caller)
    return {"views": {k: v.model_dump(mode="json") for k, v in views.items()}}


@router.get("/alerts/{alert_id}")
async def get_alert(
    alert_id: str,
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        alert = await engine.scope.get_alert(caller, alert_id)
    except OperationRejected as exc:
        raise _http_error(exc)
    return alert.model_dump(mode="json")


@router.get("/alerts/{alert_id}/history")
async def get_alert_history(
    alert_id: str,
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        await engine.scope.get_alert(caller, alert_id)
    except OperationRejected as exc:
        raise _http_error(exc)
    transitions = await db.get_transitions(alert_id)
    return {"transitions": [t.model_dump(mode="json") for t in transitions]}


class NotesBody(BaseModel):
    notes: str | None = None


class SnoozeBody(BaseModel):
    hours: float = Field(gt=0)
    reason: str | None = None


class ReassignBody(BaseModel):
    user_id: str


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    body: NotesBody | None = None,
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        permissions.require(caller, "acknowledge")
        await engine.scope.get_alert(caller, alert_id)
        alert = await engine.lifecycle.acknowledge(alert_id, caller.user_id, notes=body.notes if body else None)
    except (OperationRejected, TimerSchedulingError) as exc:
        raise _http_error(exc)
    return {"status": alert.status.value, "alert": alert.model_dump(mode="json")}


@router.post("/alerts/{alert_id}/snooze")
async def snooze_alert(
    alert_id: str,
    body: SnoozeBody,
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        permissions.require(caller, "snooze")
        await engine.scope.get_alert(caller, alert_id)
        alert = await engine.lifecycle.snooze(
            alert_id, timedelta(hours=body.hours), reason=body.reason, actor=caller.user_id
        )
    except (OperationRejected, TimerSchedulingError) as exc:
        raise _http_error(exc)
    return {
        "status": alert.status.value,
        "until": alert.snoozed_until.isoformat() if alert.snoozed_until else None,
        "alert": alert.model_dump(mode="json"),
    }


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(
    alert_id: str,
    body: NotesBody | None = None,
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        permissions.require(caller, "resolve")
        await engine.scope.get_alert(caller, alert_id)
        alert = await engine.lifecycle.resolve(alert_id, caller.user_id, notes=body.notes if body else None)
    except (OperationRejected, TimerSchedulingError) as exc:
        raise _http_error(exc)
    return {"status": alert.status.value, "alert": alert.model_dump(mode="json")}


@router.post("/alerts/{alert_id}/reassign")
async def reassign_alert(
    alert_id: str,
    body: ReassignBody,
    caller: Caller = Depends(get_caller),
    engine: AlertEngine = Depends(get_engine),
):
    try:
        permissions.require(caller, "reassign")
        await engine.scope.get_alert(caller, alert_id)
        alert = await engine.lifecycle.reassign(alert_id, body.user_id, caller.user_id)
    except (OperationRejected, TimerSchedulingError) as exc:
        raise _http_error(exc)
    return {"status": "reassigned", "alert": alert.model_dump(mode="json")}


# ── Fact ingestion ───────────────────────────────────────

@router.post("/facts", status_code=202)
async def ingest_facts(
    facts: list[Fact],
    engine: AlertEngine = Depends(get_engine),
):
    for fact in facts:
        await engine.bus.publish(fact)
    return {"status": "queued", "count": len(facts)}


# ── Rules & status ───────────────────────────────────────

@router.get("/rules")
async def get_rules(engine: AlertEngine = Depends(get_engine)):
    return engine.rule_table.model_dump(mode="json")


@router.get("/status")
async def get_status(engine: AlertEngine = Depends(get_engine)):
    return {
        "status": "running",
        "rule_version": engine.rule_table.version,
        "pending_facts": engine.bus.pending,
        "scheduler_running": engine.scheduler.running,
        "websocket_clients": len(_ws_clients),
    }


# ── WebSocket ────────────────────────────────────────────

ws_router = APIRouter()


@ws_router.websocket("/ws/alerts")
async def websocket_alerts(ws: WebSocket):
    await ws.accept()
    _ws_clients.append(ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if ws in _ws_clients:
            _ws_clients.remove(ws)
