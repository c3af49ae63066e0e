"""FastAPI wrapper over the shift generation engine.

Authentication lives upstream; the caller's role and facility associations
arrive as query parameters and are only used for facility scoping.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from staffing import database
from staffing.database import GeneratedShift, ShiftTemplate
from staffing.errors import ConfigurationError, PersistenceError
from staffing.generator.api import (
    generate_shifts_from_template,
    get_shifts_to_generate,
    run_scheduled_generation,
)
from staffing.templates import create_template, delete_template, update_template
from staffing.unified import collect_unified_shifts
from staffing.validation import remove_duplicate_shifts, validate_shift_timing


@asynccontextmanager
async def lifespan(_: FastAPI):
    database.init_database()
    yield


app = FastAPI(title="Staffing Shift Engine API", version="0.1", lifespan=lifespan)


def get_session_factory():
    return database.SessionLocal


def _parse_date(value: Optional[str], field: str) -> Optional[datetime.date]:
    if value in (None, ""):
        return None
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _actor(value: Any) -> str:
    return str(value if value is not None else "").strip() or "api"


def _error_response(exc: Exception) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        status = 409 if exc.reason == "inactive" else 404
        return HTTPException(status_code=status, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _template_to_dict(template: ShiftTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "facility_id": template.facility_id,
        "facility_name": template.facility_name,
        "department": template.department,
        "specialty": template.specialty,
        "shift_type": template.shift_type,
        "start_time": template.start_time.strftime("%H:%M"),
        "end_time": template.end_time.strftime("%H:%M"),
        "days_of_week": sorted(template.weekday_set),
        "min_staff": template.min_staff,
        "max_staff": template.max_staff,
        "hourly_rate": template.hourly_rate,
        "horizon_days": template.horizon_days,
        "is_active": template.is_active,
        "generated_shifts_count": template.generated_shifts_count,
    }


def _generated_to_dict(shift: GeneratedShift) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "template_id": shift.template_id,
        "date": shift.date.isoformat(),
        "shift_position": shift.shift_position,
        "title": shift.title,
        "facility_id": shift.facility_id,
        "start_time": shift.start_time.strftime("%H:%M"),
        "end_time": shift.end_time.strftime("%H:%M"),
        "rate": shift.rate,
        "status": shift.status,
        "assigned_staff_ids": list(shift.assigned_staff_ids or []),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/shifts")
def unified_shifts(
    role: Optional[str] = Query(None),
    facility_id: Optional[List[int]] = Query(None),
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    try:
        feed = collect_unified_shifts(session_factory, role, facility_id)
    except PersistenceError as exc:
        raise _error_response(exc) from exc
    return JSONResponse(content=jsonable_encoder(feed.to_dict()))


@app.post("/api/v1/templates")
def create_template_endpoint(payload: Dict[str, Any], session_factory=Depends(get_session_factory)) -> JSONResponse:
    fields = dict(payload)
    actor = _actor(fields.pop("actor", None))
    try:
        template = create_template(session_factory, fields, actor=actor)
    except (ValueError, PersistenceError) as exc:
        raise _error_response(exc) from exc
    return JSONResponse(status_code=201, content=jsonable_encoder(_template_to_dict(template)))


@app.patch("/api/v1/templates/{template_id}")
def update_template_endpoint(
    template_id: int,
    payload: Dict[str, Any],
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    updates = payload.get("updates") or {}
    if not isinstance(updates, dict):
        raise HTTPException(status_code=400, detail="updates must be an object")
    regenerate = bool(payload.get("regenerate_future", True))
    actor = _actor(payload.get("actor"))
    if not updates and not regenerate:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        template = update_template(session_factory, template_id, updates, regenerate, actor=actor)
    except (ValueError, PersistenceError) as exc:
        raise _error_response(exc) from exc
    return JSONResponse(content=jsonable_encoder(_template_to_dict(template)))


@app.delete("/api/v1/templates/{template_id}")
def delete_template_endpoint(template_id: int, session_factory=Depends(get_session_factory)) -> JSONResponse:
    try:
        outcome = delete_template(session_factory, template_id, actor="api")
    except (ValueError, PersistenceError) as exc:
        raise _error_response(exc) from exc
    return JSONResponse(content={"template_id": template_id, "result": outcome})


@app.post("/api/v1/templates/{template_id}/generate")
def generate_endpoint(
    template_id: int,
    payload: Dict[str, Any],
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    start = _parse_date(payload.get("start_date"), "start_date")
    end = _parse_date(payload.get("end_date"), "end_date")
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="start_date and end_date are required")
    try:
        created = generate_shifts_from_template(
            session_factory,
            template_id,
            start,
            end,
            skip_existing=bool(payload.get("skip_existing", True)),
            actor=_actor(payload.get("actor")),
        )
    except (ValueError, PersistenceError) as exc:
        raise _error_response(exc) from exc
    return JSONResponse(
        content=jsonable_encoder({"created": len(created), "shifts": [_generated_to_dict(shift) for shift in created]})
    )


@app.post("/api/v1/templates/{template_id}/validate-timing")
def validate_timing_endpoint(template_id: int, session_factory=Depends(get_session_factory)) -> JSONResponse:
    try:
        result = validate_shift_timing(session_factory, template_id)
    except (ValueError, PersistenceError) as exc:
        raise _error_response(exc) from exc
    return JSONResponse(content=jsonable_encoder(result))


@app.post("/api/v1/shifts/deduplicate")
def deduplicate_endpoint(
    template_id: Optional[int] = Query(None),
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    try:
        removed = remove_duplicate_shifts(session_factory, template_id)
    except PersistenceError as exc:
        raise _error_response(exc) from exc
    return JSONResponse(content={"removed": removed})


@app.get("/api/v1/templates/missing")
def missing_shifts_endpoint(
    days: int = Query(30, ge=0, le=365),
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    try:
        report = get_shifts_to_generate(session_factory, days)
    except PersistenceError as exc:
        raise _error_response(exc) from exc
    payload = [
        {"template": _template_to_dict(item["template"]), "missing_dates": item["missing_dates"]}
        for item in report
    ]
    return JSONResponse(content=jsonable_encoder(payload))


@app.post("/api/v1/templates/apply")
def apply_templates_endpoint(
    payload: Optional[Dict[str, Any]] = None,
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    days = (payload or {}).get("days")
    try:
        horizon = int(days) if days is not None else None
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="days must be an integer")
    try:
        summary = run_scheduled_generation(session_factory, horizon_days=horizon, actor="api")
    except PersistenceError as exc:
        raise _error_response(exc) from exc
    return JSONResponse(content=jsonable_encoder(summary))
