from __future__ import annotations

import datetime
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from staffing.database import GeneratedShift, list_templates, occupied_slots, translate_errors
from staffing.errors import StaffingError
from staffing.settings import default_horizon_days
from .engine import ShiftGenerator
from .recurrence import RecurrenceExpander

logger = logging.getLogger(__name__)


def generate_shifts_from_template(
    session_factory: Callable,
    template_id: int,
    start: datetime.date,
    end: datetime.date,
    *,
    skip_existing: bool = True,
    actor: str = "system",
) -> List[GeneratedShift]:
    if start is None or end is None:
        raise ValueError("start and end dates are required.")
    with session_factory() as session:
        engine = ShiftGenerator(session, actor=actor)
        return engine.generate(template_id, start, end, skip_existing=skip_existing)


def run_scheduled_generation(
    session_factory: Callable,
    *,
    horizon_days: Optional[int] = None,
    today: Optional[datetime.date] = None,
    actor: str = "scheduler",
) -> Dict[str, Any]:
    """Top up every active template to its horizon.

    Each template runs in its own session so one failure does not abort the
    rest of the sweep. ``horizon_days`` overrides the per-template horizon.
    """
    base = today or datetime.date.today()
    with session_factory() as session, translate_errors("Listing active templates"):
        templates = [(template.id, template.name, template.horizon_days) for template in list_templates(session, is_active=True)]

    summary: Dict[str, Any] = {
        "processed": 0,
        "succeeded": 0,
        "errors": [],
        "shifts_generated": 0,
        "range_start": base.isoformat(),
    }
    for template_id, name, template_horizon in templates:
        summary["processed"] += 1
        days = horizon_days if horizon_days is not None else (template_horizon or default_horizon_days())
        end = base + datetime.timedelta(days=max(0, int(days)))
        try:
            with session_factory() as session:
                created = ShiftGenerator(session, actor=actor).generate(template_id, base, end)
        except (StaffingError, SQLAlchemyError) as exc:
            logger.warning(f"Scheduled generation failed for template {template_id} ({name}): {exc}")
            summary["errors"].append({"template_id": template_id, "error": str(exc)})
            continue
        summary["succeeded"] += 1
        summary["shifts_generated"] += len(created)

    logger.info(
        f"Scheduled generation: {summary['shifts_generated']} shifts from "
        f"{summary['succeeded']}/{summary['processed']} active templates, "
        f"{len(summary['errors'])} errors"
    )
    return summary


def get_shifts_to_generate(
    session_factory: Callable,
    horizon_days: int = 30,
    *,
    today: Optional[datetime.date] = None,
) -> List[Dict[str, Any]]:
    """Report active templates whose horizon has dates with unfilled positions."""
    base = today or datetime.date.today()
    end = base + datetime.timedelta(days=max(0, int(horizon_days)))
    result: List[Dict[str, Any]] = []
    with session_factory() as session, translate_errors("Checking templates for missing shifts"):
        for template in list_templates(session, is_active=True):
            occupied = occupied_slots(session, template.id, base, end)
            positions = max(1, int(template.min_staff or 1))
            missing: List[str] = []
            for day in RecurrenceExpander(template.weekday_set, base, end):
                if any((day, position) not in occupied for position in range(positions)):
                    missing.append(day.isoformat())
            if missing:
                result.append({"template": template, "missing_dates": missing})
    return result
