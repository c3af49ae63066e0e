from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select

from staffing.database import (
    GeneratedShift,
    delete_generated_shifts,
    get_template,
    list_generated_shifts,
    slot_unique_key,
    translate_errors,
)
from staffing.errors import ConfigurationError
from staffing.generator.recurrence import shift_hours, weekday_index

logger = logging.getLogger(__name__)


def validate_shift_timing(session_factory: Callable, template_id: int) -> Dict[str, Any]:
    """Repair instances that drifted from their template's current definition.

    Instances on a weekday the template no longer covers are deleted; instances
    whose start/end differ are rewritten to the template times. Status and
    assignments are never touched. Returns ``{"fixed": int, "issues": [str]}``.
    """
    issues: List[str] = []
    fixed = 0
    with session_factory() as session, translate_errors(f"Validating template {template_id}"):
        template = get_template(session, template_id)
        if template is None:
            raise ConfigurationError(template_id, "missing")
        allowed_days = template.weekday_set
        wrong_day_ids: List[int] = []
        for shift in list_generated_shifts(session, template_id=template_id):
            if weekday_index(shift.date) not in allowed_days:
                issues.append(f"Shift on {shift.date.isoformat()} is on wrong day of week")
                wrong_day_ids.append(shift.id)
                continue
            if shift.start_time != template.start_time or shift.end_time != template.end_time:
                issues.append(f"Shift on {shift.date.isoformat()} has incorrect times")
                shift.start_time = template.start_time
                shift.end_time = template.end_time
                shift.total_hours = shift_hours(template.start_time, template.end_time)
                shift.updated_at = datetime.datetime.now(datetime.timezone.utc)
                fixed += 1
        fixed += delete_generated_shifts(session, wrong_day_ids)
        session.commit()

    if issues:
        logger.info(f"Template {template_id}: repaired {fixed} drifted shifts")
    return {"fixed": fixed, "issues": issues}


def find_duplicate_groups(session, template_id: Optional[int] = None) -> List[Tuple[int, datetime.date, int]]:
    stmt = (
        select(GeneratedShift.template_id, GeneratedShift.date, GeneratedShift.shift_position)
        .group_by(GeneratedShift.template_id, GeneratedShift.date, GeneratedShift.shift_position)
        .having(func.count(GeneratedShift.id) > 1)
    )
    if template_id is not None:
        stmt = stmt.where(GeneratedShift.template_id == template_id)
    return [(row[0], row[1], int(row[2])) for row in session.execute(stmt)]


def remove_duplicate_shifts(session_factory: Callable, template_id: Optional[int] = None) -> int:
    """Collapse instances sharing (template_id, date, shift_position), keeping the lowest id."""
    with session_factory() as session, translate_errors("Removing duplicate shifts"):
        groups = find_duplicate_groups(session, template_id)
        if not groups:
            return 0
        members: Dict[Tuple[int, datetime.date, int], List[int]] = defaultdict(list)
        for group_template_id, day, position in groups:
            stmt = select(GeneratedShift.id).where(
                GeneratedShift.template_id == group_template_id,
                GeneratedShift.date == day,
                GeneratedShift.shift_position == position,
            )
            members[(group_template_id, day, position)].extend(session.scalars(stmt))
        doomed: List[int] = []
        survivors: Dict[int, Tuple[int, datetime.date, int]] = {}
        for slot, ids in members.items():
            keep = min(ids)
            survivors[keep] = slot
            doomed.extend(shift_id for shift_id in ids if shift_id != keep)
        removed = delete_generated_shifts(session, doomed)
        session.flush()
        # Keyless survivors get their slot key so the insert conflict guards them from now on.
        for shift in session.scalars(
            select(GeneratedShift).where(GeneratedShift.id.in_(list(survivors)), GeneratedShift.unique_key.is_(None))
        ):
            shift.unique_key = slot_unique_key(*survivors[shift.id])
        session.commit()

    logger.info(f"Removed {removed} duplicate generated shifts across {len(groups)} slots")
    return removed
