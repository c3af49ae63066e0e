from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from staffing.database import (
    GeneratedShift,
    ShiftTemplate,
    get_template,
    increment_generated_count,
    insert_generated_shifts,
    occupied_slots,
    slot_unique_key,
)
from staffing.errors import ConfigurationError, PersistenceError
from staffing.generator.recurrence import RecurrenceExpander, shift_hours
from staffing.settings import insert_batch_size

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotPlan:
    date: datetime.date
    position: int


class ShiftGenerator:
    """Expands a template's weekly pattern into dated, per-position shift instances.

    Every instance is keyed by (template_id, date, shift_position). A slot is
    only planned when no live instance holds that exact key, and the insert
    itself ignores key conflicts, so concurrent or repeated runs converge on
    the same instance set.
    """

    def __init__(
        self,
        session,
        actor: str = "system",
        *,
        batch_size: Optional[int] = None,
    ) -> None:
        self.session = session
        self.actor = actor or "system"
        try:
            self.batch_size: int = max(1, int(batch_size or insert_batch_size()))
        except (TypeError, ValueError):
            self.batch_size = 100

    def load_template(self, template: Union[int, ShiftTemplate]) -> ShiftTemplate:
        template_id = template.id if isinstance(template, ShiftTemplate) else template
        current = get_template(self.session, template_id)
        if current is None:
            raise ConfigurationError(template_id, "missing")
        if not current.is_active:
            raise ConfigurationError(template_id, "inactive")
        return current

    def plan_slots(
        self,
        template: ShiftTemplate,
        start: datetime.date,
        end: datetime.date,
    ) -> List[SlotPlan]:
        positions = max(1, int(template.min_staff or 1))
        dates = RecurrenceExpander(template.weekday_set, start, end)
        # Rows without a unique_key never hit the insert conflict, so occupancy is always read.
        occupied = occupied_slots(self.session, template.id, start, end)
        plan: List[SlotPlan] = []
        for day in dates:
            for position in range(positions):
                if (day, position) in occupied:
                    continue
                plan.append(SlotPlan(day, position))
        return plan

    def build_row(self, template: ShiftTemplate, slot: SlotPlan) -> Dict[str, Any]:
        now = datetime.datetime.now(datetime.timezone.utc)
        min_staff = max(1, int(template.min_staff or 1))
        return {
            "unique_key": slot_unique_key(template.id, slot.date, slot.position),
            "template_id": template.id,
            "date": slot.date,
            "shift_position": slot.position,
            "title": template.name,
            "department": template.department,
            "specialty": template.specialty,
            "facility_id": template.facility_id,
            "facility_name": template.facility_name or "",
            "building_id": template.building_id,
            "building_name": template.building_name,
            "start_time": template.start_time,
            "end_time": template.end_time,
            "rate": float(template.hourly_rate or 0.0),
            "status": "open",
            "urgency": "medium",
            "description": template.notes or f"Generated from template: {template.name}",
            "required_staff": min_staff,
            "min_staff": min_staff,
            "max_staff": max(min_staff, int(template.max_staff or min_staff)),
            "total_hours": shift_hours(template.start_time, template.end_time),
            "assigned_staff_ids": [],
            "created_at": now,
            "updated_at": now,
        }

    def generate(
        self,
        template: Union[int, ShiftTemplate],
        start: datetime.date,
        end: datetime.date,
        *,
        skip_existing: bool = True,
    ) -> List[GeneratedShift]:
        """Create the missing instances for ``template`` between ``start`` and ``end`` inclusive.

        Raises ConfigurationError when the template is missing or inactive and
        PersistenceError when the store fails. Key conflicts are not errors.
        Occupied positions are skipped regardless of ``skip_existing``.
        """
        try:
            current = self.load_template(template)
            slots = self.plan_slots(current, start, end)
            if not slots:
                self.session.commit()
                logger.info(
                    f"Template {current.id} ({current.name}): no missing slots "
                    f"between {start.isoformat()} and {end.isoformat()}"
                )
                return []
            rows = [self.build_row(current, slot) for slot in slots]
            created = insert_generated_shifts(self.session, rows, batch_size=self.batch_size)
            increment_generated_count(self.session, current.id, len(created))
            self.session.commit()
        except ConfigurationError:
            self.session.rollback()
            raise
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(f"Generating shifts for template {getattr(template, 'id', template)} failed: {exc}") from exc
        if created:
            self.session.refresh(current)
        logger.info(
            f"Template {current.id} ({current.name}): generated {len(created)} of {len(rows)} "
            f"planned shifts between {start.isoformat()} and {end.isoformat()} (actor={self.actor})"
        )
        return created
