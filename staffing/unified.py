from __future__ import annotations

import datetime
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from sqlalchemy.exc import SQLAlchemyError

from staffing.database import GeneratedShift, Shift, list_generated_shifts, list_manual_shifts
from staffing.errors import PersistenceError, StaffingError
from staffing.generator.api import run_scheduled_generation
from staffing.roles import describe_scope, facility_scope
from staffing.settings import cold_start_horizon_days

logger = logging.getLogger(__name__)

SOURCE_GENERATED = "generated"
SOURCE_MANUAL = "manual"


@dataclass(frozen=True)
class UnifiedShift:
    id: Union[int, str]
    source: str
    title: str
    date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    department: str
    specialty: str
    facility_id: int
    facility_name: str
    status: str
    rate: float
    urgency: str
    description: str
    required_workers: int
    total_positions: int
    assigned_staff_ids: List[int] = field(default_factory=list)
    template_id: Optional[int] = None
    shift_position: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["date"] = self.date.isoformat()
        payload["start_time"] = self.start_time.strftime("%H:%M")
        payload["end_time"] = self.end_time.strftime("%H:%M")
        return payload


@dataclass
class UnifiedFeed:
    shifts: List[UnifiedShift]
    metadata: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"shifts": [shift.to_dict() for shift in self.shifts], "metadata": dict(self.metadata)}


def project_generated(shift: GeneratedShift) -> UnifiedShift:
    return UnifiedShift(
        id=f"{shift.id}-{shift.shift_position or 0}",
        source=SOURCE_GENERATED,
        title=shift.title or "Untitled Shift",
        date=shift.date,
        start_time=shift.start_time,
        end_time=shift.end_time,
        department=shift.department or "General",
        specialty=shift.specialty or "General",
        facility_id=shift.facility_id,
        facility_name=shift.facility_name or "Unknown Facility",
        status=shift.status or "open",
        rate=float(shift.rate or 0.0),
        urgency=shift.urgency or "medium",
        description=shift.description or "Generated shift",
        required_workers=int(shift.required_staff or 1),
        total_positions=int(shift.max_staff or shift.required_staff or 1),
        assigned_staff_ids=list(shift.assigned_staff_ids or []),
        template_id=shift.template_id,
        shift_position=shift.shift_position,
    )


def project_manual(shift: Shift) -> UnifiedShift:
    return UnifiedShift(
        id=shift.id,
        source=SOURCE_MANUAL,
        title=shift.title or "Manual Shift",
        date=shift.date,
        start_time=shift.start_time,
        end_time=shift.end_time,
        department=shift.department or "General",
        specialty=shift.specialty or "General",
        facility_id=shift.facility_id,
        facility_name=shift.facility_name or "Unknown Facility",
        status=shift.status or "open",
        rate=float(shift.rate or 0.0),
        urgency=shift.urgency or "medium",
        description=shift.description or "Manual shift",
        required_workers=int(shift.required_staff or 1),
        total_positions=int(shift.required_staff or 1),
        assigned_staff_ids=list(shift.assigned_staff_ids or []),
    )


def _read_generated(session_factory: Callable) -> List[GeneratedShift]:
    with session_factory() as session:
        return list_generated_shifts(session)


def _read_manual(session_factory: Callable) -> List[Shift]:
    with session_factory() as session:
        return list_manual_shifts(session)


def _cold_start(session_factory: Callable, today: Optional[datetime.date]) -> None:
    logger.info("No generated shifts found; regenerating from active templates")
    try:
        result = run_scheduled_generation(
            session_factory,
            horizon_days=cold_start_horizon_days(),
            today=today,
            actor="unified-view",
        )
    except (StaffingError, SQLAlchemyError) as exc:
        logger.warning(f"Cold-start regeneration failed: {exc}")
        return
    logger.info(
        f"Cold-start regeneration created {result['shifts_generated']} shifts "
        f"from {result['succeeded']} templates"
    )


def filter_by_facility(shifts: Iterable[UnifiedShift], scope: Optional[Set[int]]) -> List[UnifiedShift]:
    if scope is None:
        return list(shifts)
    return [shift for shift in shifts if shift.facility_id in scope]


def collect_unified_shifts(
    session_factory: Callable,
    caller_role: Optional[str],
    caller_facility_ids: Optional[Iterable[int]] = None,
    *,
    today: Optional[datetime.date] = None,
) -> UnifiedFeed:
    """Merge generated and manual shifts into one facility-filtered, date-ordered feed.

    A failing source is reported in the metadata and the other source is
    still returned; PersistenceError is raised only when both fail.
    """
    failed: List[str] = []
    generated: List[GeneratedShift] = []
    manual: List[Shift] = []

    try:
        generated = _read_generated(session_factory)
        if not generated:
            _cold_start(session_factory, today)
            generated = _read_generated(session_factory)
    except SQLAlchemyError as exc:
        logger.warning(f"Reading generated shifts failed: {exc}")
        failed.append(SOURCE_GENERATED)
        generated = []

    try:
        manual = _read_manual(session_factory)
    except SQLAlchemyError as exc:
        logger.warning(f"Reading manual shifts failed: {exc}")
        failed.append(SOURCE_MANUAL)
        manual = []

    if len(failed) == 2:
        raise PersistenceError("Both generated and manual shift sources failed.")

    combined = [project_generated(shift) for shift in generated]
    combined.extend(project_manual(shift) for shift in manual)

    scope = facility_scope(caller_role, caller_facility_ids)
    visible = filter_by_facility(combined, scope)
    if scope is not None:
        logger.info(f"Facility filtering for {describe_scope(scope)}: {len(combined)} -> {len(visible)} shifts")
    visible.sort(key=lambda shift: (shift.date, shift.start_time))

    metadata = {
        "total_shifts": len(visible),
        "generated_shifts": len(generated),
        "manual_shifts": len(manual),
        "facility_filtered": scope is not None,
        "failed_sources": failed,
        "last_updated": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
    return UnifiedFeed(shifts=visible, metadata=metadata)


def get_unified_shifts(
    session_factory: Callable,
    caller_role: Optional[str],
    caller_facility_ids: Optional[Iterable[int]] = None,
    *,
    today: Optional[datetime.date] = None,
) -> List[UnifiedShift]:
    return collect_unified_shifts(session_factory, caller_role, caller_facility_ids, today=today).shifts
