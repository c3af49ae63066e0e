"""Template authoring and the edit-then-regenerate workflow.

Regeneration only ever replaces capacity nobody has claimed: instances dated
today or later that are still ``open`` with no assigned staff. Anything with
an assignment, a non-open status, or a past date is left exactly as it is.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from staffing.database import (
    GeneratedShift,
    ShiftTemplate,
    apply_template_updates,
    count_template_instances,
    create_template as create_template_row,
    delete_generated_shifts,
    delete_template_row,
    get_template,
    record_audit_log,
    translate_errors,
)
from staffing.errors import ConfigurationError, PersistenceError
from staffing.generator.engine import ShiftGenerator
from staffing.settings import default_horizon_days

logger = logging.getLogger(__name__)


def _regenerable_shift_ids(session, template_id: int, today: datetime.date) -> List[int]:
    stmt = select(GeneratedShift).where(
        GeneratedShift.template_id == template_id,
        GeneratedShift.date >= today,
        GeneratedShift.status == "open",
    )
    return [shift.id for shift in session.scalars(stmt) if not shift.assigned_staff_ids]


def create_template(session_factory: Callable, fields: Dict[str, Any], *, actor: str = "system") -> ShiftTemplate:
    with session_factory() as session, translate_errors("Creating template"):
        template = create_template_row(session, fields)
        record_audit_log(session, user_id=actor, action="TEMPLATE_CREATE", target_id=template.id, payload={"name": template.name})
    return template


def update_template(
    session_factory: Callable,
    template_id: int,
    updates: Dict[str, Any],
    regenerate_future: bool = True,
    *,
    actor: str = "system",
    today: Optional[datetime.date] = None,
) -> ShiftTemplate:
    """Persist ``updates`` and optionally refill unclaimed future slots from the new definition."""
    base = today or datetime.date.today()
    with session_factory() as session:
        try:
            template = get_template(session, template_id)
            if template is None:
                raise ConfigurationError(template_id, "missing")
            template = apply_template_updates(session, template, updates or {})
            record_audit_log(
                session,
                user_id=actor,
                action="TEMPLATE_UPDATE",
                target_id=template.id,
                payload={"fields": sorted((updates or {}).keys()), "regenerate_future": bool(regenerate_future)},
            )
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Updating template {template_id} failed: {exc}") from exc

        if not regenerate_future:
            return template

        try:
            stale_ids = _regenerable_shift_ids(session, template.id, base)
            removed = delete_generated_shifts(session, stale_ids)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError(f"Clearing future shifts for template {template_id} failed: {exc}") from exc
        logger.info(f"Template {template.id} ({template.name}): removed {removed} open future shifts for regeneration")

        if not template.is_active:
            logger.info(f"Template {template.id} is inactive; skipping regeneration")
            return template

        horizon = template.horizon_days or default_horizon_days()
        end = base + datetime.timedelta(days=horizon)
        ShiftGenerator(session, actor=actor).generate(template.id, base, end)
        session.refresh(template)
        return template


def regenerate_template(
    session_factory: Callable,
    template_id: int,
    *,
    actor: str = "system",
    today: Optional[datetime.date] = None,
) -> ShiftTemplate:
    return update_template(session_factory, template_id, {}, True, actor=actor, today=today)


def deactivate_template(session_factory: Callable, template_id: int, *, actor: str = "system") -> ShiftTemplate:
    with session_factory() as session, translate_errors("Deactivating template"):
        template = get_template(session, template_id)
        if template is None:
            raise ConfigurationError(template_id, "missing")
        template = apply_template_updates(session, template, {"is_active": False})
        record_audit_log(session, user_id=actor, action="TEMPLATE_DEACTIVATE", target_id=template.id)
    return template


def delete_template(session_factory: Callable, template_id: int, *, actor: str = "system") -> str:
    """Hard-delete an unused template; templates with instances are only deactivated.

    Returns ``"deleted"`` or ``"deactivated"``.
    """
    with session_factory() as session, translate_errors("Deleting template"):
        template = get_template(session, template_id)
        if template is None:
            raise ConfigurationError(template_id, "missing")
        if count_template_instances(session, template_id):
            apply_template_updates(session, template, {"is_active": False})
            record_audit_log(session, user_id=actor, action="TEMPLATE_DEACTIVATE", target_id=template_id)
            return "deactivated"
        delete_template_row(session, template)
        record_audit_log(session, user_id=actor, action="TEMPLATE_DELETE", target_id=template_id)
        return "deleted"
