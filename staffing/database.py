from __future__ import annotations

import contextlib
import datetime
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    create_engine,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.types import Time

from staffing.errors import IgnorableConflict, PersistenceError
from staffing.settings import DATABASE_URL, DEFAULT_HORIZON_DAYS

logger = logging.getLogger(__name__)

SHIFT_STATUS_CHOICES = {
    "open",
    "filled",
    "in_progress",
    "completed",
    "cancelled",
    "ncns",
    "facility_cancelled",
}
URGENCY_CHOICES = {"low", "medium", "high", "critical"}
SHIFT_TYPE_CHOICES = {"day", "night", "evening"}
TEMPLATE_MUTABLE_FIELDS = {
    "name",
    "facility_id",
    "facility_name",
    "building_id",
    "building_name",
    "department",
    "specialty",
    "shift_type",
    "start_time",
    "end_time",
    "days_of_week",
    "min_staff",
    "max_staff",
    "hourly_rate",
    "horizon_days",
    "notes",
    "is_active",
}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    """Metadata for template, instance and audit tables."""

    pass


class ShiftTemplate(Base):
    __tablename__ = "shift_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    facility_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    facility_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    building_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    building_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    department: Mapped[str] = mapped_column(String(80), nullable=False)
    specialty: Mapped[str] = mapped_column(String(80), nullable=False)
    shift_type: Mapped[str] = mapped_column(String(16), nullable=False, default="day")
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    days_of_week: Mapped[List[int]] = mapped_column(JSON, nullable=False, default=lambda: [])  # 0 = Sunday
    min_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    hourly_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    horizon_days: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_HORIZON_DAYS)
    notes: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    generated_shifts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def weekday_set(self) -> Set[int]:
        return {int(day) for day in (self.days_of_week or [])}


class GeneratedShift(Base):
    __tablename__ = "generated_shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    unique_key: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    template_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    shift_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    department: Mapped[str] = mapped_column(String(80), nullable=False)
    specialty: Mapped[str] = mapped_column(String(80), nullable=False)
    facility_id: Mapped[int] = mapped_column(Integer, nullable=False)
    facility_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    building_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    building_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="open")
    urgency: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    required_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    min_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    assigned_staff_ids: Mapped[List[int]] = mapped_column(JSON, nullable=False, default=lambda: [])
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def slot_key(self) -> Tuple[int, datetime.date, int]:
        return (self.template_id, self.date, self.shift_position)


class Shift(Base):
    """Ad-hoc shift created directly by a facility, outside any template."""

    __tablename__ = "shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    facility_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    facility_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    department: Mapped[str] = mapped_column(String(80), nullable=False)
    specialty: Mapped[str] = mapped_column(String(80), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="open")
    urgency: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    required_staff: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    assigned_staff_ids: Mapped[List[int]] = mapped_column(JSON, nullable=False, default=lambda: [])
    created_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="ShiftTemplate")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(engine)
    if engine.dialect.name != "sqlite":
        return
    with engine.begin() as conn:
        columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(generated_shifts)"))}
        if "unique_key" not in columns:
            conn.execute(text("ALTER TABLE generated_shifts ADD COLUMN unique_key VARCHAR(64)"))
            conn.execute(
                text(
                    "CREATE UNIQUE INDEX IF NOT EXISTS ix_generated_shifts_unique_key "
                    "ON generated_shifts (unique_key)"
                )
            )
        template_columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(shift_templates)"))}
        if "horizon_days" not in template_columns:
            conn.execute(
                text(
                    "ALTER TABLE shift_templates ADD COLUMN horizon_days INTEGER NOT NULL "
                    f"DEFAULT {int(DEFAULT_HORIZON_DAYS)}"
                )
            )


@contextlib.contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as PersistenceError."""
    try:
        yield
    except SQLAlchemyError as exc:
        raise PersistenceError(f"{action} failed: {exc}") from exc


def slot_unique_key(template_id: int, date: datetime.date, position: int) -> str:
    return f"{template_id}-{date.isoformat()}-{position}"


def _parse_time(value: Any, field: str) -> datetime.time:
    if isinstance(value, datetime.time):
        return value.replace(second=0, microsecond=0)
    if isinstance(value, str):
        try:
            return datetime.time.fromisoformat(value.strip()).replace(second=0, microsecond=0)
        except ValueError:
            pass
    raise ValueError(f"{field} must be a time of day (HH:MM).")


def _parse_days(value: Any) -> List[int]:
    if value is None:
        raise ValueError("days_of_week is required.")
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValueError("days_of_week must be a list of weekday numbers.")
    days: Set[int] = set()
    for item in value:
        try:
            day = int(item)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid weekday value {item!r}.") from exc
        if day < 0 or day > 6:
            raise ValueError(f"Weekday value {day} is outside 0-6.")
        days.add(day)
    return sorted(days)


def normalize_template_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Return a cleaned copy of template fields, raising ValueError on bad input."""
    unknown = set(fields) - TEMPLATE_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported template fields: {', '.join(sorted(unknown))}.")
    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if key in ("start_time", "end_time"):
            cleaned[key] = _parse_time(value, key)
        elif key == "days_of_week":
            cleaned[key] = _parse_days(value)
        elif key in ("min_staff", "max_staff", "horizon_days", "facility_id"):
            try:
                cleaned[key] = int(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{key} must be an integer.") from exc
            if key != "facility_id" and cleaned[key] < 0:
                raise ValueError(f"{key} cannot be negative.")
        elif key == "hourly_rate":
            try:
                cleaned[key] = round(float(value or 0.0), 2)
            except (TypeError, ValueError) as exc:
                raise ValueError("hourly_rate must be a number.") from exc
        elif key == "shift_type":
            if value is not None and not isinstance(value, str):
                raise ValueError("shift_type must be a string.")
            shift_type = (value or "day").strip().lower()
            if shift_type not in SHIFT_TYPE_CHOICES:
                raise ValueError(f"Unsupported shift type '{value}'.")
            cleaned[key] = shift_type
        elif key == "is_active":
            cleaned[key] = bool(value)
        elif key in ("notes", "facility_name"):
            cleaned[key] = value or ""
        else:
            cleaned[key] = value
    return cleaned


def _check_staffing(min_staff: int, max_staff: int) -> None:
    if min_staff > max_staff:
        raise ValueError("min_staff cannot exceed max_staff.")


def get_template(session, template_id: int) -> Optional[ShiftTemplate]:
    return session.get(ShiftTemplate, template_id)


def list_templates(
    session,
    *,
    facility_id: Optional[int] = None,
    is_active: Optional[bool] = None,
) -> List[ShiftTemplate]:
    stmt = select(ShiftTemplate)
    if facility_id is not None:
        stmt = stmt.where(ShiftTemplate.facility_id == facility_id)
    if is_active is not None:
        stmt = stmt.where(ShiftTemplate.is_active == is_active)
    stmt = stmt.order_by(ShiftTemplate.facility_id, ShiftTemplate.start_time, ShiftTemplate.id)
    return list(session.scalars(stmt))


def create_template(session, fields: Dict[str, Any]) -> ShiftTemplate:
    for required in ("name", "facility_id", "department", "specialty", "start_time", "end_time", "days_of_week"):
        if fields.get(required) in (None, ""):
            raise ValueError(f"{required} is required.")
    cleaned = normalize_template_fields(fields)
    cleaned.setdefault("min_staff", 1)
    cleaned.setdefault("max_staff", max(cleaned["min_staff"], 1))
    _check_staffing(cleaned["min_staff"], cleaned["max_staff"])
    template = ShiftTemplate(**cleaned)
    session.add(template)
    session.commit()
    session.refresh(template)
    return template


def apply_template_updates(session, template: ShiftTemplate, updates: Dict[str, Any]) -> ShiftTemplate:
    cleaned = normalize_template_fields(updates)
    min_staff = cleaned.get("min_staff", template.min_staff)
    max_staff = cleaned.get("max_staff", template.max_staff)
    _check_staffing(min_staff, max_staff)
    for key, value in cleaned.items():
        setattr(template, key, value)
    template.updated_at = _utcnow()
    session.commit()
    session.refresh(template)
    return template


def count_template_instances(session, template_id: int) -> int:
    stmt = select(func.count(GeneratedShift.id)).where(GeneratedShift.template_id == template_id)
    return int(session.execute(stmt).scalar() or 0)


def delete_template_row(session, template: ShiftTemplate) -> None:
    session.delete(template)
    session.commit()


def list_generated_shifts(
    session,
    *,
    template_id: Optional[int] = None,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
) -> List[GeneratedShift]:
    stmt = select(GeneratedShift)
    if template_id is not None:
        stmt = stmt.where(GeneratedShift.template_id == template_id)
    if start is not None:
        stmt = stmt.where(GeneratedShift.date >= start)
    if end is not None:
        stmt = stmt.where(GeneratedShift.date <= end)
    stmt = stmt.order_by(GeneratedShift.date, GeneratedShift.shift_position, GeneratedShift.id)
    return list(session.scalars(stmt))


def occupied_slots(
    session,
    template_id: int,
    start: datetime.date,
    end: datetime.date,
) -> Set[Tuple[datetime.date, int]]:
    """Return the (date, position) pairs already holding a live instance."""
    stmt = select(GeneratedShift.date, GeneratedShift.shift_position).where(
        GeneratedShift.template_id == template_id,
        GeneratedShift.date >= start,
        GeneratedShift.date <= end,
    )
    return {(row[0], int(row[1])) for row in session.execute(stmt)}


def _conflict_insert_factory(session):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    elif dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    else:
        return None
    return dialect_insert


def _insert_one(session, row: Dict[str, Any]) -> GeneratedShift:
    try:
        with session.begin_nested():
            shift = GeneratedShift(**row)
            session.add(shift)
    except IntegrityError as exc:
        raise IgnorableConflict(row.get("unique_key") or "") from exc
    return shift


def insert_generated_shifts(
    session,
    rows: Sequence[Dict[str, Any]],
    *,
    batch_size: int = 100,
) -> List[GeneratedShift]:
    """Insert instances in batches, skipping rows whose unique_key is taken.

    Returns only the rows actually inserted. The caller owns the commit.
    """
    if not rows:
        return []
    batch_size = max(1, int(batch_size or 1))
    dialect_insert = _conflict_insert_factory(session)
    created: List[GeneratedShift] = []
    for offset in range(0, len(rows), batch_size):
        batch = [dict(row) for row in rows[offset:offset + batch_size]]
        if dialect_insert is not None:
            stmt = (
                dialect_insert(GeneratedShift)
                .values(batch)
                .on_conflict_do_nothing(index_elements=["unique_key"])
                .returning(GeneratedShift.id)
            )
            inserted_ids = list(session.execute(stmt).scalars())
            skipped = len(batch) - len(inserted_ids)
            if skipped:
                logger.debug(f"Skipped {skipped} generated shifts whose slot already exists")
            if inserted_ids:
                created.extend(
                    session.scalars(
                        select(GeneratedShift)
                        .where(GeneratedShift.id.in_(inserted_ids))
                        .order_by(GeneratedShift.id)
                    )
                )
            continue
        for row in batch:
            try:
                created.append(_insert_one(session, row))
            except IgnorableConflict as conflict:
                logger.debug(f"Ignoring insert conflict: {conflict}")
    session.flush()
    return created


def delete_generated_shifts(session, shift_ids: Iterable[int]) -> int:
    ids = list(shift_ids)
    if not ids:
        return 0
    result = session.execute(delete(GeneratedShift).where(GeneratedShift.id.in_(ids)))
    return int(result.rowcount or 0)


def update_generated_shift(session, shift_id: int, fields: Dict[str, Any]) -> GeneratedShift:
    shift = session.get(GeneratedShift, shift_id)
    if not shift:
        raise ValueError(f"Generated shift with id {shift_id} was not found.")
    status = fields.get("status")
    if status is not None and status not in SHIFT_STATUS_CHOICES:
        raise ValueError(f"Unsupported shift status '{status}'.")
    for key, value in fields.items():
        if key == "assigned_staff_ids":
            value = _ordered_ids(value)
        setattr(shift, key, value)
    shift.updated_at = _utcnow()
    session.flush()
    return shift


def _ordered_ids(values: Optional[Iterable[Any]]) -> List[int]:
    seen: List[int] = []
    for value in values or []:
        number = int(value)
        if number not in seen:
            seen.append(number)
    return seen


def increment_generated_count(session, template_id: int, amount: int) -> None:
    if amount <= 0:
        return
    session.execute(
        update(ShiftTemplate)
        .where(ShiftTemplate.id == template_id)
        .values(
            generated_shifts_count=ShiftTemplate.generated_shifts_count + int(amount),
            updated_at=_utcnow(),
        )
    )


def resync_generated_count(session, template_id: int) -> int:
    """Recompute a template's generated count from a full scan of its instances."""
    total = count_template_instances(session, template_id)
    session.execute(
        update(ShiftTemplate)
        .where(ShiftTemplate.id == template_id)
        .values(generated_shifts_count=total, updated_at=_utcnow())
    )
    session.commit()
    return total


def list_manual_shifts(session) -> List[Shift]:
    return list(session.scalars(select(Shift).order_by(Shift.date, Shift.start_time, Shift.id)))


def upsert_manual_shift(session, shift: Dict[str, Any]) -> int:
    shift_id = shift.get("id")
    date_value = shift.get("date")
    if isinstance(date_value, str):
        date_value = datetime.date.fromisoformat(date_value)
    if not isinstance(date_value, datetime.date):
        raise TypeError("Shift date must be a date instance or YYYY-MM-DD string.")
    start_time = _parse_time(shift.get("start_time"), "start_time")
    end_time = _parse_time(shift.get("end_time"), "end_time")
    status = (shift.get("status") or "open").lower()
    if status not in SHIFT_STATUS_CHOICES:
        raise ValueError(f"Unsupported shift status '{status}'.")
    facility_id = shift.get("facility_id")
    if facility_id is None:
        raise ValueError("Shift facility_id is required.")

    if shift_id:
        db_shift = session.get(Shift, shift_id)
        if not db_shift:
            raise ValueError(f"Shift with id {shift_id} was not found.")
    else:
        db_shift = Shift()
        session.add(db_shift)

    db_shift.title = shift.get("title") or "Manual Shift"
    db_shift.facility_id = int(facility_id)
    db_shift.facility_name = shift.get("facility_name") or ""
    db_shift.department = shift.get("department") or "General"
    db_shift.specialty = shift.get("specialty") or "General"
    db_shift.date = date_value
    db_shift.start_time = start_time
    db_shift.end_time = end_time
    db_shift.rate = float(shift.get("rate", 0.0) or 0.0)
    db_shift.status = status
    db_shift.urgency = (shift.get("urgency") or "medium").lower()
    db_shift.description = shift.get("description") or ""
    db_shift.required_staff = int(shift.get("required_staff") or 1)
    db_shift.assigned_staff_ids = _ordered_ids(shift.get("assigned_staff_ids"))
    db_shift.created_by_id = shift.get("created_by_id")
    session.commit()
    session.refresh(db_shift)
    return db_shift.id


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "ShiftTemplate",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log
