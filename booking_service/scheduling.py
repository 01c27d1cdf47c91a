from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable

from dateutil import parser

from .errors import ValidationError
from .models import utcnow


def parse_dt(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return parser.isoparse(value)


def parse_time(value) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


def day_of_week(dt: datetime) -> int:
    """0 = Sunday ... 6 = Saturday, the catalog's convention."""
    return (dt.weekday() + 1) % 7


@dataclass(frozen=True)
class TimeSlot:
    day_of_week: int
    start: time
    end: time
    max_bookings: int | None = None

    def contains(self, at: datetime) -> bool:
        at = at.astimezone(timezone.utc)
        return day_of_week(at) == self.day_of_week and self.start <= at.time() < self.end

    def bounds(self, at: datetime) -> tuple[datetime, datetime]:
        day = at.astimezone(timezone.utc).date()
        return (
            datetime.combine(day, self.start, tzinfo=timezone.utc),
            datetime.combine(day, self.end, tzinfo=timezone.utc),
        )


@dataclass(frozen=True)
class BlackoutWindow:
    start: datetime
    end: datetime

    def covers(self, at: datetime) -> bool:
        return self.start <= at < self.end


@dataclass(frozen=True)
class ServiceSchedule:
    service_id: str
    category: str | None = None
    slots: tuple[TimeSlot, ...] = ()
    allows_instant: bool = True

    @classmethod
    def from_payload(cls, service_id: str, payload: dict | None) -> "ServiceSchedule":
        payload = payload or {}
        slots = []
        for rule in payload.get("scheduling_rules") or []:
            for slot in rule.get("time_slots") or []:
                slots.append(TimeSlot(
                    day_of_week=int(rule["day_of_week"]),
                    start=parse_time(slot["start"]),
                    end=parse_time(slot["end"]),
                    max_bookings=slot.get("max_bookings"),
                ))
        return cls(
            service_id=service_id,
            category=payload.get("category"),
            slots=tuple(slots),
            allows_instant=payload.get("allows_instant", True),
        )


def parse_blackouts(raw: Iterable[dict] | None) -> tuple[BlackoutWindow, ...]:
    windows = []
    for item in raw or []:
        try:
            windows.append(BlackoutWindow(parse_dt(item["start"]), parse_dt(item["end"])))
        except (KeyError, TypeError, ValueError):
            continue
    return tuple(windows)


class SchedulingValidator:
    """Checks a requested time against service rules and provider blackouts. Read-only."""

    def __init__(self, min_lead_seconds: int, max_advance_days: int, clock=utcnow):
        self.min_lead = timedelta(seconds=min_lead_seconds)
        self.max_advance = timedelta(days=max_advance_days)
        self.clock = clock

    def validate_booking_time(
        self,
        scheduled_at: datetime | None,
        schedule: ServiceSchedule,
        now: datetime | None = None,
    ) -> TimeSlot | None:
        """
        Returns the service slot the booking falls in (None when the service has
        no slot rules). Instant bookings (no scheduled time) are checked
        against the current time.
        """
        now = now or self.clock()

        if scheduled_at is None:
            if not schedule.allows_instant:
                raise ValidationError("This service cannot be booked for immediate service", reason="instant_not_allowed")
            at = now
        else:
            if scheduled_at.tzinfo is None:
                raise ValidationError("scheduledAt must include a timezone offset", reason="naive_datetime")
            if scheduled_at < now + self.min_lead:
                raise ValidationError(
                    f"Scheduled time must respect the advance booking window of {int(self.min_lead.total_seconds() // 60)} minutes",
                    reason="advance_booking",
                )
            if scheduled_at > now + self.max_advance:
                raise ValidationError(
                    f"Bookings can be made at most {self.max_advance.days} days in advance",
                    reason="too_far_in_advance",
                )
            at = scheduled_at

        if not schedule.slots:
            return None

        for slot in schedule.slots:
            if slot.contains(at):
                return slot

        raise ValidationError("Requested time is outside service availability hours", reason="outside_service_hours")

    def check_capacity(self, slot: TimeSlot | None, booked: int) -> None:
        if slot is None or slot.max_bookings is None:
            return
        if booked >= slot.max_bookings:
            raise ValidationError("No capacity left in the requested time slot", reason="slot_full")

    @staticmethod
    def is_provider_free(blackouts: Iterable[BlackoutWindow], at: datetime) -> bool:
        return not any(window.covers(at) for window in blackouts)

    def validate_provider(self, provider_id: str, blackouts: Iterable[BlackoutWindow], at: datetime | None) -> None:
        at = at or self.clock()
        if not self.is_provider_free(blackouts, at):
            raise ValidationError(f"Provider is not available at {at.isoformat()}", reason="provider_unavailable")
