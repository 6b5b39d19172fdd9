"""Trigger resolution: relative trigger -> absolute UTC instant."""

from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from courseflow.core.exceptions import ConfigurationError
from courseflow.models.action import Direction, ReferenceEvent, TriggerSpec
from courseflow.models.subject import Subject


@lru_cache(maxsize=256)
def load_timezone(name: str) -> tzinfo:
    """Load an IANA timezone.

    Raises:
        ConfigurationError: If the name is unknown
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name}") from e


def resolve_trigger(
    reference: datetime | None,
    trigger: TriggerSpec,
    tz: tzinfo = timezone.utc,
) -> datetime | None:
    """Compute the instant a trigger fires.

    Day offsets are applied to the local calendar date in ``tz`` and the wall
    clock time is set afterwards, so a "3 days before" trigger lands on the same
    local time even across a DST change.

    Args:
        reference: Reference event timestamp, None if it has not happened yet.
            Naive values are taken to be UTC.
        trigger: Trigger to resolve
        tz: Organization timezone

    Returns:
        Aware UTC datetime, or None when the reference is unresolved
    """
    if reference is None:
        return None

    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    local = reference.astimezone(tz)

    if trigger.direction == Direction.ON and trigger.time_of_day is None:
        return reference.astimezone(timezone.utc)

    target_date = local.date()
    if trigger.direction == Direction.BEFORE:
        target_date = target_date - timedelta(days=trigger.day_offset)
    elif trigger.direction == Direction.AFTER:
        target_date = target_date + timedelta(days=trigger.day_offset)

    wall_clock = trigger.time_of_day or local.time()
    target = datetime.combine(target_date, wall_clock.replace(tzinfo=None), tzinfo=tz)
    return target.astimezone(timezone.utc)


def reference_for(subject: Subject, trigger: TriggerSpec) -> datetime | None:
    """Pick the subject's timestamp for the trigger's reference event."""
    if trigger.reference_event == ReferenceEvent.ENROLLMENT:
        return subject.enrollment_date
    if trigger.reference_event == ReferenceEvent.COMPLETION:
        return subject.completion_date
    if trigger.reference_event == ReferenceEvent.START:
        return subject.session_start
    return subject.custom_dates.get(trigger.custom_key)


def resolve_for_subject(subject: Subject, trigger: TriggerSpec, tz: tzinfo) -> datetime | None:
    """Resolve a trigger against a subject snapshot."""
    return resolve_trigger(reference_for(subject, trigger), trigger, tz)
