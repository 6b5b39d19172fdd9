"""Tests for trigger resolution."""

from datetime import datetime, time, timezone

import pytest
from pydantic import ValidationError

from courseflow.core.exceptions import ConfigurationError
from courseflow.engine.resolver import load_timezone, reference_for, resolve_for_subject, resolve_trigger
from courseflow.models.action import Direction, ReferenceEvent, TriggerSpec

UTC = timezone.utc
REFERENCE = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


def trigger(direction: Direction, days: int = 0, at: time | None = None, event=ReferenceEvent.ENROLLMENT) -> TriggerSpec:
    return TriggerSpec(reference_event=event, direction=direction, day_offset=days, time_of_day=at)


def test_before_keeps_reference_clock_time() -> None:
    assert resolve_trigger(REFERENCE, trigger(Direction.BEFORE, 3)) == datetime(2025, 3, 7, 9, 0, tzinfo=UTC)


def test_time_of_day_overrides_reference_clock_time() -> None:
    result = resolve_trigger(REFERENCE, trigger(Direction.BEFORE, 3, time(14, 30)))

    assert result == datetime(2025, 3, 7, 14, 30, tzinfo=UTC)


def test_after_adds_calendar_days() -> None:
    assert resolve_trigger(REFERENCE, trigger(Direction.AFTER, 30)) == datetime(2025, 4, 9, 9, 0, tzinfo=UTC)


def test_on_without_time_keeps_exact_instant() -> None:
    reference = datetime(2025, 3, 10, 9, 15, 42, tzinfo=UTC)

    assert resolve_trigger(reference, trigger(Direction.ON)) == reference


def test_on_with_time_of_day_uses_reference_date() -> None:
    assert resolve_trigger(REFERENCE, trigger(Direction.ON, at=time(7, 0))) == datetime(2025, 3, 10, 7, 0, tzinfo=UTC)


def test_unresolved_reference_returns_none() -> None:
    assert resolve_trigger(None, trigger(Direction.AFTER, 1)) is None


def test_naive_reference_is_treated_as_utc() -> None:
    naive = datetime(2025, 3, 10, 9, 0)

    assert resolve_trigger(naive, trigger(Direction.BEFORE, 3)) == datetime(2025, 3, 7, 9, 0, tzinfo=UTC)


def test_days_before_across_dst_keeps_local_wall_clock() -> None:
    # Paris switches to summer time on 2025-03-30; 09:00 CEST is 07:00 UTC
    paris = load_timezone("Europe/Paris")
    reference = datetime(2025, 4, 1, 7, 0, tzinfo=UTC)

    result = resolve_trigger(reference, trigger(Direction.BEFORE, 3), paris)

    # 09:00 CET on the 29th is 08:00 UTC, not the 07:00 a raw 72h subtraction gives
    assert result == datetime(2025, 3, 29, 8, 0, tzinfo=UTC)
    assert result.astimezone(paris).hour == 9


def test_calendar_date_is_taken_in_organization_timezone() -> None:
    # 23:30 UTC on the 10th is already the 11th in Tokyo
    tokyo = load_timezone("Asia/Tokyo")
    reference = datetime(2025, 3, 10, 23, 30, tzinfo=UTC)

    result = resolve_trigger(reference, trigger(Direction.AFTER, 1, time(10, 0)), tokyo)

    assert result == datetime(2025, 3, 12, 1, 0, tzinfo=UTC)


def test_on_with_offset_is_rejected() -> None:
    with pytest.raises(ValidationError):
        TriggerSpec(reference_event=ReferenceEvent.START, direction=Direction.ON, day_offset=2)


def test_negative_offset_is_rejected() -> None:
    with pytest.raises(ValidationError):
        TriggerSpec(reference_event=ReferenceEvent.START, direction=Direction.BEFORE, day_offset=-1)


@pytest.mark.parametrize(
    ("signed_days", "direction", "magnitude"),
    [(-3, Direction.BEFORE, 3), (5, Direction.AFTER, 5), (0, Direction.ON, 0)],
)
def test_legacy_signed_offsets_are_normalized(signed_days: int, direction: Direction, magnitude: int) -> None:
    trigger = TriggerSpec.from_legacy("start", signed_days)

    assert trigger.direction == direction
    assert trigger.day_offset == magnitude


def test_unknown_timezone_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        load_timezone("Mars/Olympus_Mons")


def test_reference_for_picks_subject_dates(make_subject) -> None:
    subject = make_subject(custom_dates={"kickoff": datetime(2025, 5, 1, 8, 0, tzinfo=UTC)})

    assert reference_for(subject, trigger(Direction.ON)) == subject.enrollment_date
    assert reference_for(subject, trigger(Direction.ON, event=ReferenceEvent.START)) == subject.session_start
    assert reference_for(subject, trigger(Direction.ON, event=ReferenceEvent.COMPLETION)) is None

    custom = TriggerSpec(reference_event=ReferenceEvent.CUSTOM, custom_key="kickoff")
    assert reference_for(subject, custom) == datetime(2025, 5, 1, 8, 0, tzinfo=UTC)


def test_missing_custom_date_is_unresolved(make_subject) -> None:
    custom = TriggerSpec(reference_event=ReferenceEvent.CUSTOM, custom_key="kickoff")

    assert resolve_for_subject(make_subject(), custom, UTC) is None
