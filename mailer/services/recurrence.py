"""
RRULE handling for recurring campaigns
"""
from datetime import datetime
from typing import Optional

from dateutil import rrule

from ..core.errors import ValidationError


def parse_rule(rule: str, dtstart: Optional[datetime] = None) -> rrule.rrule:
    """
    Parse an RFC 5545 recurrence rule

    Accepts a bare rule (``FREQ=WEEKLY;BYDAY=MO``) or one prefixed with
    ``RRULE:``. ``dtstart`` anchors the series; it defaults to now.
    """
    if not rule or not rule.strip():
        raise ValidationError("Recurring campaigns require a recurrence rule")
    text = rule.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]
    try:
        parsed = rrule.rrulestr(text, dtstart=dtstart or datetime.utcnow(), forceset=False)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid recurrence rule {rule!r}: {e}")
    if not isinstance(parsed, rrule.rrule):
        raise ValidationError(f"Recurrence rule {rule!r} must be a single RRULE")
    return parsed


def validate_rule(rule: str, dtstart: Optional[datetime] = None) -> None:
    parsed = parse_rule(rule, dtstart=dtstart)
    if next(iter(parsed), None) is None:
        raise ValidationError(f"Recurrence rule {rule!r} yields no occurrences")


def next_occurrence(
    rule: str,
    after: datetime,
    dtstart: Optional[datetime] = None,
    inclusive: bool = True
) -> Optional[datetime]:
    """First occurrence at or after ``after`` (strictly after when not inclusive)"""
    return parse_rule(rule, dtstart=dtstart or after).after(after, inc=inclusive)
