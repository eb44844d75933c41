"""
Clinic scheduling rules: opening hours, holidays, therapy hours, buffers and
lead time. A clinic with no stored policy is unrestricted.
"""
from datetime import datetime, timedelta
from typing import Optional

from ..core.exceptions import Conflict
from ..models.clinic_policy import ClinicPolicy

# Indexed by datetime.weekday()
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def minutes_of_day(value: str) -> int:
    hours, _, minutes = str(value or "").partition(":")
    return int(hours or 0) * 60 + int(minutes or 0)


def within_hours(window: dict, start: datetime) -> bool:
    """``window`` is ``{"start": "HH:MM", "end": "HH:MM"}``; the end is exclusive."""
    at = start.hour * 60 + start.minute
    return minutes_of_day(window.get("start")) <= at < minutes_of_day(window.get("end"))


class SchedulingPolicy:
    def __init__(self, policy: Optional[ClinicPolicy] = None):
        self.policy = policy

    def therapy_rules(self, therapy_type: str) -> dict:
        if self.policy is None:
            return {}
        return (self.policy.therapy_config or {}).get(therapy_type) or {}

    def buffer_minutes(self, therapy_type: str) -> int:
        return max(0, int(self.therapy_rules(therapy_type).get("buffer_min") or 0))

    @property
    def lead_time_hours(self) -> int:
        return max(0, self.policy.lead_time_hours or 0) if self.policy else 0

    @property
    def max_requests_per_week(self) -> int:
        return max(0, self.policy.max_reschedule_requests_per_week or 0) if self.policy else 0

    def stale_request_hours(self, default: int) -> int:
        hours = self.policy.stale_request_hours if self.policy else None
        return max(1, hours or default)

    def slot_violation(self, therapy_type: str, start: datetime,
                       now: Optional[datetime] = None) -> Optional[str]:
        """Why ``start`` is not bookable under the clinic rules, or None.

        Lead time is only enforced when ``now`` is given.
        """
        if self.policy is None:
            return None

        day = start.date().isoformat()
        if day in (self.policy.blackout_dates or []):
            return f"Clinic holiday on {day}"

        if self.policy.business_hours is not None:
            hours = self.policy.business_hours.get(WEEKDAYS[start.weekday()])
            if not hours:
                return f"Clinic closed on {start:%A}"
            if not within_hours(hours, start):
                return f"{start:%H:%M} is outside business hours"

        allowed = self.therapy_rules(therapy_type).get("allowed_hours")
        if allowed and not within_hours(allowed, start):
            return f"{therapy_type} is not offered at {start:%H:%M}"

        lead = self.lead_time_hours
        if now is not None and lead and start < now + timedelta(hours=lead):
            return f"Sessions must be booked at least {lead} hours ahead"
        return None

    def check_slot(self, therapy_type: str, start: datetime, now: Optional[datetime] = None) -> None:
        reason = self.slot_violation(therapy_type, start, now=now)
        if reason:
            raise Conflict(reason)
