"""Delivery eligibility: schedule window, postal code allowlist, max distance.

Schedules are written as ``"Mon-Fri 11:30-14:30; Fri,Sat 19:00-02:00"``:
``;`` separates entries, each entry is a day list (ranges and comma lists,
ranges may wrap past Sunday) followed by a ``start-end`` time range. An end
at or before the start is an overnight window and spills into the next day.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo

from settings import Settings

EARTH_RADIUS_KM = 6371.0
MINUTES_PER_DAY = 24 * 60

# Monday is 0, matching datetime.weekday()
DAY_NAMES = {
    "mon": 0,
    "monday": 0,
    "tue": 1,
    "tues": 1,
    "tuesday": 1,
    "wed": 2,
    "weds": 2,
    "wednesday": 2,
    "thu": 3,
    "thur": 3,
    "thurs": 3,
    "thursday": 3,
    "fri": 4,
    "friday": 4,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
}


class Window(NamedTuple):
    day: int
    start: int
    end: int


@dataclass(frozen=True)
class Point:
    lat: Optional[float] = None
    lng: Optional[float] = None
    postal_code: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    fallback: Optional[str] = None

    @classmethod
    def reject(cls, reason: str, message: str) -> "EligibilityResult":
        return cls(eligible=False, reason=reason, message=message, fallback="pickup")


@dataclass(frozen=True)
class DeliveryRules:
    hours: str = ""
    timezone: str = "Europe/Paris"
    postal_codes: tuple = ()
    origin: Optional[Point] = None
    max_distance_km: Optional[float] = None
    windows: tuple = field(default=(), compare=False)

    @classmethod
    def build(cls, hours: str = "", tz: str = "Europe/Paris", postal_codes=(), origin=None, max_distance_km=None):
        return cls(
            hours=hours,
            timezone=tz,
            postal_codes=tuple(normalize_postal_code(code) for code in postal_codes if code),
            origin=origin,
            max_distance_km=max_distance_km,
            windows=tuple(parse_schedule(hours)),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeliveryRules":
        origin = None
        if settings.delivery_origin_lat is not None and settings.delivery_origin_lng is not None:
            origin = Point(lat=settings.delivery_origin_lat, lng=settings.delivery_origin_lng)
        return cls.build(
            hours=settings.delivery_hours,
            tz=settings.business_timezone,
            postal_codes=settings.delivery_postal_codes,
            origin=origin,
            max_distance_km=settings.delivery_max_distance_km,
        )


def parse_schedule(raw: str) -> list[Window]:
    windows: list[Window] = []
    if not raw:
        return windows

    for entry in (part.strip() for part in raw.split(";")):
        tokens = entry.split()
        if len(tokens) < 2:
            continue
        days = expand_days(tokens[0])
        start_raw, _, end_raw = tokens[1].partition("-")
        start = parse_time(start_raw)
        end = parse_time(end_raw)
        if start is None or end is None:
            continue

        for day in days:
            if end <= start:
                windows.append(Window(day, start, MINUTES_PER_DAY))
                windows.append(Window((day + 1) % 7, 0, end))
            else:
                windows.append(Window(day, start, end))
    return windows


def expand_days(token: str) -> list[int]:
    days: list[int] = []
    for segment in (s.strip().lower() for s in token.split(",")):
        if not segment:
            continue
        bounds = [b.strip() for b in segment.split("-")]
        if len(bounds) == 1:
            if bounds[0] in DAY_NAMES:
                days.append(DAY_NAMES[bounds[0]])
        elif len(bounds) == 2:
            if bounds[0] not in DAY_NAMES or bounds[1] not in DAY_NAMES:
                continue
            first, last = DAY_NAMES[bounds[0]], DAY_NAMES[bounds[1]]
            span = (last - first) % 7
            days.extend((first + offset) % 7 for offset in range(span + 1))
    return days


def parse_time(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    hour_raw, _, minute_raw = raw.strip().partition(":")
    try:
        hour = int(hour_raw)
        minute = int(minute_raw) if minute_raw else 0
    except ValueError:
        return None
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        return None
    return hour * 60 + minute


def local_day_and_minute(now: datetime, tz: str) -> tuple[int, int]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz))
    return local.weekday(), local.hour * 60 + local.minute


def is_within_schedule(rules: DeliveryRules, now: datetime) -> bool:
    if not rules.windows:
        return True
    day, minutes = local_day_and_minute(now, rules.timezone)
    return any(w.day == day and w.start <= minutes < w.end for w in rules.windows)


def normalize_postal_code(code: Optional[str]) -> str:
    return "".join((code or "").lower().split())


def haversine_km(a: Point, b: Point) -> float:
    if a.lat is None or a.lng is None or b.lat is None or b.lng is None:
        return math.inf
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)

    term = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(term), math.sqrt(1 - term))


def evaluate(point, now: datetime, rules: DeliveryRules) -> EligibilityResult:
    """Decide whether delivery is offered; the first failing check wins."""
    if not is_within_schedule(rules, now):
        if rules.hours:
            message = f"Delivery is only available during: {rules.hours}."
        else:
            message = "Delivery is unavailable right now."
        return EligibilityResult.reject("schedule", message)

    if rules.postal_codes:
        if normalize_postal_code(getattr(point, "postal_code", None)) not in rules.postal_codes:
            allowed = ", ".join(rules.postal_codes)
            return EligibilityResult.reject("postal_code", f"Delivery is limited to postal codes: {allowed}.")

    if rules.origin is not None and rules.max_distance_km and rules.max_distance_km > 0:
        dropoff = Point(lat=getattr(point, "lat", None), lng=getattr(point, "lng", None))
        distance = haversine_km(dropoff, rules.origin)
        if math.isinf(distance):
            return EligibilityResult.reject("location", "Dropoff coordinates are required to check the delivery area.")
        if distance > rules.max_distance_km:
            return EligibilityResult.reject(
                "distance", f"Address is outside the delivery area (max {rules.max_distance_km:.1f} km)."
            )

    return EligibilityResult(eligible=True)
