import logging
import datetime
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask_caching import Cache

import db
from config import settings

# Setup logging
logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc

# Indexed by date.weekday()
WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

DEFAULT_HOURS = {
    "monday": {"start": "09:00", "end": "17:00", "closed": False},
    "tuesday": {"start": "09:00", "end": "17:00", "closed": False},
    "wednesday": {"start": "09:00", "end": "17:00", "closed": False},
    "thursday": {"start": "09:00", "end": "17:00", "closed": False},
    "friday": {"start": "09:00", "end": "17:00", "closed": False},
    "saturday": {"start": "09:00", "end": "15:00", "closed": False},
    "sunday": {"start": "10:00", "end": "14:00", "closed": False},
}


class SlotUnavailableError(Exception):
    """A requested appointment time breaks a scheduling rule."""

    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def utcnow():
    return datetime.datetime.now(UTC)


def to_minutes(t_val, default=0):
    """Robustly convert HH:MM or HH:MM:SS string or object to minutes."""
    if isinstance(t_val, (datetime.time, datetime.datetime)):
        return t_val.hour * 60 + t_val.minute

    if not t_val:
        return default

    t_str = str(t_val).strip()
    # Handle "2023-01-01T09:00:00"
    if "T" in t_str:
        t_str = t_str.split("T")[1]

    # Allow "9:00" or "09:00:00"
    parts = t_str.split(":")
    if len(parts) >= 2:
        try:
            h = int(parts[0])
            m = int(parts[1])
            return h * 60 + m
        except ValueError:
            pass
    return default


def parse_instant(value, tz=None):
    """
    Parse an ISO timestamp (or datetime) into an aware UTC datetime.
    Naive values are read in `tz`, or UTC when no zone is given.
    Raises ValueError on garbage.
    """
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        dt = datetime.datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz or UTC)
    return dt.astimezone(UTC)


def to_iso(instant):
    return instant.astimezone(UTC).isoformat().replace("+00:00", "Z")


def format_time(dt):
    """9:00 AM style, no leading zero on the hour."""
    hour = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{hour}:{dt.minute:02d} {suffix}"


def location_timezone(location):
    name = (location or {}).get("timezone") or settings.DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r for location %s, using %s",
                       name, (location or {}).get("id"), settings.DEFAULT_TIMEZONE)
        return ZoneInfo(settings.DEFAULT_TIMEZONE)


def location_hours(location):
    """Weekly hours for a location. An empty mapping means closed every day."""
    location = location or {}
    for key in ("hours", "operating_hours"):
        if location.get(key) is not None:
            return location[key]
    return DEFAULT_HOURS


def day_window(hours, day):
    """(open_mins, close_mins) for a calendar day, or None when closed."""
    entry = (DEFAULT_HOURS if hours is None else hours).get(WEEKDAYS[day.weekday()])
    if not entry or entry.get("closed"):
        return None

    open_mins = to_minutes(entry.get("start") or entry.get("open"), 9 * 60)
    close_mins = to_minutes(entry.get("end") or entry.get("close"), 17 * 60)
    if close_mins <= open_mins:
        return None
    return open_mins, close_mins


def day_slot_starts(day, hours, tz, interval=None):
    """Local, tz-aware slot starts for one day. Slots must finish by closing time."""
    window = day_window(hours, day)
    if not window:
        return []

    step = int(interval or settings.SLOT_INTERVAL_MINUTES)
    open_mins, close_mins = window

    starts = []
    current_mins = open_mins
    while current_mins + step <= close_mins:
        naive = datetime.datetime.combine(day, datetime.time(current_mins // 60, current_mins % 60))
        starts.append(naive.replace(tzinfo=tz))
        current_mins += step
    return starts


def day_bounds(start_date, end_date, tz):
    """UTC ISO bounds covering local days start_date..end_date inclusive."""
    start = datetime.datetime.combine(start_date, datetime.time.min, tzinfo=tz)
    end = datetime.datetime.combine(end_date + timedelta(days=1), datetime.time.min, tzinfo=tz)
    return to_iso(start), to_iso(end)


def generate_slots(start_date, end_date, hours, booked, now, tz, interval=None, lead_hours=None):
    """
    Pure logic:
    - Walk local days start_date..end_date (past days skipped)
    - Generate slot starts inside operating hours
    - Drop anything inside the minimum lead time
    - Flag slots whose start instant is already booked
    """
    lead = timedelta(hours=settings.MIN_LEAD_HOURS if lead_hours is None else lead_hours)
    earliest = now + lead
    today = now.astimezone(tz).date()
    booked_instants = {parse_instant(b) for b in booked}

    candidates = []
    day = max(start_date, today)
    while day <= end_date:
        for local_start in day_slot_starts(day, hours, tz, interval):
            instant = local_start.astimezone(UTC)
            if instant <= earliest:
                continue
            candidates.append((instant, local_start))
        day += timedelta(days=1)

    candidates.sort(key=lambda c: c[0])
    return [
        {
            "datetime": to_iso(instant),
            "date": local_start.date().isoformat(),
            "time": format_time(local_start),
            "available": instant not in booked_instants,
        }
        for instant, local_start in candidates
    ]


class AvailabilityService:
    def __init__(self, cache: Cache):
        self.cache = cache

    def get_availability(self, location, start_date=None, days_ahead=None, now=None):
        """
        Main entry point.
        Returns slots for the window plus whether they came from cache.
        """
        now = now or utcnow()
        tz = location_timezone(location)
        if start_date is None:
            start_date = now.astimezone(tz).date()
        if days_ahead is None:
            days_ahead = settings.DEFAULT_DAYS_AHEAD
        end_date = start_date + timedelta(days=days_ahead)
        date_range = {"start": start_date.isoformat(), "end": end_date.isoformat()}

        cache_key = self._get_cache_key(location["id"], start_date, days_ahead)
        cached_result = self.cache.get(cache_key)
        if cached_result is not None:
            return {"slots": cached_result, "cached": True, "date_range": date_range}

        # 1. Fetch bookings for the whole window
        start_iso, end_iso = day_bounds(start_date, end_date, tz)
        appointments_raw = db.get_booked_appointments(location["id"], start_iso, end_iso)

        # 2. Calculate
        slots = generate_slots(
            start_date, end_date, location_hours(location),
            self._booked_instants(appointments_raw), now, tz,
        )

        # 3. Cache
        self.cache.set(cache_key, slots, timeout=settings.AVAILABILITY_CACHE_TTL)

        return {"slots": slots, "cached": False, "date_range": date_range}

    def validate_slot(self, location, scheduled_at, exclude_id=None, now=None):
        """
        Same rules the availability listing applies, for a single instant.
        Returns the normalised UTC instant or raises SlotUnavailableError.
        """
        now = now or utcnow()
        tz = location_timezone(location)
        instant = parse_instant(scheduled_at, tz)

        if instant <= now + timedelta(hours=settings.MIN_LEAD_HOURS):
            raise SlotUnavailableError(
                f"Appointments must be booked at least {settings.MIN_LEAD_HOURS} hours in advance"
            )

        local_day = instant.astimezone(tz).date()
        starts = [s.astimezone(UTC) for s in day_slot_starts(local_day, location_hours(location), tz)]
        if not starts:
            raise SlotUnavailableError("Location is closed on the requested day")
        if instant not in starts:
            raise SlotUnavailableError("Requested time is not a bookable slot for this location")

        start_iso, end_iso = day_bounds(local_day, local_day, tz)
        for appt in db.get_booked_appointments(location["id"], start_iso, end_iso):
            if exclude_id is not None and str(appt.get("id")) == str(exclude_id):
                continue
            try:
                taken = parse_instant(appt["scheduled_date"])
            except (KeyError, TypeError, ValueError):
                continue
            if taken == instant:
                raise SlotUnavailableError("Slot unavailable: already booked", status_code=409)

        return instant

    def _booked_instants(self, appointments_raw):
        booked = set()
        for appt in appointments_raw:
            try:
                booked.add(parse_instant(appt["scheduled_date"]))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping appointment %s with bad scheduled_date", appt.get("id"))
        return booked

    def _version_key(self, location_id):
        return f"availability:{location_id}:version"

    def _get_cache_key(self, location_id, start_date, days_ahead):
        version = self.cache.get(self._version_key(location_id)) or 0
        return f"availability:{location_id}:v{version}:{start_date.isoformat()}:{days_ahead}"

    def invalidate_location(self, location_id):
        # Bumping the version orphans every cached window for this location
        key = self._version_key(location_id)
        version = (self.cache.get(key) or 0) + 1
        self.cache.set(key, version, timeout=0)
        logger.debug("Availability cache for %s now at v%d", location_id, version)
