"""Seed the default collection site and print its next open day of slots."""

import sys
from datetime import timedelta

from availability import generate_slots, location_hours, location_timezone, utcnow
from supabase_client import supabase_admin

DEFAULT_LOCATION = {
    "id": "schaumburg",
    "name": "Prism Health Lab",
    "address": "1321 Tower Road, Schaumburg IL 60173",
    "phone": "(847) 555-0123",
    "timezone": "America/Chicago",
    "operating_hours": {
        "monday": {"open": "08:00", "close": "17:00", "closed": False},
        "tuesday": {"open": "08:00", "close": "17:00", "closed": False},
        "wednesday": {"open": "08:00", "close": "17:00", "closed": False},
        "thursday": {"open": "08:00", "close": "17:00", "closed": False},
        "friday": {"open": "08:00", "close": "17:00", "closed": False},
        "saturday": {"open": "09:00", "close": "15:00", "closed": False},
        "sunday": {"open": "10:00", "close": "14:00", "closed": False},
    },
    "services": ["blood_draw", "urine_collection", "rapid_testing"],
    "is_active": True,
}


def seed_default_location(client):
    res = client.table("locations").upsert(DEFAULT_LOCATION, on_conflict="id").execute()
    return res.data[0] if res.data else DEFAULT_LOCATION


def preview_slots(location, days=7):
    """First day within `days` that has open slots, as printable lines."""
    now = utcnow()
    tz = location_timezone(location)
    today = now.astimezone(tz).date()
    slots = generate_slots(today, today + timedelta(days=days), location_hours(location), [], now, tz)
    if not slots:
        return []
    first_day = slots[0]["date"]
    return [f"{s['date']} {s['time']}" for s in slots if s["date"] == first_day]


def main():
    if supabase_admin is None:
        print("Error: SUPABASE_SERVICE_ROLE_KEY is required to seed locations")
        return 1

    print("Seeding locations...")
    location = seed_default_location(supabase_admin)
    print(f"Seeded {location['id']} ({location['name']})")

    lines = preview_slots(location)
    print(f"Next open day has {len(lines)} slots:")
    for line in lines:
        print(f" - {line}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
