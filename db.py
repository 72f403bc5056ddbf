import logging
from datetime import datetime, timezone

from flask import g, has_app_context

from supabase_client import supabase, supabase_admin

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ["confirmed", "pending", "in_progress"]
REMINDABLE_STATUSES = ["confirmed", "pending"]

APPOINTMENT_LIST_SELECT = """
    *,
    locations(id, name, address, phone, hours),
    orders(id, total, items, swell_order_id)
"""

APPOINTMENT_DETAIL_SELECT = """
    *,
    locations(id, name, address, phone, hours, timezone),
    orders(id, total, items, swell_order_id, customer_email, customer_name),
    test_results(id, status, result_date, summary, diagnostic_tests(name, category)),
    profiles(first_name, last_name, email)
"""


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def _first(res):
    if res.data:
        return res.data[0]
    return None


def _client():
    """The request's user-scoped client set by auth_required, else the shared anon client."""
    if has_app_context() and g.get("supabase") is not None:
        return g.supabase
    return supabase


# ============================================================
# AUTH
# ============================================================

def get_user_from_token(token):
    """Resolve a Supabase access token to its auth user, or None."""
    if not token:
        return None
    try:
        res = supabase.auth.get_user(token)
    except Exception as e:
        logger.warning("Token verification failed: %s", e)
        return None
    return res.user if res else None


# ============================================================
# LOCATIONS
# ============================================================

def get_location(location_id):
    res = (
        supabase.table("locations")
        .select("*")
        .eq("id", location_id)
        .limit(1)
        .execute()
    )
    return _first(res)


def list_locations(include_inactive=False):
    query = supabase.table("locations").select("*").order("name")
    if not include_inactive:
        query = query.eq("is_active", True)
    return query.execute().data or []


# ============================================================
# APPOINTMENTS
# ============================================================

def get_booked_appointments(location_id, start_iso, end_iso, statuses=None):
    """Active appointments at a location with scheduled_date in [start, end].

    Runs on the service-role client when configured: RLS would otherwise hide
    other users' bookings.
    """
    res = (
        (supabase_admin or supabase).table("appointments")
        .select("id, scheduled_date, status")
        .eq("location_id", location_id)
        .gte("scheduled_date", start_iso)
        .lte("scheduled_date", end_iso)
        .in_("status", statuses or ACTIVE_STATUSES)
        .execute()
    )
    return res.data or []


def list_user_appointments(user_id, status=None, limit=50, offset=0):
    query = (
        _client().table("appointments")
        .select(APPOINTMENT_LIST_SELECT)
        .eq("user_id", user_id)
        .order("scheduled_date")
        .range(offset, offset + limit - 1)
    )
    if status and status != "all":
        query = query.eq("status", status)
    return query.execute().data or []


def get_user_appointment(appointment_id, user_id):
    res = (
        _client().table("appointments")
        .select(APPOINTMENT_DETAIL_SELECT)
        .eq("id", appointment_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    return _first(res)


def create_appointment(payload):
    res = _client().table("appointments").insert(payload).execute()
    return _first(res)


def update_appointment(appointment_id, user_id, payload):
    payload = dict(payload, updated_at=_now_iso())
    res = (
        _client().table("appointments")
        .update(payload)
        .eq("id", appointment_id)
        .eq("user_id", user_id)
        .execute()
    )
    return _first(res)


def mark_confirmation_sent(appointment_id):
    now = _now_iso()
    _client().table("appointments").update({
        "confirmation_email_sent": True,
        "confirmation_email_sent_at": now,
        "updated_at": now,
    }).eq("id", appointment_id).execute()


# ============================================================
# REMINDERS (service role)
# ============================================================

def _admin():
    if supabase_admin is None:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY is not configured")
    return supabase_admin


def get_appointments_due_reminder(start_iso, end_iso, reminder_field):
    """Active appointments in [start, end) that have not had this reminder."""
    res = (
        _admin().table("appointments")
        .select(APPOINTMENT_DETAIL_SELECT)
        .gte("scheduled_date", start_iso)
        .lt("scheduled_date", end_iso)
        .in_("status", REMINDABLE_STATUSES)
        .is_(reminder_field, "null")
        .execute()
    )
    return res.data or []


def mark_reminder_sent(appointment_id, reminder_field):
    now = _now_iso()
    _admin().table("appointments").update({
        reminder_field: True,
        f"{reminder_field}_at": now,
        "updated_at": now,
    }).eq("id", appointment_id).execute()


def get_upcoming_appointments(start_iso, end_iso):
    res = (
        _admin().table("appointments")
        .select("id, scheduled_date, status, reminder_24h_sent, reminder_1h_sent")
        .gte("scheduled_date", start_iso)
        .lte("scheduled_date", end_iso)
        .in_("status", REMINDABLE_STATUSES)
        .execute()
    )
    return res.data or []
