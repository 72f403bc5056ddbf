import hmac
import logging
from functools import wraps
from datetime import datetime, timedelta

from flask import Flask, request, jsonify, g
from flask_caching import Cache
from werkzeug.exceptions import HTTPException

import db
import reminders
import notifications
from config import settings
from supabase_client import user_client
from availability import (
    AvailabilityService,
    SlotUnavailableError,
    location_hours,
    location_timezone,
    parse_instant,
    to_iso,
    utcnow,
)

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

VALID_STATUSES = ["pending", "confirmed", "in_progress", "completed", "cancelled", "rescheduled"]
LOCKED_STATUSES = ("completed", "cancelled")

# ----------------------------------------------
# Flask
# ----------------------------------------------
app = Flask(__name__)
app.secret_key = settings.SECRET_KEY

# ----------------------------------------------
# Caching
# ----------------------------------------------
# Redis if URL provided, else SimpleCache
if settings.REDIS_URL:
    cache = Cache(app, config={
        "CACHE_TYPE": "RedisCache",
        "CACHE_REDIS_URL": settings.REDIS_URL,
    })
else:
    cache = Cache(app, config={"CACHE_TYPE": "SimpleCache"})

availability_service = AvailabilityService(cache)


# ----------------------------------------------
# Helpers
# ----------------------------------------------
def _bearer_token():
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return None


def auth_required(fn):
    @wraps(fn)
    def w(*a, **kw):
        token = _bearer_token()
        user = db.get_user_from_token(token)
        if not user:
            return jsonify({"error": "Unauthorized"}), 401
        g.user = user
        # User-scoped queries run as this user so RLS applies
        g.supabase = user_client(token)
        return fn(*a, **kw)
    return w


def cron_required(fn):
    @wraps(fn)
    def w(*a, **kw):
        secret = settings.CRON_SECRET
        header = request.headers.get("Authorization", "")
        if not secret or not hmac.compare_digest(header.encode(), f"Bearer {secret}".encode()):
            return jsonify({"error": "Unauthorized"}), 401
        return fn(*a, **kw)
    return w


def _int_arg(name, default):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _invalidate(*location_ids):
    for location_id in {l for l in location_ids if l}:
        try:
            availability_service.invalidate_location(location_id)
        except Exception as e:
            logger.error("Cache invalidation error for %s: %s", location_id, e)


def _serialize_location(location):
    return {
        "id": location["id"],
        "name": location.get("name"),
        "address": location.get("address"),
        "phone": location.get("phone"),
        "operatingHours": location.get("operating_hours") or location.get("hours"),
        "services": location.get("services"),
        "isActive": location.get("is_active"),
        "available": location.get("is_active"),
    }


# ============================================================
# ERRORS
# ============================================================
@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify({"error": e.description}), e.code


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error"}), 500


# ============================================================
# HEALTH CHECKS
# ============================================================
@app.get("/healthz")
def health():
    return jsonify({"ok": True}), 200


# ============================================================
# LOCATIONS
# ============================================================
@app.get("/api/locations")
def list_locations():
    include_inactive = request.args.get("include_inactive") == "true"
    locations = [_serialize_location(l) for l in db.list_locations(include_inactive)]
    return jsonify({"locations": locations, "count": len(locations)})


# ============================================================
# AVAILABILITY
# ============================================================
@app.get("/api/appointments/availability")
@auth_required
def get_availability():
    location_id = request.args.get("location_id")
    if not location_id:
        return jsonify({"error": "location_id is required"}), 400

    try:
        days_ahead = _int_arg("days_ahead", settings.DEFAULT_DAYS_AHEAD)
    except ValueError:
        return jsonify({"error": "days_ahead must be an integer"}), 400
    if not 1 <= days_ahead <= settings.MAX_DAYS_AHEAD:
        return jsonify({"error": f"days_ahead must be between 1 and {settings.MAX_DAYS_AHEAD}"}), 400

    start_date = None
    date_str = request.args.get("date")
    if date_str:
        try:
            start_date = datetime.strptime(date_str, "%Y-%m-%d").date()
        except ValueError:
            return jsonify({"error": "Invalid date format. Use YYYY-MM-DD."}), 400

    location = db.get_location(location_id)
    if not location:
        return jsonify({"error": "Invalid location_id"}), 400

    result = availability_service.get_availability(location, start_date, days_ahead)
    slots = result["slots"]

    return jsonify({
        "location": {
            "id": location["id"],
            "name": location.get("name"),
            "hours": location_hours(location),
        },
        "date_range": result["date_range"],
        "available_slots": slots,
        "total_slots": len(slots),
    })


# ============================================================
# APPOINTMENTS
# ============================================================
@app.get("/api/appointments")
@auth_required
def list_appointments():
    try:
        limit = _int_arg("limit", 50)
        offset = _int_arg("offset", 0)
    except ValueError:
        return jsonify({"error": "limit and offset must be integers"}), 400
    if limit < 1 or offset < 0:
        return jsonify({"error": "limit must be positive and offset non-negative"}), 400

    appointments = db.list_user_appointments(
        g.user.id, request.args.get("status"), min(limit, 100), offset
    )
    return jsonify({"appointments": appointments, "count": len(appointments)})


@app.post("/api/appointments")
@auth_required
def create_appointment():
    data = request.get_json(silent=True) or {}

    scheduled_date = data.get("scheduled_date")
    location_id = data.get("location_id")
    if not scheduled_date or not location_id:
        return jsonify({"error": "Missing required fields: scheduled_date, location_id"}), 400

    location = db.get_location(location_id)
    if not location:
        return jsonify({"error": "Invalid location_id"}), 400

    try:
        scheduled_at = parse_instant(scheduled_date, location_timezone(location))
    except ValueError:
        return jsonify({"error": "Invalid scheduled_date. Use an ISO-8601 timestamp."}), 400

    if scheduled_at <= utcnow():
        return jsonify({"error": "Appointment date must be in the future"}), 400

    try:
        availability_service.validate_slot(location, scheduled_at)
    except SlotUnavailableError as e:
        return jsonify({"error": e.message}), e.status_code

    now_iso = to_iso(utcnow())
    created = db.create_appointment({
        "user_id": g.user.id,
        "scheduled_date": to_iso(scheduled_at),
        "location_id": location_id,
        "order_id": data.get("order_id") or None,
        "appointment_type": data.get("appointment_type") or "blood_draw",
        "status": "confirmed",
        "notes": data.get("notes") or None,
        "created_at": now_iso,
        "updated_at": now_iso,
    })
    if not created:
        logger.error("Appointment insert returned no row for user %s", g.user.id)
        return jsonify({"error": "Failed to create appointment"}), 500

    _invalidate(location_id)
    logger.info("Appointment %s booked at %s for %s", created.get("id"), location_id, to_iso(scheduled_at))

    appointment = db.get_user_appointment(created["id"], g.user.id) or created
    return jsonify({
        "appointment": appointment,
        "message": "Appointment created successfully",
    }), 201


@app.put("/api/appointments")
@auth_required
def bulk_update_appointments():
    return jsonify({"error": "Admin access required for bulk operations"}), 403


@app.get("/api/appointments/<appointment_id>")
@auth_required
def get_appointment(appointment_id):
    appointment = db.get_user_appointment(appointment_id, g.user.id)
    if not appointment:
        return jsonify({"error": "Appointment not found"}), 404
    return jsonify({"appointment": appointment})


@app.route("/api/appointments/<appointment_id>", methods=["PUT", "PATCH"])
@auth_required
def update_appointment(appointment_id):
    existing = db.get_user_appointment(appointment_id, g.user.id)
    if not existing:
        return jsonify({"error": "Appointment not found"}), 404

    if existing.get("status") in LOCKED_STATUSES:
        return jsonify({"error": "Cannot modify completed or cancelled appointments"}), 400

    data = request.get_json(silent=True) or {}
    scheduled_date = data.get("scheduled_date")
    location_id = data.get("location_id")
    status = data.get("status")

    if status and status not in VALID_STATUSES:
        return jsonify({"error": "Invalid status. Valid values: " + ", ".join(VALID_STATUSES)}), 400

    update = {}
    old_location_id = existing.get("location_id")

    if scheduled_date or location_id:
        location = db.get_location(location_id or old_location_id)
        if not location:
            return jsonify({"error": "Invalid location_id"}), 400

        try:
            scheduled_at = parse_instant(scheduled_date or existing["scheduled_date"], location_timezone(location))
        except ValueError:
            return jsonify({"error": "Invalid scheduled_date. Use an ISO-8601 timestamp."}), 400

        if scheduled_date and scheduled_at <= utcnow():
            return jsonify({"error": "Appointment date must be in the future"}), 400

        try:
            availability_service.validate_slot(location, scheduled_at, exclude_id=appointment_id)
        except SlotUnavailableError as e:
            return jsonify({"error": e.message}), e.status_code

        if scheduled_date:
            update["scheduled_date"] = to_iso(scheduled_at)
        if location_id:
            update["location_id"] = location_id

    if "notes" in data:
        update["notes"] = data["notes"]
    if status:
        update["status"] = status

    if update and not db.update_appointment(appointment_id, g.user.id, update):
        logger.error("Appointment %s update returned no row", appointment_id)
        return jsonify({"error": "Failed to update appointment"}), 500

    _invalidate(old_location_id, location_id)

    return jsonify({
        "appointment": db.get_user_appointment(appointment_id, g.user.id),
        "message": "Appointment updated successfully",
    })


@app.delete("/api/appointments/<appointment_id>")
@auth_required
def cancel_appointment(appointment_id):
    existing = db.get_user_appointment(appointment_id, g.user.id)
    if not existing:
        return jsonify({"error": "Appointment not found"}), 404

    if existing.get("status") == "completed":
        return jsonify({"error": "Cannot cancel completed appointments"}), 400
    if existing.get("status") == "cancelled":
        return jsonify({"error": "Appointment is already cancelled"}), 400

    now = utcnow()
    try:
        scheduled_at = parse_instant(existing.get("scheduled_date"))
    except ValueError:
        logger.error("Appointment %s has no usable scheduled_date", appointment_id)
        return jsonify({"error": "Appointment has no valid scheduled date"}), 400

    hours_until = (scheduled_at - now) / timedelta(hours=1)
    if hours_until < settings.CANCELLATION_NOTICE_HOURS:
        return jsonify({
            "error": f"Appointments must be cancelled at least {settings.CANCELLATION_NOTICE_HOURS} hours in advance",
            "hours_until_appointment": round(hours_until),
        }), 400

    if not db.update_appointment(appointment_id, g.user.id, {
        "status": "cancelled",
        "cancelled_at": to_iso(now),
    }):
        logger.error("Appointment %s cancel returned no row", appointment_id)
        return jsonify({"error": "Failed to cancel appointment"}), 500

    # Free up the slot
    _invalidate(existing.get("location_id"))

    return jsonify({
        "appointment": db.get_user_appointment(appointment_id, g.user.id),
        "message": "Appointment cancelled successfully",
    })


@app.post("/api/appointments/<appointment_id>/send-confirmation")
@auth_required
def send_confirmation(appointment_id):
    appointment = db.get_user_appointment(appointment_id, g.user.id)
    if not appointment:
        return jsonify({"error": "Appointment not found"}), 404

    email_data = notifications.build_appointment_email_data(
        appointment, fallback_email=getattr(g.user, "email", None)
    )
    if not email_data["customer_email"]:
        return jsonify({"error": "Customer email not found"}), 400

    if not notifications.send_appointment_confirmation(email_data):
        return jsonify({"error": "Failed to send confirmation email"}), 500

    db.mark_confirmation_sent(appointment_id)

    return jsonify({
        "message": "Confirmation email sent successfully",
        "email_sent_to": email_data["customer_email"],
    })


# ============================================================
# REMINDERS (CRON)
# ============================================================
@app.post("/api/appointments/reminders")
@cron_required
def send_appointment_reminders():
    data = request.get_json(silent=True) or {}
    reminder_type = data.get("reminder_type", "24h")
    if reminder_type not in reminders.REMINDER_WINDOWS:
        return jsonify({"error": 'Invalid reminder_type. Use "24h" or "1h"'}), 400

    return jsonify(reminders.send_reminders(reminder_type))


@app.get("/api/appointments/reminders")
@cron_required
def reminder_statistics():
    return jsonify(reminders.reminder_stats())


if __name__ == "__main__":
    app.run(debug=False)
