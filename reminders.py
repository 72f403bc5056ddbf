"""
Reminder job, called by cron through POST /api/appointments/reminders.

  - 24h: appointments starting 24-25 hours from now
  - 1h:  appointments starting 1-2 hours from now

Each appointment is emailed at most once per reminder type; the
reminder_<type>_sent column is the guard.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import db
import notifications
from availability import to_iso, utcnow

logger = logging.getLogger(__name__)

REMINDER_WINDOWS = {
    "24h": (24, 25),
    "1h": (1, 2),
}


def reminder_field(reminder_type: str) -> str:
    return f"reminder_{reminder_type}_sent"


def reminder_window(reminder_type: str, now: datetime) -> tuple[datetime, datetime]:
    if reminder_type not in REMINDER_WINDOWS:
        raise ValueError('Invalid reminder_type. Use "24h" or "1h"')
    start_h, end_h = REMINDER_WINDOWS[reminder_type]
    return now + timedelta(hours=start_h), now + timedelta(hours=end_h)


def send_reminders(reminder_type: str = "24h", now: datetime | None = None) -> dict:
    now = now or utcnow()
    start, end = reminder_window(reminder_type, now)
    field = reminder_field(reminder_type)
    time_range = {"start": to_iso(start), "end": to_iso(end)}

    appointments = db.get_appointments_due_reminder(time_range["start"], time_range["end"], field)
    if not appointments:
        return {
            "message": f"No appointments found requiring {reminder_type} reminders",
            "reminder_type": reminder_type,
            "time_range": time_range,
            "reminders_sent": 0,
        }

    results: list[dict] = []
    sent = 0
    failed = 0

    for appt in appointments:
        try:
            data = notifications.build_appointment_email_data(appt)
            if not data["customer_email"]:
                logger.warning("No email found for appointment %s", appt.get("id"))
                failed += 1
                results.append({"appointment_id": appt.get("id"), "status": "failed", "reason": "No customer email"})
                continue

            if notifications.send_appointment_reminder(data, reminder_type):
                db.mark_reminder_sent(appt["id"], field)
                sent += 1
                results.append({"appointment_id": appt["id"], "customer_email": data["customer_email"], "status": "sent"})
                logger.info("%s reminder sent for appointment %s", reminder_type, appt["id"])
            else:
                failed += 1
                results.append({
                    "appointment_id": appt["id"],
                    "customer_email": data["customer_email"],
                    "status": "failed",
                    "reason": "Email service error",
                })
        except Exception as exc:
            logger.error("Error sending reminder for appointment %s: %s", appt.get("id"), exc)
            failed += 1
            results.append({"appointment_id": appt.get("id"), "status": "failed", "reason": "Processing error"})

    return {
        "message": f"Processed {len(appointments)} appointments for {reminder_type} reminders",
        "reminder_type": reminder_type,
        "time_range": time_range,
        "total_appointments": len(appointments),
        "reminders_sent": sent,
        "failures": failed,
        "results": results,
    }


def reminder_stats(now: datetime | None = None) -> dict:
    """Reminder coverage for everything active in the next 48 hours."""
    now = now or utcnow()
    end = now + timedelta(hours=48)
    upcoming = db.get_upcoming_appointments(to_iso(now), to_iso(end))

    return {
        "timestamp": to_iso(now),
        "time_range": {"start": to_iso(now), "end": to_iso(end)},
        "statistics": {
            "total_upcoming": len(upcoming),
            "needs_24h_reminder": sum(1 for a in upcoming if not a.get("reminder_24h_sent")),
            "needs_1h_reminder": sum(1 for a in upcoming if not a.get("reminder_1h_sent")),
            "reminders_sent_24h": sum(1 for a in upcoming if a.get("reminder_24h_sent")),
            "reminders_sent_1h": sum(1 for a in upcoming if a.get("reminder_1h_sent")),
        },
        "appointments": upcoming,
    }
