"""
Appointment emails sent through Resend.
Senders return True/False so a failed email never breaks a request or a batch.
"""

import logging
from html import escape

import resend

from availability import format_time, location_timezone, parse_instant
from config import settings

logger = logging.getLogger(__name__)

PREPARATION_INSTRUCTIONS = [
    "Do not eat or drink anything except water for 8-12 hours before your appointment",
    "Please arrive 15 minutes early to complete any necessary paperwork",
    "Bring a valid photo ID for verification",
    "Wear clothing that allows easy access to your arm",
]

SUPPORT_PHONE = "(555) 123-4567"
SUPPORT_EMAIL = "support@prismhealthlab.com"


def _customer_name(appointment):
    order = appointment.get("orders") or {}
    profile = appointment.get("profiles") or {}
    if order.get("customer_name"):
        return order["customer_name"]
    full = f"{profile.get('first_name') or ''} {profile.get('last_name') or ''}".strip()
    return full or "Valued Customer"


def _test_names(order):
    items = (order or {}).get("items") or []
    names = [str(item.get("product_name") or "Diagnostic Test") for item in items if isinstance(item, dict)]
    return names or ["Diagnostic Test"]


def build_appointment_email_data(appointment, fallback_email=None, tz=None):
    """Flatten an appointment row (with joined relations) into template fields.

    Date and time are rendered in `tz`, defaulting to the joined location's zone.
    """
    location = appointment.get("locations") or {}
    order = appointment.get("orders") or {}
    profile = appointment.get("profiles") or {}

    local = parse_instant(appointment["scheduled_date"]).astimezone(tz or location_timezone(location))

    return {
        "customer_name": _customer_name(appointment),
        "customer_email": profile.get("email") or order.get("customer_email") or fallback_email,
        "appointment_date": local.date().isoformat(),
        "appointment_date_long": local.strftime("%A, %B %d, %Y"),
        "appointment_time": format_time(local),
        "location_name": location.get("name") or "Prism Health Lab",
        "location_address": location.get("address") or "Downtown Medical Center",
        "order_number": order.get("swell_order_id") or order.get("id") or "N/A",
        "test_names": _test_names(order),
    }


# -------------------------------------------------------------------
# TEMPLATES
# -------------------------------------------------------------------

def confirmation_template(data):
    when = f"{data['appointment_date_long']} at {data['appointment_time']}"
    subject = f"Appointment Confirmed - {when}"
    portal_url = f"{settings.APP_URL}/portal/appointments"

    tests_html = "".join(f"<li>{escape(t)}</li>" for t in data["test_names"])
    prep_html = "".join(f"<li>{escape(p)}</li>" for p in PREPARATION_INSTRUCTIONS)
    html = f"""
    <html>
    <body style="font-family: sans-serif; color: #333;">
      <h1>Appointment Confirmed</h1>
      <p>Hello {escape(data['customer_name'])},</p>
      <p>Thank you for choosing {escape(settings.FROM_NAME)}. Your blood draw appointment has been confirmed.</p>
      <table>
        <tr><td><b>Date &amp; Time:</b></td><td>{escape(when)}</td></tr>
        <tr><td><b>Location:</b></td><td>{escape(data['location_name'])}</td></tr>
        <tr><td><b>Address:</b></td><td>{escape(data['location_address'])}</td></tr>
        <tr><td><b>Order Number:</b></td><td>#{escape(str(data['order_number']))}</td></tr>
      </table>
      <h4>Tests Included:</h4>
      <ul>{tests_html}</ul>
      <h4>Important Preparation Instructions</h4>
      <ul>{prep_html}</ul>
      <p><a href="{portal_url}">View Appointment Details</a></p>
      <p>If you need to reschedule or cancel, please contact us at least
      {settings.CANCELLATION_NOTICE_HOURS} hours in advance.<br>
      Phone: {SUPPORT_PHONE} &middot; Email: {SUPPORT_EMAIL}</p>
    </body>
    </html>
    """

    lines = [
        f"APPOINTMENT CONFIRMED - {settings.FROM_NAME}",
        "",
        f"Hello {data['customer_name']},",
        "",
        "Your appointment has been confirmed with the following details:",
        "",
        f"Date & Time: {when}",
        f"Location: {data['location_name']}",
        f"Address: {data['location_address']}",
        f"Order Number: #{data['order_number']}",
        "",
        "Tests Included:",
        *[f"- {t}" for t in data["test_names"]],
        "",
        "IMPORTANT PREPARATION INSTRUCTIONS:",
        *[f"- {p}" for p in PREPARATION_INSTRUCTIONS],
        "",
        f"If you need to reschedule or cancel, please contact us at least "
        f"{settings.CANCELLATION_NOTICE_HOURS} hours in advance.",
        f"Phone: {SUPPORT_PHONE}",
        f"Email: {SUPPORT_EMAIL}",
        "",
        f"View your appointment details: {portal_url}",
    ]
    return subject, html, "\n".join(lines)


def reminder_template(data, reminder_type="24h"):
    if reminder_type == "1h":
        timeframe, when_word, subject_tail = "1 hour", "in 1 hour", "TODAY"
    else:
        timeframe, when_word, subject_tail = "24 hours", "tomorrow", "Tomorrow"
    subject = f"Appointment Reminder - {data['appointment_time']} {subject_tail}"

    html = f"""
    <html>
    <body style="font-family: sans-serif; color: #333;">
      <h1>Appointment Reminder</h1>
      <p>Hello {escape(data['customer_name'])},</p>
      <p>This is a reminder that you have an appointment scheduled {when_word}:</p>
      <p><b>{escape(data['appointment_date'])} at {escape(data['appointment_time'])}</b><br>
      {escape(data['location_name'])}<br>{escape(data['location_address'])}</p>
      <p>Please remember to fast for 8-12 hours and bring a valid photo ID.</p>
    </body>
    </html>
    """

    text = "\n".join([
        f"APPOINTMENT REMINDER - {timeframe}",
        "",
        f"Hello {data['customer_name']},",
        "",
        f"This is a reminder that you have an appointment scheduled {when_word}:",
        "",
        f"Date & Time: {data['appointment_date']} at {data['appointment_time']}",
        f"Location: {data['location_name']}",
        f"Address: {data['location_address']}",
        "",
        "Please remember:",
        "- Fast for 8-12 hours (water is fine)",
        "- Bring a valid photo ID",
        "- Arrive 15 minutes early",
    ])
    return subject, html, text


# -------------------------------------------------------------------
# SENDING
# -------------------------------------------------------------------

def send_email(to, subject, html, text):
    if not settings.RESEND_API_KEY:
        logger.error("Email API key not configured")
        return False

    resend.api_key = settings.RESEND_API_KEY
    try:
        result = resend.Emails.send({
            "from": f"{settings.FROM_NAME} <{settings.FROM_EMAIL}>",
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        })
    except Exception as e:
        logger.error("Failed to send email to %s: %s", to, e)
        return False

    logger.info("Email sent: id=%s subject=%r", (result or {}).get("id"), subject)
    return True


def send_appointment_confirmation(data):
    subject, html, text = confirmation_template(data)
    return send_email(data["customer_email"], subject, html, text)


def send_appointment_reminder(data, reminder_type="24h"):
    subject, html, text = reminder_template(data, reminder_type)
    return send_email(data["customer_email"], subject, html, text)
