# Message template rendering: booking -> variable map -> rendered subject/body.
# Pure functions only; no database or network access.
from __future__ import annotations

import html
import math
import os
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

# Prefix for total_price, e.g. "RM750.00"
CURRENCY_PREFIX = os.getenv("MESSAGE_CURRENCY_PREFIX", "RM")

# Fixed variable set available to every guest template
TEMPLATE_VARIABLES = (
    "guest_name",
    "guest_email",
    "property_name",
    "check_in_date",
    "check_out_date",
    "check_in_time",
    "check_out_time",
    "booking_reference",
    "total_price",
    "num_guests",
    "num_nights",
    "phone",
    "status",
)

# Canned subjects for the stock templates; anything else gets "<title> - <property>"
SUBJECT_PATTERNS = {
    "Booking Confirmation": "Booking Confirmed - {property_name}",
    "Pre-arrival Info": "Check-in Tomorrow - {property_name}",
    "Cleaner Schedule": "Cleaning Schedule - {property_name}",
    "Check-in Instructions": "Check-in Instructions - {property_name}",
    "Thank You": "Thank You for Your Stay - {property_name}",
}

DEFAULT_PROPERTY_NAME = "Property"
DEFAULT_CHECK_IN_TIME = time(15, 0)
DEFAULT_CHECK_OUT_TIME = time(11, 0)


def format_date(value: date) -> str:
    # "15 Dec 2025" (no leading zero on the day)
    return f"{value.day} {value.strftime('%b %Y')}"


def format_time(value: time) -> str:
    return value.strftime("%I:%M %p")


def format_price(value: Any) -> str:
    amount = Decimal(str(value if value is not None else 0))
    return f"{CURRENCY_PREFIX}{amount:.2f}"


def count_nights(check_in: date, check_out: date) -> int:
    """Whole nights between the two dates, rounding any partial day up."""
    start = datetime.combine(check_in, time.min) if not isinstance(check_in, datetime) else check_in
    end = datetime.combine(check_out, time.min) if not isinstance(check_out, datetime) else check_out
    return math.ceil((end - start) / timedelta(days=1))


def extract_variables(booking: Any, property: Optional[Any] = None) -> Dict[str, str]:
    """
    Build the placeholder values for a booking.

    `property` defaults to `booking.property` when omitted; a missing property renders as
    "Property" with the default check-in/check-out times.
    """
    if property is None:
        property = getattr(booking, "property", None)

    property_name = getattr(property, "name", None) or DEFAULT_PROPERTY_NAME
    check_in_time = getattr(property, "check_in_time", None) or DEFAULT_CHECK_IN_TIME
    check_out_time = getattr(property, "check_out_time", None) or DEFAULT_CHECK_OUT_TIME

    return {
        "guest_name": booking.guest_name or "",
        "guest_email": booking.guest_email or "",
        "property_name": property_name,
        "check_in_date": format_date(booking.check_in),
        "check_out_date": format_date(booking.check_out),
        "check_in_time": format_time(check_in_time),
        "check_out_time": format_time(check_out_time),
        "booking_reference": str(booking.id)[:8].upper(),
        "total_price": format_price(booking.price),
        "num_guests": str(booking.guests),
        "num_nights": str(count_nights(booking.check_in, booking.check_out)),
        "phone": booking.phone or "",
        "status": (booking.status or "").replace("_", " ").upper(),
    }


def render(template: str, variables: Dict[str, str]) -> str:
    """
    Substitute {{name}} and {name} placeholders.

    All {{name}} tokens are replaced before any {name} token so the single-brace pass never
    sees half of a double-brace token. Unknown placeholders are left untouched.
    """
    result = template
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", value)
    for key, value in variables.items():
        result = result.replace("{" + key + "}", value)
    return result


def generate_subject(title: str, property_name: Optional[str] = None) -> str:
    name = property_name or DEFAULT_PROPERTY_NAME
    pattern = SUBJECT_PATTERNS.get(title)
    if pattern is None:
        return f"{title} - {name}"
    return pattern.format(property_name=name)


def template_to_html(plain_text: str) -> str:
    """Wrap a rendered plain-text body in a minimal HTML email, one <p> per non-blank line."""
    parts = []
    for line in plain_text.split("\n"):
        stripped = line.strip()
        if not stripped:
            parts.append("<br>")
            continue
        parts.append(f'<p style="margin: 0 0 10px 0; line-height: 1.5;">{html.escape(stripped)}</p>')
    content = "".join(parts)

    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '  <meta charset="UTF-8">\n'
        '  <meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        "  <title>StayFlow Notification</title>\n"
        "</head>\n"
        '<body style="font-family: Arial, sans-serif; font-size: 14px; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">\n'
        f'  <div style="background-color: #f9f9f9; border-radius: 8px; padding: 24px; margin: 0 0 20px 0;">{content}</div>\n'
        '  <div style="text-align: center; color: #999; font-size: 12px; padding: 20px 0;">\n'
        "    <p>This is an automated message from StayFlow</p>\n"
        "  </div>\n"
        "</body>\n"
        "</html>"
    )
