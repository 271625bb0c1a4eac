"""
formatter.py — Render alerts into channel-specific message bodies.

═══════════════════════════════════════════════════════════════════════════
SMS (single segment, ≤160 chars)
═══════════════════════════════════════════════════════════════════════════

    URGENT EXTREME ALERT: {title}            ("URGENT" only when immediate)
    Location: {area, area}                   (omitted when no areas)
    {description}
    Instructions: {instructions}             (omitted when empty)
    Time: {effective_time}

    Longer bodies are cut to 157 chars + "..." (exactly 160).

═══════════════════════════════════════════════════════════════════════════
EMAIL
═══════════════════════════════════════════════════════════════════════════

    Subject: {SEVERITY} Alert: {title}
    Body:    plain-text and HTML alternatives built from the same fields.
             The HTML header is colour-coded by severity:

    Severity      Colour
    ──────────    ───────
    info          #007bff  (blue)
    minor         #28a745  (green)
    moderate      #ffc107  (amber)
    severe        #fd7e14  (orange)
    extreme       #dc3545  (red)
    (other)       #6c757d  (grey)

All alert and user text is HTML-escaped before interpolation.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List

from backend.app.alerts.models import Alert, NotifiableUser, Severity, Urgency

SMS_MAX_LENGTH = 160
SMS_ELLIPSIS = "..."

DEFAULT_SIGNATURE = "DisasterShield Alert System"

SEVERITY_COLOURS = {
    Severity.INFO: "#007bff",
    Severity.MINOR: "#28a745",
    Severity.MODERATE: "#ffc107",
    Severity.SEVERE: "#fd7e14",
    Severity.EXTREME: "#dc3545",
}
FALLBACK_COLOUR = "#6c757d"


@dataclass(frozen=True)
class EmailMessage:
    subject: str
    text: str
    html: str


def format_timestamp(value: datetime) -> str:
    """``YYYY-MM-DD HH:MM UTC``; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def severity_colour(severity: Severity) -> str:
    return SEVERITY_COLOURS.get(severity, FALLBACK_COLOUR)


# ═══════════════════════════════════════════════════════════════════════════
# SMS
# ═══════════════════════════════════════════════════════════════════════════

def format_sms(alert: Alert) -> str:
    headline = f"{alert.severity.value.upper()} ALERT: {alert.title}"
    if alert.urgency == Urgency.IMMEDIATE:
        headline = f"URGENT {headline}"

    lines = [headline]
    if alert.area_names:
        lines.append(f"Location: {alert.location_string()}")
    lines.append(alert.description)
    if alert.instructions:
        lines.append(f"Instructions: {alert.instructions}")
    lines.append(f"Time: {format_timestamp(alert.effective_time)}")

    message = "\n".join(lines)
    if len(message) > SMS_MAX_LENGTH:
        message = message[: SMS_MAX_LENGTH - len(SMS_ELLIPSIS)] + SMS_ELLIPSIS
    return message


# ═══════════════════════════════════════════════════════════════════════════
# Email
# ═══════════════════════════════════════════════════════════════════════════

def _contact_line(alert: Alert) -> str:
    source = alert.source
    if not source.has_contact:
        return ""
    if source.contact_email:
        return f"{source.contact_name or source.organization} ({source.contact_email})"
    return source.contact_name or ""


def _build_plain_body(alert: Alert, user: NotifiableUser, signature: str) -> str:
    severity = alert.severity.value.upper()
    lines: List[str] = [
        f"Dear {user.display_name},",
        "",
        f"{severity} ALERT: {alert.title}",
        "",
        f"Description: {alert.description}",
        "",
    ]
    if alert.instructions:
        lines += [f"Instructions: {alert.instructions}", ""]
    lines += [
        f"Location: {alert.location_string()}",
        f"Effective Time: {format_timestamp(alert.effective_time)}",
        f"Expiration: {format_timestamp(alert.expiration_time)}",
        f"Severity: {severity}",
        f"Type: {alert.type.value}",
        "",
        f"Source: {alert.source.organization}",
    ]
    contact = _contact_line(alert)
    if contact:
        lines.append(f"Contact: {contact}")
    lines += [
        "",
        "Please take appropriate action as necessary.",
        "",
        signature,
    ]
    return "\n".join(lines) + "\n"


def _build_html_body(alert: Alert, user: NotifiableUser, signature: str) -> str:
    e = html.escape
    colour = severity_colour(alert.severity)
    severity = alert.severity.value.upper()

    instructions = ""
    if alert.instructions:
        instructions = (
            '<div style="background:#f0f8ff;padding:10px;border-radius:5px;margin:10px 0;">'
            f"<strong>Instructions:</strong> {e(alert.instructions)}</div>"
        )

    contact = _contact_line(alert)
    contact_html = f"<p><strong>Contact:</strong> {e(contact)}</p>" if contact else ""

    return f"""<!DOCTYPE html>
<html>
<body style="font-family:Arial,sans-serif;margin:20px;">
  <div style="background:{colour};color:white;padding:15px;border-radius:5px;">
    <h2 style="margin:0;">{severity} ALERT</h2>
    <h3 style="margin:4px 0 0;">{e(alert.title)}</h3>
  </div>
  <div style="padding:20px;border:1px solid #ddd;border-radius:5px;margin-top:10px;">
    <p><strong>Dear {e(user.display_name)},</strong></p>
    <p><strong>Description:</strong> {e(alert.description)}</p>
    {instructions}
    <p><strong>Location:</strong> {e(alert.location_string())}</p>
    <p><strong>Effective Time:</strong> {format_timestamp(alert.effective_time)}</p>
    <p><strong>Expiration:</strong> {format_timestamp(alert.expiration_time)}</p>
    <p><strong>Severity:</strong> {severity}</p>
    <p><strong>Type:</strong> {alert.type.value}</p>
    <p><strong>Source:</strong> {e(alert.source.organization)}</p>
    {contact_html}
    <p><strong>Please take appropriate action as necessary.</strong></p>
  </div>
  <div style="margin-top:20px;font-size:12px;color:#666;">
    <p>{e(signature)}</p>
    <p>This is an automated message. Please do not reply to this email.</p>
  </div>
</body>
</html>
"""


def format_email(
    alert: Alert,
    user: NotifiableUser,
    *,
    signature: str = DEFAULT_SIGNATURE,
) -> EmailMessage:
    return EmailMessage(
        subject=f"{alert.severity.value.upper()} Alert: {alert.title}",
        text=_build_plain_body(alert, user, signature),
        html=_build_html_body(alert, user, signature),
    )
