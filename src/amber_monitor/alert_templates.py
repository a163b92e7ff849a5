"""Alert message rendering shared by the notification channels."""

from __future__ import annotations

from zoneinfo import ZoneInfo

from jinja2 import Template

from amber_monitor.alert_detector import Alert
from amber_monitor.schemas import PriceDescriptor

# ── Price level icons ──────────────────────────────────────────────────

_LEVEL_ICONS: dict[PriceDescriptor, str] = {
    PriceDescriptor.SPIKE: "\U0001f525",
    PriceDescriptor.HIGH: "⚡",
    PriceDescriptor.NEUTRAL: "\U0001f4a1",
    PriceDescriptor.LOW: "\U0001f49a",
    PriceDescriptor.VERY_LOW: "\U0001f49a",
    PriceDescriptor.EXTREMELY_LOW: "\U0001f49a",
}


def price_level_icon(descriptor: PriceDescriptor) -> str:
    return _LEVEL_ICONS.get(descriptor, "⭐")


def format_valid_until(alert: Alert, tz_name: str) -> str:
    """HH:MM end of the alert interval in the configured timezone."""
    return alert.valid_until.astimezone(ZoneInfo(tz_name)).strftime("%H:%M")


# ── Templates ──────────────────────────────────────────────────────────

_CONSOLE_TEMPLATE = Template("""\
HIGH FEED-IN PRICE ALERT
Price: {{ "%.2f"|format(a.price) }}c/kWh (threshold: {{ "%.2f"|format(a.threshold) }}c/kWh)
Spot Price: {{ "%.2f"|format(a.spot_price) }}c/kWh
Level: {{ a.descriptor.value }}
Renewables: {{ "%.0f"|format(a.renewables) }}%
Valid until: {{ until }}
{{ "This is an estimate" if a.estimate else "Confirmed price" }}
Great time to export solar power!""")

_DESKTOP_TITLE = Template(
    """{{ icon }} High Feed-In Price: {{ "%.2f"|format(a.price) }}c/kWh""",
)

_DESKTOP_BODY = Template("""\
Great time to export solar power!
Spot: {{ "%.2f"|format(a.spot_price) }}c/kWh | Renewables: {{ "%.0f"|format(a.renewables) }}%
Valid until: {{ until }}{{ " (estimate)" if a.estimate else "" }}""")

_EMAIL_TEMPLATE = Template("""\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family:Consolas,monospace;background:#1a1a2e;color:#e0e0e0;padding:20px;">
<div style="max-width:600px;margin:0 auto;">
<h2 style="color:#fff;margin-bottom:4px;">{{ icon }} High feed-in price: {{ "%.2f"|format(a.price) }}c/kWh</h2>
<p style="color:#9ca3af;margin-top:0;">Raised {{ raised }}, threshold {{ "%.2f"|format(a.threshold) }}c/kWh</p>
<table style="width:100%;color:#e0e0e0;font-size:14px;">
<tr><td style="color:#9ca3af;">Spot price:</td><td>{{ "%.2f"|format(a.spot_price) }}c/kWh</td></tr>
<tr><td style="color:#9ca3af;">Level:</td><td>{{ a.descriptor.value }}</td></tr>
<tr><td style="color:#9ca3af;">Renewables:</td><td>{{ "%.0f"|format(a.renewables) }}%</td></tr>
<tr><td style="color:#9ca3af;">Valid until:</td><td>{{ until }}{{ " (estimate)" if a.estimate else "" }}</td></tr>
</table>
</div>
</body>
</html>""")


def render_console(alert: Alert, tz_name: str) -> str:
    return _CONSOLE_TEMPLATE.render(a=alert, until=format_valid_until(alert, tz_name))


def render_desktop(alert: Alert, tz_name: str) -> tuple[str, str]:
    """Return (title, body) for a desktop popup."""
    until = format_valid_until(alert, tz_name)
    title = _DESKTOP_TITLE.render(a=alert, icon=price_level_icon(alert.descriptor))
    return title, _DESKTOP_BODY.render(a=alert, until=until)


def render_email(alert: Alert, tz_name: str) -> tuple[str, str]:
    """Return (subject, html_body) for an alert email."""
    tz = ZoneInfo(tz_name)
    subject = f"Amber feed-in alert: {alert.price:.2f}c/kWh ({alert.descriptor.value})"
    html = _EMAIL_TEMPLATE.render(
        a=alert,
        icon=price_level_icon(alert.descriptor),
        until=format_valid_until(alert, tz_name),
        raised=alert.raised_at.astimezone(tz).strftime("%Y-%m-%d %H:%M"),
    )
    return subject, html
