"""HTML pages of the registration flow."""

from html import escape
from typing import List

from .models import CalendarInfo

_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>calpush</title>
</head>
<body>
{body}
</body>
</html>
"""


def render_calendar_picker(user_name: str, access_token: str, calendars: List[CalendarInfo]) -> str:
    """Form posting the chosen calendar back to /auth/callback."""
    options = "\n".join(
        '<option value="{id}"{selected}>{name}</option>'.format(
            id=escape(cal.id, quote=True),
            selected=' selected' if cal.is_primary else '',
            name=escape(cal.name),
        )
        for cal in calendars
    )
    body = (
        f"<h1>Hi {escape(user_name)}</h1>\n"
        '<form method="post" action="/auth/callback">\n'
        f'<input type="hidden" name="access_token" value="{escape(access_token, quote=True)}">\n'
        '<label for="calendar_id">Calendar</label>\n'
        f'<select id="calendar_id" name="calendar_id">\n{options}\n</select>\n'
        '<button type="submit">Watch</button>\n'
        "</form>"
    )
    return _LAYOUT.format(body=body)


def render_watch_confirmation(channel_id: str) -> str:
    body = (
        "<h1>Watching</h1>\n"
        f"<p>Channel <code>{escape(channel_id)}</code> is registered. "
        "Busy events on this calendar will no longer use the default reminders.</p>"
    )
    return _LAYOUT.format(body=body)
