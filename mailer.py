import logging
from html import escape

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

import config

logger = logging.getLogger(__name__)


def send_email(to_email, subject, html_content):
    """Send one email through SendGrid. Returns False instead of raising when delivery fails."""
    if not config.SENDGRID_API_KEY:
        logger.warning("Warning: SENDGRID_API_KEY not set, email '%s' to %s not sent.", subject, to_email)
        return False
    message = Mail(
        from_email=(config.FROM_EMAIL, config.FROM_NAME),
        to_emails=to_email,
        subject=subject,
        html_content=html_content,
    )
    try:
        sg = SendGridAPIClient(config.SENDGRID_API_KEY)
        response = sg.send(message)
        logger.info("SUCCESS: SendGrid email sent! Status: %s", response.status_code)
        return True
    except Exception as e:
        # sendgrid raises python_http_client errors as well as transport errors
        logger.warning("ERROR: SENDGRID ERROR: %s", getattr(e, 'body', e))
        return False


def send_verification_code(to_email, name, code):
    html_content = (
        f"<p>Hello {escape(name)},</p>"
        f"<p>Your verification code is: <strong>{escape(code)}</strong></p>"
        f"<p>This code expires in {config.VERIFICATION_CODE_MINUTES} minutes.</p>"
    )
    return send_email(to_email, f"{config.FROM_NAME} Email Verification", html_content)


def _calendar_link(calendar_id=None, raw_date=None):
    if calendar_id:
        return f"{config.APP_BASE_URL}/tools/calendars?calendar={calendar_id}&date={raw_date or ''}"
    return f"{config.APP_BASE_URL}/tools/calendars"


def send_reminder_email(to_email, name, event):
    """``event``: title, date, start_time, end_time, calendar_title, calendar_id, raw_date, countdown."""
    if event.get('start_time'):
        time_str = event['start_time'] + (f" - {event['end_time']}" if event.get('end_time') else '')
    else:
        time_str = 'All day'
    html_content = (
        f"<p>Hi <strong>{escape(name)}</strong>,</p>"
        f"<p>Here's a reminder for your upcoming event:</p>"
        f"<p><strong>{escape(event['title'])}</strong> &middot; {escape(event['countdown'])}<br>"
        f"{escape(event['date'])} &middot; {escape(time_str)} &middot; {escape(event['calendar_title'])}</p>"
        f"<p><a href=\"{_calendar_link(event.get('calendar_id'), event.get('raw_date'))}\">Open Calendar</a></p>"
    )
    return send_email(to_email, f"Reminder: {event['title']}", html_content)


def send_reminder_confirmation(to_email, name, events, timing_labels):
    rows = ''.join(
        f"<li><strong>{escape(e['title'])}</strong> &middot; {escape(e['date'])} &middot; "
        f"{escape(e.get('start_time') or 'All day')} &middot; {escape(e['calendar_title'])}</li>"
        for e in events[:10]
    )
    more = f"<p>...and {len(events) - 10} more</p>" if len(events) > 10 else ''
    html_content = (
        f"<p>Hi <strong>{escape(name)}</strong>,</p>"
        f"<p>Your email reminder has been set up. You'll be reminded about:</p>"
        f"<ul>{rows}</ul>{more}"
        f"<p>You'll receive emails: {escape(', '.join(timing_labels))}</p>"
        f"<p><a href=\"{_calendar_link(events[0].get('calendar_id'), events[0].get('raw_date'))}\">Open Calendar</a></p>"
    )
    title = events[0]['title'] if len(events) == 1 else f"{len(events)} events"
    return send_email(to_email, f"Reminder set: {title}", html_content)


def send_daily_digest(to_email, name, calendar_title, calendar_id, day_label, events):
    """Today's agenda for one calendar. ``events``: title, start_time, end_time."""
    if events:
        body = ''.join(
            f"<li><strong>{escape(e['title'])}</strong>"
            + (f" &middot; {escape(e['start_time'])}" if e.get('start_time') else '')
            + (f" - {escape(e['end_time'])}" if e.get('start_time') and e.get('end_time') else '')
            + "</li>"
            for e in events
        )
        body = f"<ul>{body}</ul>"
    else:
        body = "<p>You have no events scheduled for today. Enjoy your free time!</p>"
    html_content = (
        f"<p>Hi <strong>{escape(name)}</strong>,</p>"
        f"<p>Here is your agenda for {escape(day_label)} in <strong>{escape(calendar_title)}</strong>.</p>"
        f"{body}"
        f"<p><a href=\"{_calendar_link(calendar_id)}\">View Calendar</a></p>"
    )
    return send_email(to_email, f"Daily Digest: {calendar_title}", html_content)
