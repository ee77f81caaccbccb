"""
iCalendar helpers: map remote calendar objects onto local Event rows and back.
"""

import hashlib
import logging
import uuid
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from zoneinfo import ZoneInfo

from icalendar import Calendar as ICalendar
from icalendar import Event as IEvent

from vividly_sync.models import DEFAULT_COLOR
from vividly_sync.models import Event
from vividly_sync.models import ProtocolError
from vividly_sync.models import RemoteEvent
from vividly_sync.urls import normalize_calendar_url

logger = logging.getLogger(__name__)

PRODID = "-//Vividly//vividly-sync//EN"
UID_PREFIX = "vividly-"

# Fields that take part in change detection
_HASHED_FIELDS = ("title", "date", "end_date", "start_time", "end_time", "memo", "color")


def parse_calendar_data(text: str) -> ICalendar:
    """Parse a VCALENDAR document, raising ProtocolError when it is not one."""
    try:
        return ICalendar.from_ical(text)
    except ValueError as e:
        raise ProtocolError(f"Invalid iCalendar data: {e}") from e


def master_vevent(cal: ICalendar) -> IEvent | None:
    """
    Return the master VEVENT of a calendar object.

    A recurring series is stored as one resource holding the master plus
    overridden instances (those carry RECURRENCE-ID). Only the master is
    mapped; if a resource holds overrides only, the first one is used.
    """
    vevents = list(cal.walk("VEVENT"))
    if not vevents:
        return None
    for vevent in vevents:
        if vevent.get("RECURRENCE-ID") is None:
            return vevent
    return vevents[0]


def normalize_color(value: str | None, default: str = DEFAULT_COLOR) -> str:
    """'#RRGGBBAA' and bare 'RRGGBB' values become '#RRGGBB'."""
    if not value:
        return default
    color = str(value).strip().lstrip("#")
    if len(color) == 8:
        color = color[:6]
    if len(color) != 6:
        return default
    try:
        int(color, 16)
    except ValueError:
        return default
    return f"#{color.lower()}"


def _to_local(value, tz: ZoneInfo):
    """Convert aware datetimes to the user's zone; floating times keep wall-clock."""
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(tz)
    return value


def _uid_from_href(href: str) -> str:
    name = href.rstrip("/").rsplit("/", 1)[-1]
    return name[:-4] if name.lower().endswith(".ics") else name


def to_local_event(
    remote: RemoteEvent,
    calendar_url: str,
    default_color: str = DEFAULT_COLOR,
    tz: ZoneInfo | None = None,
) -> Event | None:
    """
    Map one remote resource to a local Event.

    Returns None (and logs) for resources that carry no usable VEVENT. Any
    property we do not model is ignored.
    """
    tz = tz or ZoneInfo("UTC")
    cal = parse_calendar_data(remote.calendar_data)
    vevent = master_vevent(cal)
    if vevent is None:
        logger.debug(f"No VEVENT in {remote.href}, skipping")
        return None

    dtstart_prop = vevent.get("DTSTART")
    if dtstart_prop is None:
        logger.warning(f"Event without DTSTART in {remote.href}, skipping")
        return None
    start = _to_local(dtstart_prop.dt, tz)

    end = None
    if vevent.get("DTEND") is not None:
        end = _to_local(vevent.get("DTEND").dt, tz)
    elif vevent.get("DURATION") is not None:
        end = start + vevent.get("DURATION").dt

    all_day = not isinstance(start, datetime)
    end_date = None
    start_time = end_time = None
    if all_day:
        # DTEND is exclusive: a one-day event ends on the following day
        if isinstance(end, date) and not isinstance(end, datetime):
            if (end - start).days > 1:
                end_date = (end - timedelta(days=1)).isoformat()
    else:
        start_time = start.strftime("%H:%M")
        if isinstance(end, datetime):
            end_time = end.strftime("%H:%M")
            if end.date() > start.date():
                end_date = end.date().isoformat()

    remote_modified_at = None
    last_modified = vevent.get("LAST-MODIFIED")
    if last_modified is not None and isinstance(last_modified.dt, datetime):
        remote_modified_at = last_modified.dt
        if remote_modified_at.tzinfo is None:
            remote_modified_at = remote_modified_at.replace(tzinfo=timezone.utc)

    uid = str(vevent.get("UID") or "").strip() or _uid_from_href(remote.href)
    description = str(vevent.get("DESCRIPTION") or "").strip()

    event = Event(
        calendar_url=normalize_calendar_url(calendar_url),
        caldav_uid=uid,
        href=normalize_calendar_url(remote.href, calendar_url + "/"),
        etag=remote.etag,
        title=str(vevent.get("SUMMARY") or "").strip(),
        date=(start if all_day else start.date()).isoformat(),
        end_date=end_date,
        start_time=start_time,
        end_time=end_time,
        memo=description or None,
        color=normalize_color(vevent.get("X-APPLE-CALENDAR-COLOR"), default_color),
        remote_modified_at=remote_modified_at,
    )
    event.content_hash = compute_hash(event)
    return event


def compute_hash(event: Event) -> str:
    """SHA256 over the mapped fields, used to tell real changes from re-sends."""
    payload = "\x1f".join(str(getattr(event, name) or "") for name in _HASHED_FIELDS)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def new_uid() -> str:
    return f"{UID_PREFIX}{uuid.uuid4()}"


def serialize_event(event: Event, tz: ZoneInfo | None = None) -> str:
    """Render a local Event as a VCALENDAR document for PUT."""
    tz = tz or ZoneInfo("UTC")
    cal = ICalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")

    vevent = IEvent()
    vevent.add("uid", event.caldav_uid)
    vevent.add("dtstamp", datetime.now(timezone.utc))
    vevent.add("summary", event.title)
    if event.memo:
        vevent.add("description", event.memo)

    start_day = date.fromisoformat(event.date)
    end_day = date.fromisoformat(event.end_date) if event.end_date else start_day
    if event.start_time:
        start = datetime.combine(start_day, _parse_hhmm(event.start_time), tzinfo=tz)
        if event.end_time:
            end = datetime.combine(end_day, _parse_hhmm(event.end_time), tzinfo=tz)
        else:
            end = start + timedelta(hours=1)
        vevent.add("dtstart", start)
        vevent.add("dtend", end)
    else:
        vevent.add("dtstart", start_day)
        vevent.add("dtend", end_day + timedelta(days=1))

    if event.color:
        vevent.add("x-apple-calendar-color", event.color)

    cal.add_component(vevent)
    return cal.to_ical().decode("utf-8")


def _parse_hhmm(value: str):
    return datetime.strptime(value, "%H:%M").time()
