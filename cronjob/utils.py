import json
from datetime import datetime, timezone, tzinfo
from typing import Any, Optional, Union

import pytz
from pydantic_core import to_jsonable_python


def get_timezone(tz: Union[str, tzinfo, None]) -> tzinfo:
    """
    Resolve a timezone name (or tzinfo) to a pytz timezone.

    Args:
        tz: IANA timezone name such as "Asia/Hong_Kong", a tzinfo instance, or None for UTC.

    Raises:
        pytz.UnknownTimeZoneError: If the name is not a known timezone.
    """
    if tz is None:
        return pytz.utc
    if isinstance(tz, str):
        return pytz.timezone(tz)
    return tz


def ensure_utc_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert any datetime to timezone-aware UTC datetime.

    Args:
        dt: A datetime object (naive or aware) or None

    Returns:
        A timezone-aware datetime in UTC, or None if input is None

    Behavior:
        - If input is None: returns None
        - If input is timezone-aware: converts it to UTC
        - If input is timezone-naive: assumes UTC and adds timezone.utc

    Datetimes read back from SQLite lose their timezone information, so every
    timestamp loaded from the store goes through here before arithmetic.
    """
    if dt is None:
        return None
    if dt.tzinfo is not None and dt.tzinfo.utcoffset(dt) is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def dump_json(value: Any) -> str:
    """Serialize a handler value (pydantic models included) to JSON text, using field aliases."""
    return json.dumps(to_jsonable_python(value, by_alias=True))


def load_json(text: Optional[str]) -> Any:
    if text is None:
        return None
    return json.loads(text)
