from datetime import datetime, timezone
from zoneinfo import ZoneInfo
from .config import settings

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_aware(dt: datetime) -> datetime:
    # some drivers (sqlite) hand back naive timestamps; they are stored as UTC
    if dt.tzinfo is None: return dt.replace(tzinfo=timezone.utc)
    return dt

def to_local(dt: datetime) -> datetime:
    """Aware UTC instant -> naive wall-clock time in the hospital's zone."""
    return as_aware(dt).astimezone(ZoneInfo(settings.HOSPITAL_TIMEZONE)).replace(tzinfo=None)

def to_utc(local_dt: datetime) -> datetime:
    """Naive hospital wall-clock time -> aware UTC instant."""
    return local_dt.replace(tzinfo=ZoneInfo(settings.HOSPITAL_TIMEZONE)).astimezone(timezone.utc)

def local_now() -> datetime:
    return to_local(utcnow())
