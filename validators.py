"""
Payload normalisation and validation for course, staff and timetable records.
Everything here raises ValidationError (a ValueError) on bad input so route
handlers can turn it into a 400 response.
"""
from typing import Any, Dict, List

from scheduler import DAYS_OF_WEEK, DEFAULT_DAYS

MIN_HOURS_PER_DAY = 1
MAX_HOURS_PER_DAY = 12


class ValidationError(ValueError):
    pass


def normalize_comma_list(value):
    if not value or value == 'nan':
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(',') if item.strip()]


def normalize_days(value, field_name: str, default=None) -> List[str]:
    """Accept a list or comma string of day names; match case-insensitively, keep order, drop repeats."""
    items = normalize_comma_list(value)
    if not items:
        return list(default) if default is not None else []

    lookup = {day.lower(): day for day in DAYS_OF_WEEK}
    lookup.update({day[:3].lower(): day for day in DAYS_OF_WEEK})
    days = []
    for item in items:
        day = lookup.get(item.lower())
        if day is None:
            raise ValidationError(f"Invalid day '{item}' in {field_name}. Allowed: {', '.join(DAYS_OF_WEEK)}")
        if day not in days:
            days.append(day)
    return days


def require_int(value, field_name: str, minimum: int = None, maximum: int = None) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")
    if isinstance(value, float) and value != number:
        raise ValidationError(f"{field_name} must be an integer")
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field_name} must be at least {minimum}")
    if maximum is not None and number > maximum:
        raise ValidationError(f"{field_name} must be at most {maximum}")
    return number


def require_text(payload: Dict[str, Any], field_name: str) -> str:
    value = str(payload.get(field_name) or '').strip()
    if not value:
        raise ValidationError(f"{field_name} is required")
    return value


def parse_id(value, field_name: str = 'id') -> int:
    if value in (None, ''):
        raise ValidationError(f"{field_name} is required")
    return require_int(value, field_name, minimum=1)


def parse_id_list(value, field_name: str) -> List[int]:
    ids = []
    for item in normalize_comma_list(value):
        course_id = parse_id(item, field_name)
        if course_id not in ids:
            ids.append(course_id)
    return ids


def validate_course_payload(payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Clean a course create/update body. With `partial`, absent fields are left out."""
    payload = payload or {}
    data = {}
    if not partial or 'name' in payload:
        data['name'] = require_text(payload, 'name')
    if not partial or 'code' in payload:
        data['code'] = require_text(payload, 'code')
    if not partial or 'hours_per_week' in payload:
        data['hours_per_week'] = require_int(payload.get('hours_per_week'), 'hours_per_week', minimum=1)
    if not partial or 'preferred_days' in payload:
        data['preferred_days'] = normalize_days(payload.get('preferred_days'), 'preferred_days', DEFAULT_DAYS)
    return data


def validate_staff_payload(payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    payload = payload or {}
    data = {}
    if not partial or 'name' in payload:
        data['name'] = require_text(payload, 'name')
    if not partial or 'email' in payload:
        email = require_text(payload, 'email').lower()
        if '@' not in email:
            raise ValidationError(f"Invalid email address: {email}")
        data['email'] = email
    if 'designation' in payload or not partial:
        data['designation'] = str(payload.get('designation') or '').strip() or None
    if not partial or 'available_days' in payload:
        data['available_days'] = normalize_days(payload.get('available_days'), 'available_days', DEFAULT_DAYS)
    if not partial or 'available_hours_per_day' in payload:
        raw = payload.get('available_hours_per_day')
        data['available_hours_per_day'] = 6 if raw in (None, '') else require_int(
            raw, 'available_hours_per_day', MIN_HOURS_PER_DAY, MAX_HOURS_PER_DAY)
    if not partial or 'courses' in payload:
        data['courses'] = parse_id_list(payload.get('courses'), 'courses')
    return data


def validate_timetable_payload(payload: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    payload = payload or {}
    data = {}
    if not partial or 'name' in payload:
        data['name'] = require_text(payload, 'name')
    if 'description' in payload or not partial:
        data['description'] = str(payload.get('description') or '').strip()
    if not partial or 'working_days' in payload:
        if partial:
            days = normalize_days(payload.get('working_days'), 'working_days')
            if not days:
                raise ValidationError("working_days cannot be empty")
        else:
            days = normalize_days(payload.get('working_days'), 'working_days', DEFAULT_DAYS)
        data['working_days'] = days
    if not partial or 'hours_per_day' in payload:
        raw = payload.get('hours_per_day')
        data['hours_per_day'] = 6 if raw in (None, '') and not partial else require_int(
            raw, 'hours_per_day', MIN_HOURS_PER_DAY, MAX_HOURS_PER_DAY)
    return data


def validate_generation_config(working_days, hours_per_day):
    """Reject timetable settings the scheduler cannot run with."""
    if not working_days:
        raise ValidationError("Timetable has no working days")
    for day in working_days:
        if day not in DAYS_OF_WEEK:
            raise ValidationError(f"Timetable has an invalid working day: {day}")
    if hours_per_day in (None, ''):
        raise ValidationError("Timetable has no hours_per_day")
    return require_int(hours_per_day, 'hours_per_day', MIN_HOURS_PER_DAY, MAX_HOURS_PER_DAY)
