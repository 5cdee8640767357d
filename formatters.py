"""Display formatting used by the page templates."""
from datetime import datetime
from typing import Optional

_EXPERIENCE_LEVELS = {
    "junior": "Junior",
    "mid-level": "Mid-Level",
    "senior": "Senior",
}

_DIFFICULTIES = {
    "easy": "Easy",
    "medium": "Medium",
    "hard": "Hard",
}


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


def format_experience_level(level) -> str:
    value = _value(level)
    return _EXPERIENCE_LEVELS.get(value, value)


def format_question_difficulty(difficulty) -> str:
    value = _value(difficulty)
    return _DIFFICULTIES.get(value, value)


def format_date_time(value: Optional[datetime]) -> str:
    """e.g. ``Oct 19, 2026, 3:05 PM``"""
    if value is None:
        return ""
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{value:%b} {value.day}, {value.year}, {hour}:{value:%M} {meridiem}"
