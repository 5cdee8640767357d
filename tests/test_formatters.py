from datetime import datetime

import pytest

import schemas
from formatters import format_date_time, format_experience_level, format_question_difficulty


@pytest.mark.parametrize(
    "level, expected",
    [("junior", "Junior"), ("mid-level", "Mid-Level"), (schemas.ExperienceLevel.senior, "Senior")],
)
def test_format_experience_level(level, expected):
    assert format_experience_level(level) == expected


def test_format_question_difficulty():
    assert format_question_difficulty(schemas.QuestionDifficulty.hard) == "Hard"
    assert format_question_difficulty("easy") == "Easy"


def test_format_date_time():
    assert format_date_time(datetime(2026, 10, 19, 15, 5)) == "Oct 19, 2026, 3:05 PM"
    assert format_date_time(datetime(2026, 1, 2, 0, 30)) == "Jan 2, 2026, 12:30 AM"
    assert format_date_time(None) == ""
