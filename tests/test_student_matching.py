import asyncio

import pytest

from harness import EXAM_ID
from sheetsense.errors import NotFoundError
from sheetsense.models import RosterStudent
from sheetsense.services.student_matching import StudentMatcher, roll_number_similarity
from sheetsense.utils import normalize_roll_number


def student(student_id, roll_number):
    return RosterStudent(student_id=student_id, name=student_id.title(), roll_number=roll_number)


def test_normalize_strips_leading_zeros():
    assert normalize_roll_number("007") == "7"
    assert normalize_roll_number(" 120 ") == "120"
    assert normalize_roll_number("000") == "0"
    assert normalize_roll_number("") == ""


def test_positional_similarity():
    assert roll_number_similarity("12", "120") == pytest.approx(2 / 3)
    assert roll_number_similarity("007", "7") == 1.0
    assert roll_number_similarity("1235", "1234") == 0.75
    assert roll_number_similarity("", "") == 0.0


def test_exact_match_boosts_detector_confidence(harness):
    matcher = StudentMatcher(harness.roster)
    match = asyncio.run(matcher.match("007", EXAM_ID, 0.85))

    assert match.matched_student.student_id == "stu_007"
    assert match.exact
    assert match.confidence == pytest.approx(0.95)


def test_exact_match_confidence_is_capped_at_one(harness):
    match = asyncio.run(StudentMatcher(harness.roster).match("7", EXAM_ID, 0.95))
    assert match.confidence == 1.0


def test_partial_roll_number_is_suggested_not_matched(harness):
    match = asyncio.run(StudentMatcher(harness.roster).match("12", EXAM_ID, 0.6))

    assert match.matched_student is None
    assert [c.student.student_id for c in match.alternatives] == ["stu_120"]
    assert match.alternatives[0].similarity == pytest.approx(0.6667)
    assert match.confidence == pytest.approx(0.6667)


def test_fuzzy_match_above_threshold_is_accepted():
    roster = [student("stu_a", "1234"), student("stu_b", "5678")]
    match = StudentMatcher(roster=None).match_against("1235", roster, 0.85)

    assert match.matched_student.student_id == "stu_a"
    assert not match.exact
    assert match.confidence == 0.75


def test_no_candidates_gives_empty_match(harness):
    match = asyncio.run(StudentMatcher(harness.roster).match("999", EXAM_ID, 0.85))

    assert match.matched_student is None
    assert match.alternatives == []
    assert match.confidence == 0.0


def test_equal_similarity_ordered_by_roll_number():
    roster = [student("stu_z", "129"), student("stu_y", "121"), student("stu_x", "125")]
    match = StudentMatcher(roster=None).match_against("12", roster, 0.6)

    assert [c.student.roll_number for c in match.alternatives] == ["121", "125", "129"]


def test_alternatives_are_capped():
    roster = [student(f"stu_{n}", f"12{n}") for n in range(6)]
    match = StudentMatcher(roster=None).match_against("12", roster, 0.6)

    assert len(match.alternatives) == 3


def test_matching_is_deterministic(harness):
    matcher = StudentMatcher(harness.roster)
    first = asyncio.run(matcher.match("12", EXAM_ID, 0.6))
    second = asyncio.run(matcher.match("12", EXAM_ID, 0.6))

    assert first.model_dump(exclude={"processing_time_ms"}) == second.model_dump(exclude={"processing_time_ms"})


def test_unknown_exam_raises(harness):
    with pytest.raises(NotFoundError):
        asyncio.run(StudentMatcher(harness.roster).match("007", "exam_missing", 0.85))
