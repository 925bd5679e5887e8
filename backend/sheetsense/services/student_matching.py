"""
Matches detected roll numbers against an exam's class roster.
"""

import logging
import time
from typing import List, Optional

from ..config.settings import settings
from ..models import RosterStudent, StudentCandidate, StudentMatch
from ..utils import normalize_roll_number

logger = logging.getLogger(__name__)


def roll_number_similarity(a: str, b: str) -> float:
    """Share of positions holding the same character, over the longer string."""
    left = normalize_roll_number(a)
    right = normalize_roll_number(b)
    longest = max(len(left), len(right))
    if longest == 0:
        return 0.0

    same = sum(1 for x, y in zip(left, right) if x == y)
    return same / longest


class StudentMatcher:
    """Exact-then-positional matching with a hard auto-match gate."""

    def __init__(
        self,
        roster,
        auto_match_threshold: float = settings.AUTO_MATCH_THRESHOLD,
        candidate_threshold: float = settings.CANDIDATE_THRESHOLD,
        max_alternatives: int = settings.MAX_ALTERNATIVES,
    ):
        self.roster = roster
        self.auto_match_threshold = auto_match_threshold
        self.candidate_threshold = candidate_threshold
        self.max_alternatives = max_alternatives

    async def match(self, roll_number: str, exam_id: str, prior_confidence: float) -> StudentMatch:
        """
        Find the roster student for a detected roll number.

        Args:
            roll_number: Roll number as detected
            exam_id: Exam whose class roster is searched
            prior_confidence: Detector confidence, 0-1

        Returns:
            StudentMatch; matched_student is only set for an exact match or a
            positional match above the auto-match threshold.

        Raises:
            NotFoundError: Unknown exam
        """
        started = time.monotonic()
        exam = await self.roster.get_exam(exam_id)
        students = await self.roster.list_active_students(exam["class_id"])

        result = self.match_against(roll_number, students, prior_confidence)
        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        return result

    def match_against(self, roll_number: str, students: List[RosterStudent], prior_confidence: float) -> StudentMatch:
        query = normalize_roll_number(roll_number)
        if not query:
            return StudentMatch()

        roster = sorted(students, key=lambda s: (s.roll_number, s.student_id))

        exact = self._find_exact(query, roster)
        if exact is not None:
            logger.info(f"✅ Exact roll number match {roll_number} -> {exact.student_id}")
            return StudentMatch(
                matched_student=exact,
                confidence=min(prior_confidence + 0.1, 1.0),
                exact=True,
            )

        candidates = [
            StudentCandidate(student=student, similarity=round(roll_number_similarity(query, student.roll_number), 4))
            for student in roster
        ]
        candidates = [c for c in candidates if c.similarity > self.candidate_threshold]
        # Stable sort keeps roster order (by roll number) for ties
        candidates.sort(key=lambda c: c.similarity, reverse=True)
        alternatives = candidates[: self.max_alternatives]

        if not alternatives:
            logger.info(f"⚠️  No roster candidates for roll number {roll_number}")
            return StudentMatch()

        top = alternatives[0]
        if top.similarity > self.auto_match_threshold:
            logger.info(f"✅ Fuzzy roll number match {roll_number} -> {top.student.roll_number} ({top.similarity})")
            return StudentMatch(matched_student=top.student, confidence=top.similarity, alternatives=alternatives)

        return StudentMatch(confidence=top.similarity, alternatives=alternatives)

    @staticmethod
    def _find_exact(query: str, roster: List[RosterStudent]) -> Optional[RosterStudent]:
        for student in roster:
            if normalize_roll_number(student.roll_number) == query:
                return student
        return None
