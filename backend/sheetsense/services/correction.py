"""
AI correction of a whole answer sheet with Gemini.
"""

import json
import logging
import time
from typing import Any, Dict, List

from ..errors import AIProcessingError, ExternalServiceError
from ..models import AICorrectionResult, QuestionResult
from ..utils import format_percentage
from .gemini_client import GeminiClient

logger = logging.getLogger(__name__)

CORRECTION_PROMPT = """You are an experienced teacher correcting a student's answer sheet.

The attached file is the student's complete answer sheet. Grade every question below.
The student wrote in {language}; write feedback in {language}.

QUESTIONS:
{questions}

Rules:
- Award marks between 0 and the question's max marks (partial marks allowed)
- If an answer is missing, award 0 and set student_answer to ""
- confidence is your certainty in each grade, from 0.0 to 1.0

Return JSON only, in exactly this shape:
{{
  "question_wise_results": [
    {{
      "question_number": 1,
      "student_answer": "...",
      "correct_answer": "...",
      "is_correct": true,
      "marks_obtained": 2,
      "max_marks": 2,
      "feedback": "...",
      "confidence": 0.9
    }}
  ],
  "overall_feedback": "...",
  "strengths": ["..."],
  "weaknesses": ["..."],
  "suggestions": ["..."]
}}"""


def extract_json(response_text: str) -> Dict[str, Any]:
    """Parse a JSON object out of a model response, tolerating ``` fences."""
    text = response_text.strip()
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()

    result = json.loads(text)
    if not isinstance(result, dict):
        raise ValueError("Expected a JSON object")
    return result


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def normalize_correction(raw: Dict[str, Any], questions: List[Dict[str, Any]], total_marks: float, processing_time_ms: int) -> AICorrectionResult:
    """
    Validate and normalize model output into the closed result schema.

    Questions the model skipped are recorded as unanswered with 0 marks;
    obtained marks and percentage are recomputed from the per-question rows.
    """
    by_number: Dict[int, Dict[str, Any]] = {}
    for row in raw.get("question_wise_results") or []:
        try:
            by_number[int(row.get("question_number"))] = row
        except (TypeError, ValueError):
            continue

    results: List[QuestionResult] = []
    errors: List[str] = []
    for question in questions:
        number = int(question["question_number"])
        max_marks = float(question.get("max_marks", 0))
        row = by_number.get(number)
        if row is None:
            errors.append(f"Question {number} missing from AI response")
            results.append(QuestionResult(question_number=number, max_marks=max_marks, feedback="Not graded"))
            continue

        marks = _clamp(row.get("marks_obtained"), 0, max_marks, 0)
        results.append(
            QuestionResult(
                question_number=number,
                correct_answer=str(row.get("correct_answer") or question.get("model_answer") or ""),
                student_answer=str(row.get("student_answer") or ""),
                is_correct=bool(row.get("is_correct", marks == max_marks and max_marks > 0)),
                marks_obtained=marks,
                max_marks=max_marks,
                feedback=str(row.get("feedback") or "Graded by AI system"),
                confidence=_clamp(row.get("confidence"), 0.0, 1.0, 0.7),
            )
        )

    obtained = round(sum(r.marks_obtained for r in results), 2)
    total = total_marks or sum(r.max_marks for r in results)
    graded = [r for r in results if r.feedback != "Not graded"]
    confidence = round(sum(r.confidence for r in graded) / len(graded), 3) if graded else 0.0

    return AICorrectionResult(
        status="partial" if errors else "completed",
        confidence=confidence,
        total_marks=total,
        obtained_marks=obtained,
        percentage=format_percentage(obtained, total),
        question_wise_results=results,
        overall_feedback=str(raw.get("overall_feedback") or ""),
        strengths=[str(s) for s in raw.get("strengths") or []],
        weaknesses=[str(s) for s in raw.get("weaknesses") or []],
        suggestions=[str(s) for s in raw.get("suggestions") or []],
        processing_time=processing_time_ms,
        errors=errors,
    )


class CorrectionService:
    """Grades a stored answer sheet against its exam's questions."""

    def __init__(self, client: GeminiClient):
        self.client = client

    async def correct(self, exam: Dict[str, Any], file_bytes: bytes, content_type: str, language: str = "ENGLISH") -> AICorrectionResult:
        """
        Raises:
            AIProcessingError: Exam has no questions, the call failed, or the
                response could not be parsed
        """
        questions = exam.get("questions") or []
        if not questions:
            raise AIProcessingError("Exam has no questions configured")

        question_lines = "\n".join(
            f"Q{q['question_number']} ({q.get('max_marks', 0)} marks): {q.get('question_text', '')}"
            + (f"\n   Model answer: {q['model_answer']}" if q.get("model_answer") else "")
            for q in questions
        )
        prompt = CORRECTION_PROMPT.format(language=language.title(), questions=question_lines)

        started = time.monotonic()
        try:
            response_text = await self.client.generate(prompt, file_bytes, content_type, max_output_tokens=8192)
            raw = extract_json(response_text)
        except ExternalServiceError as e:
            raise AIProcessingError(e.message) from e
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            raise AIProcessingError(f"Failed to parse AI correction response: {e}") from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        result = normalize_correction(raw, questions, float(exam.get("total_marks") or 0), elapsed_ms)
        logger.info(f"✅ AI correction: {result.obtained_marks}/{result.total_marks} ({result.status})")
        return result
