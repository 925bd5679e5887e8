import asyncio
import json

import pytest

from fakes import FakeGeminiClient
from harness import QUESTIONS
from sheetsense.errors import AIProcessingError, ExternalServiceError
from sheetsense.services.correction import CorrectionService, extract_json, normalize_correction

EXAM = {"exam_id": "exam_1", "questions": QUESTIONS, "total_marks": 10}


def model_reply(rows, **extra):
    return json.dumps({"question_wise_results": rows, "overall_feedback": "Good effort", **extra})


def test_extract_json_handles_code_fences():
    assert extract_json('```json\n{"a": 1}\n```') == {"a": 1}
    assert extract_json('Here you go:\n```\n{"a": 2}\n```') == {"a": 2}
    assert extract_json('  {"a": 3}  ') == {"a": 3}


def test_extract_json_rejects_non_objects():
    with pytest.raises(ValueError):
        extract_json("[1, 2, 3]")
    with pytest.raises(ValueError):
        extract_json("no json here")


def test_normalize_clamps_marks_and_recomputes_totals():
    raw = {
        "question_wise_results": [
            {"question_number": 1, "marks_obtained": 9, "confidence": 1.7, "feedback": "Correct"},
            {"question_number": 2, "marks_obtained": "2.5", "confidence": 0.5},
        ],
        "strengths": ["algebra"],
    }

    result = normalize_correction(raw, QUESTIONS, 10, 1200)

    assert [r.marks_obtained for r in result.question_wise_results] == [5, 2.5]
    assert result.obtained_marks == 7.5
    assert result.percentage == 75.0
    assert result.question_wise_results[0].confidence == 1.0
    assert result.confidence == 0.75
    assert result.status == "completed"
    assert result.strengths == ["algebra"]
    assert result.processing_time == 1200


def test_normalize_records_skipped_questions():
    raw = {"question_wise_results": [{"question_number": 1, "marks_obtained": 4, "confidence": 0.8}]}

    result = normalize_correction(raw, QUESTIONS, 10, 0)

    assert result.status == "partial"
    assert result.errors == ["Question 2 missing from AI response"]
    assert result.question_wise_results[1].marks_obtained == 0
    assert result.question_wise_results[1].feedback == "Not graded"
    assert result.confidence == 0.8


def test_correct_sends_file_and_questions():
    client = FakeGeminiClient(
        response="```json\n"
        + model_reply(
            [
                {"question_number": 1, "marks_obtained": 5, "confidence": 0.9},
                {"question_number": 2, "marks_obtained": 3, "confidence": 0.7},
            ]
        )
        + "\n```"
    )

    result = asyncio.run(CorrectionService(client).correct(EXAM, b"%PDF-1.4", "application/pdf", "TAMIL"))

    assert result.obtained_marks == 8
    assert result.total_marks == 10
    call = client.calls[0]
    assert call["mime_type"] == "application/pdf"
    assert "Solve 2x + 3 = 7" in call["prompt"]
    assert "Tamil" in call["prompt"]


def test_correct_wraps_model_failures():
    failing = CorrectionService(FakeGeminiClient(error=ExternalServiceError("quota exceeded")))
    with pytest.raises(AIProcessingError):
        asyncio.run(failing.correct(EXAM, b"img", "image/png"))

    garbled = CorrectionService(FakeGeminiClient(response="I could not read this sheet"))
    with pytest.raises(AIProcessingError):
        asyncio.run(garbled.correct(EXAM, b"img", "image/png"))


def test_correct_requires_questions():
    service = CorrectionService(FakeGeminiClient(response="{}"))
    with pytest.raises(AIProcessingError):
        asyncio.run(service.correct({"exam_id": "exam_1", "questions": []}, b"img", "image/png"))
