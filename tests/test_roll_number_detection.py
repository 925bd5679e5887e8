import asyncio
from types import SimpleNamespace

import pytest

from scans import page_image, pdf_document
from fakes import FakeGeminiClient
from sheetsense.errors import ExternalServiceError
from sheetsense.models import ScanQuality
from sheetsense.services.roll_number_detection import (
    GeminiRollNumberDetector,
    MockRollNumberDetector,
    build_detector,
    parse_roll_number_response,
)


@pytest.mark.parametrize("text", ["NOT_FOUND", "not found", "  NOT FOUND  ", "Sorry: NOT_FOUND"])
def test_not_found_sentinel_yields_empty_result(text):
    assert parse_roll_number_response(text) == ("", 0.0)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Roll No: 12345", "12345"),
        ("roll number 007", "007"),
        ("R.No 45", "45"),
        ("Reg No: 9", "9"),
        ("Registration Number - 20231", "20231"),
    ],
)
def test_labeled_roll_number_has_high_confidence(text, expected):
    assert parse_roll_number_response(text) == (expected, 0.95)


def test_bare_token_of_three_to_six_digits():
    assert parse_roll_number_response("007") == ("007", 0.85)
    assert parse_roll_number_response("The sheet shows 4521 in the box") == ("4521", 0.85)


def test_longer_digit_runs_fall_back_to_low_confidence():
    # seven digits is not a bare 3-6 digit token
    assert parse_roll_number_response("1234567") == ("1234567", 0.6)
    assert parse_roll_number_response("12") == ("12", 0.6)


@pytest.mark.parametrize("text", [None, "", "   ", "illegible handwriting"])
def test_no_digits_means_no_roll_number(text):
    assert parse_roll_number_response(text) == ("", 0.0)


def test_mock_detector_reads_roll_number_from_file_name():
    detector = MockRollNumberDetector()
    detection = asyncio.run(detector.detect(page_image(), "roll_007.png"))

    assert detection.roll_number == "007"
    assert detection.confidence == 0.85
    assert detection.image_quality == ScanQuality.EXCELLENT
    assert detection.found


def test_mock_detector_understands_labeled_file_names():
    detector = MockRollNumberDetector()
    detection = asyncio.run(detector.detect(pdf_document(), "RollNo-245.pdf"))

    assert detection.roll_number == "245"
    assert detection.confidence == 0.95
    assert detection.image_quality == ScanQuality.GOOD


def test_mock_detector_without_digits_finds_nothing():
    detection = asyncio.run(MockRollNumberDetector().detect(page_image(), "scan.png"))
    assert not detection.found
    assert detection.confidence == 0.0


def test_gemini_detector_parses_model_reply():
    client = FakeGeminiClient(response="Roll No: 120")
    detector = GeminiRollNumberDetector(client)

    detection = asyncio.run(detector.detect(page_image(), "sheet.png"))

    assert detection.roll_number == "120"
    assert detection.confidence == 0.95
    assert detection.raw_response == "Roll No: 120"
    assert client.calls[0]["mime_type"] == "image/jpeg"


def test_gemini_detector_sends_pdfs_untouched():
    pdf = pdf_document()
    client = FakeGeminiClient(response="245")

    detection = asyncio.run(GeminiRollNumberDetector(client).detect(pdf, "sheet.pdf"))

    assert detection.roll_number == "245"
    assert client.calls[0]["mime_type"] == "application/pdf"
    assert client.calls[0]["data"] == pdf


def test_gemini_detector_not_found_reply():
    detector = GeminiRollNumberDetector(FakeGeminiClient(response="NOT_FOUND"))
    detection = asyncio.run(detector.detect(page_image(), "sheet.png"))

    assert detection.roll_number == ""
    assert detection.confidence == 0.0


def test_gemini_detector_never_raises_on_model_failure():
    client = FakeGeminiClient(error=ExternalServiceError("Gemini request timed out after 120s"))
    detection = asyncio.run(GeminiRollNumberDetector(client).detect(page_image(), "sheet.png"))

    assert detection.roll_number == ""
    assert detection.confidence == 0.0
    assert detection.image_quality == ScanQuality.POOR


def test_build_detector_selects_backend():
    detector = build_detector(SimpleNamespace(ROLL_NUMBER_DETECTOR="mock"))
    assert isinstance(detector, MockRollNumberDetector)

    gemini = build_detector(SimpleNamespace(ROLL_NUMBER_DETECTOR="gemini"), client=FakeGeminiClient())
    assert isinstance(gemini, GeminiRollNumberDetector)

    with pytest.raises(ValueError):
        build_detector(SimpleNamespace(ROLL_NUMBER_DETECTOR="tesseract"))
