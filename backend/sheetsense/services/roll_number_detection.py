"""
Roll-number detection from scanned answer sheets.

One interface, two backends selected by ROLL_NUMBER_DETECTOR:
- gemini: asks the vision model to read the roll number off the sheet
- mock: reads it deterministically from the uploaded file name
"""

import asyncio
import logging
import os
import re
import time
from typing import Optional, Tuple

from ..models import ImageAnalysis, RollNumberDetection, ScanQuality
from ..utils import is_pdf
from .gemini_client import GeminiClient
from .image_analysis import ImageAnalysisService

logger = logging.getLogger(__name__)

NOT_FOUND_SENTINEL = "NOT_FOUND"

LABELED_PATTERN = re.compile(
    r"(?:roll\s*(?:no|number|#)|r\.\s*no|reg(?:istration)?\s*(?:no|number))\.?\s*[:#\-]?\s*(\d+)",
    re.IGNORECASE,
)
BARE_TOKEN_PATTERN = re.compile(r"(?<!\d)(\d{3,6})(?!\d)")
DIGIT_RUN_PATTERN = re.compile(r"\d+")

ROLL_NUMBER_PROMPT = """You are reading a scanned student answer sheet.

Find the student's ROLL NUMBER. It is usually written in a box or after a label
such as "Roll No", "Roll Number", "R.No" or "Reg No" near the top of the first page.

Rules:
- Reply with the roll number digits ONLY (no labels, no spaces, no explanation)
- If the roll number is missing, illegible or you are not sure, reply with exactly: NOT_FOUND
"""


def parse_roll_number_response(text: Optional[str]) -> Tuple[str, float]:
    """
    Extract a roll number from raw model output.

    Rules are applied in order:
    1. NOT_FOUND sentinel -> ("", 0.0)
    2. Labeled number ("Roll No: 123", "R.No 45", "Reg No: 9") -> 0.95
    3. Bare 3-6 digit token -> 0.85
    4. Any digit run -> 0.6
    5. Nothing numeric -> ("", 0.0)
    """
    if not text:
        return "", 0.0

    cleaned = text.strip()
    if NOT_FOUND_SENTINEL in cleaned.upper().replace(" ", "_"):
        return "", 0.0

    labeled = LABELED_PATTERN.search(cleaned)
    if labeled:
        return labeled.group(1), 0.95

    bare = BARE_TOKEN_PATTERN.search(cleaned)
    if bare:
        return bare.group(1), 0.85

    digits = DIGIT_RUN_PATTERN.search(cleaned)
    if digits:
        return digits.group(0), 0.6

    return "", 0.0


def failed_detection(started: float, raw_response: Optional[str] = None) -> RollNumberDetection:
    return RollNumberDetection(
        roll_number="",
        confidence=0.0,
        image_quality=ScanQuality.POOR,
        processing_time_ms=_elapsed_ms(started),
        raw_response=raw_response,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class RollNumberDetector:
    """
    Detector interface. Implementations never raise from detect().

    Callers that already analyzed the scan pass the analysis in so the
    file is decoded once.
    """

    backend = "base"

    async def detect(
        self, file_bytes: bytes, file_name: str, analysis: Optional[ImageAnalysis] = None
    ) -> RollNumberDetection:
        raise NotImplementedError


class GeminiRollNumberDetector(RollNumberDetector):
    """Reads roll numbers with a Gemini vision call."""

    backend = "gemini"

    def __init__(self, client: GeminiClient, image_service: Optional[ImageAnalysisService] = None):
        self.client = client
        self.image_service = image_service or ImageAnalysisService()

    async def detect(
        self, file_bytes: bytes, file_name: str, analysis: Optional[ImageAnalysis] = None
    ) -> RollNumberDetection:
        started = time.monotonic()
        raw_response = None

        try:
            if is_pdf(file_bytes, file_name):
                # Sent as-is; the model reads PDFs natively
                payload, mime_type = file_bytes, "application/pdf"
                quality = analysis.scan_quality if analysis else ScanQuality.GOOD
            else:
                if analysis is None:
                    analysis = await self.image_service.analyze(file_bytes, file_name)
                quality = analysis.scan_quality
                payload = await asyncio.to_thread(self.image_service.normalize_for_vision, file_bytes)
                mime_type = "image/jpeg"

            raw_response = await self.client.generate(ROLL_NUMBER_PROMPT, payload, mime_type, max_output_tokens=50)
            roll_number, confidence = parse_roll_number_response(raw_response)

            if roll_number:
                logger.info(f"✅ Roll number {roll_number} detected in {file_name} (confidence {confidence})")
            else:
                logger.info(f"⚠️  No roll number found in {file_name}")

            return RollNumberDetection(
                roll_number=roll_number,
                confidence=confidence,
                image_quality=quality,
                processing_time_ms=_elapsed_ms(started),
                raw_response=raw_response,
            )

        except Exception as e:
            logger.warning(f"⚠️  Roll number detection failed for {file_name}: {e}")
            return failed_detection(started, raw_response)


class MockRollNumberDetector(RollNumberDetector):
    """
    Deterministic stand-in that reads the roll number from the file name.

    "roll_007.jpg" and "RollNo-007.pdf" both yield "007". Used for local
    development and demos without a Gemini key.
    """

    backend = "mock"

    def __init__(self, image_service: Optional[ImageAnalysisService] = None):
        self.image_service = image_service or ImageAnalysisService()

    async def detect(
        self, file_bytes: bytes, file_name: str, analysis: Optional[ImageAnalysis] = None
    ) -> RollNumberDetection:
        started = time.monotonic()

        try:
            stem = os.path.splitext(os.path.basename(file_name))[0]
            text = re.sub(r"[_\-]+", " ", stem)
            roll_number, confidence = parse_roll_number_response(text)

            if analysis is None:
                analysis = await self.image_service.analyze(file_bytes, file_name)
            return RollNumberDetection(
                roll_number=roll_number,
                confidence=confidence,
                image_quality=analysis.scan_quality,
                processing_time_ms=_elapsed_ms(started),
                raw_response=text,
            )
        except Exception as e:
            logger.warning(f"⚠️  Mock detection failed for {file_name}: {e}")
            return failed_detection(started)


def build_detector(app_settings, client: Optional[GeminiClient] = None, image_service: Optional[ImageAnalysisService] = None) -> RollNumberDetector:
    """Pick the detector backend named by ROLL_NUMBER_DETECTOR."""
    backend = app_settings.ROLL_NUMBER_DETECTOR
    if backend == "mock":
        return MockRollNumberDetector(image_service)
    if backend == "gemini":
        return GeminiRollNumberDetector(client or GeminiClient(), image_service)
    raise ValueError(f"Unknown roll number detector backend: {backend}")
