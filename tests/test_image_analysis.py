import asyncio
import io

import pytest
from PIL import Image

from scans import dark_image, page_image, pdf_document
from sheetsense.models import ScanQuality
from sheetsense.services.image_analysis import ImageAnalysisService, assess_quality


@pytest.mark.parametrize(
    "brightness, contrast, expected",
    [
        (150, 0.5, ScanQuality.EXCELLENT),
        (90, 0.25, ScanQuality.GOOD),
        (210, 0.35, ScanQuality.GOOD),
        (70, 0.15, ScanQuality.FAIR),
        (150, 0.05, ScanQuality.POOR),
        (20, 0.5, ScanQuality.POOR),
    ],
)
def test_quality_tiers(brightness, contrast, expected):
    assert assess_quality(brightness, contrast, 1200, 1600) == expected


def test_low_resolution_caps_quality_at_fair():
    assert assess_quality(150, 0.5, 400, 600) == ScanQuality.FAIR
    assert assess_quality(70, 0.15, 400, 600) == ScanQuality.FAIR


def test_upright_scan_is_aligned():
    analysis = ImageAnalysisService().analyze_sync(page_image(), "roll_007.png")

    assert analysis.scan_quality == ScanQuality.EXCELLENT
    assert analysis.is_aligned
    assert (analysis.width, analysis.height) == (600, 800)
    assert not analysis.corrupted
    assert analysis.issues == []


def test_landscape_scan_is_misaligned():
    analysis = asyncio.run(ImageAnalysisService().analyze(page_image(800, 600), "sheet.png"))

    assert not analysis.is_aligned
    assert any("landscape" in issue for issue in analysis.issues)


def test_dark_scan_is_poor():
    analysis = ImageAnalysisService().analyze_sync(dark_image(), "sheet.png")

    assert analysis.scan_quality == ScanQuality.POOR
    assert analysis.suggestions


def test_unopenable_image_is_corrupted():
    analysis = ImageAnalysisService().analyze_sync(b"definitely not a png", "sheet.png")

    assert analysis.corrupted
    assert analysis.scan_quality == ScanQuality.UNREADABLE


def test_pdf_is_validated_not_rasterized():
    analysis = ImageAnalysisService().analyze_sync(pdf_document(pages=3), "sheet.pdf")

    assert analysis.is_pdf
    assert analysis.page_count == 3
    assert analysis.scan_quality == ScanQuality.GOOD


def test_broken_pdf_is_corrupted():
    service = ImageAnalysisService()
    analysis = service.analyze_sync(b"%PDF-1.4 truncated", "sheet.pdf")

    assert analysis.corrupted
    assert analysis.scan_quality == ScanQuality.UNREADABLE
    assert service.validate_pdf(b"%PDF-1.4 truncated")[0] is False


def test_normalize_for_vision_bounds_size_and_mode():
    img = Image.new("RGBA", (3000, 1500), (120, 120, 120, 255))
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")

    normalized = Image.open(io.BytesIO(ImageAnalysisService().normalize_for_vision(buffer.getvalue())))

    assert normalized.format == "JPEG"
    assert normalized.mode == "RGB"
    assert max(normalized.size) <= 2000
