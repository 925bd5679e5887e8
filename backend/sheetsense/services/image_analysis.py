"""
Scan analysis - quality, alignment and PDF validation for uploaded sheets.
"""

import asyncio
import io
import logging
from typing import Tuple

import fitz  # PyMuPDF
from PIL import Image, ImageStat, UnidentifiedImageError

from ..concurrency import image_semaphore
from ..config.settings import settings
from ..models import ImageAnalysis, ScanQuality
from ..utils import is_pdf

logger = logging.getLogger(__name__)

# Short side below this many pixels caps quality at FAIR
MIN_SHORT_SIDE_PX = 500

# (tier, brightness range, minimum contrast)
QUALITY_TIERS = [
    (ScanQuality.EXCELLENT, (100, 200), 0.3),
    (ScanQuality.GOOD, (80, 220), 0.2),
    (ScanQuality.FAIR, (60, 240), 0.1),
]


def assess_quality(brightness: float, contrast: float, width: int, height: int) -> ScanQuality:
    """
    Bucket basic pixel statistics into a scan-quality tier.

    Args:
        brightness: Mean grayscale value, 0-255
        contrast: Standard deviation divided by mean
        width, height: Image resolution in pixels

    Returns:
        EXCELLENT, GOOD, FAIR or POOR
    """
    quality = ScanQuality.POOR
    for tier, (low, high), min_contrast in QUALITY_TIERS:
        if low <= brightness <= high and contrast > min_contrast:
            quality = tier
            break

    if min(width, height) < MIN_SHORT_SIDE_PX and quality in (ScanQuality.EXCELLENT, ScanQuality.GOOD):
        quality = ScanQuality.FAIR

    return quality


class ImageAnalysisService:
    """Analyzes uploaded scans without calling any external service."""

    async def analyze(self, file_bytes: bytes, file_name: str = "") -> ImageAnalysis:
        async with image_semaphore:
            return await asyncio.to_thread(self.analyze_sync, file_bytes, file_name)

    def analyze_sync(self, file_bytes: bytes, file_name: str = "") -> ImageAnalysis:
        if is_pdf(file_bytes, file_name):
            return self._analyze_pdf(file_bytes)
        return self._analyze_image(file_bytes)

    def _analyze_pdf(self, pdf_bytes: bytes) -> ImageAnalysis:
        # PDFs are never rasterized; GOOD is assumed when the document opens
        is_valid, page_count, message = self.validate_pdf(pdf_bytes)
        if not is_valid:
            logger.warning(f"⚠️  {message}")
            return ImageAnalysis(
                scan_quality=ScanQuality.UNREADABLE,
                is_pdf=True,
                page_count=0,
                corrupted=True,
                issues=[message],
                suggestions=["Re-export or re-scan the document and upload it again"],
            )

        return ImageAnalysis(scan_quality=ScanQuality.GOOD, is_pdf=True, page_count=page_count)

    def _analyze_image(self, image_bytes: bytes) -> ImageAnalysis:
        try:
            img = Image.open(io.BytesIO(image_bytes))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"⚠️  Unreadable image: {e}")
            return ImageAnalysis(
                scan_quality=ScanQuality.UNREADABLE,
                corrupted=True,
                issues=[f"Image could not be opened: {e}"],
                suggestions=["Re-scan the answer sheet and upload it again"],
            )

        width, height = img.size
        stat = ImageStat.Stat(img.convert("L"))
        brightness = stat.mean[0]
        contrast = stat.stddev[0] / brightness if brightness > 0 else 0.0

        quality = assess_quality(brightness, contrast, width, height)
        is_aligned = height >= width

        issues = []
        suggestions = []
        if quality in (ScanQuality.POOR, ScanQuality.FAIR):
            issues.append(f"Low scan quality (brightness {brightness:.0f}, contrast {contrast:.2f})")
            suggestions.append("Scan in good lighting at 300 DPI or higher")
        if not is_aligned:
            issues.append("Sheet appears rotated (landscape orientation)")
            suggestions.append("Rotate the page upright before uploading")

        return ImageAnalysis(
            scan_quality=quality,
            is_aligned=is_aligned,
            width=width,
            height=height,
            brightness=round(brightness, 2),
            contrast=round(contrast, 4),
            issues=issues,
            suggestions=suggestions,
        )

    def validate_pdf(self, pdf_bytes: bytes) -> Tuple[bool, int, str]:
        """
        Validate PDF file.

        Returns:
            Tuple of (is_valid, page_count, message)
        """
        try:
            pdf_document = fitz.open(stream=pdf_bytes, filetype="pdf")
            page_count = pdf_document.page_count
            pdf_document.close()

            if page_count == 0:
                return False, 0, "PDF has no pages"

            return True, page_count, f"Valid PDF with {page_count} pages"
        except Exception as e:
            return False, 0, f"Invalid PDF: {str(e)}"

    def normalize_for_vision(self, image_bytes: bytes) -> bytes:
        """Convert an image to bounded-size RGB JPEG for the vision call."""
        img = Image.open(io.BytesIO(image_bytes))
        if img.mode != "RGB":
            img = img.convert("RGB")

        max_dim = settings.IMAGE_MAX_DIMENSION
        if max(img.size) > max_dim:
            img.thumbnail((max_dim, max_dim), Image.LANCZOS)

        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=settings.JPEG_QUALITY, optimize=True)
        return buffer.getvalue()
