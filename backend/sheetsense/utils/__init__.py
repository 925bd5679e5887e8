"""Utility functions for the SheetSense backend."""

import hashlib
import re
import uuid
from datetime import datetime, timezone
from typing import Tuple


PDF_MAGIC = b"%PDF"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. sheet_1a2b3c4d5e6f."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def compute_file_hash(file_bytes: bytes) -> str:
    """Compute SHA256 hash of file."""
    return hashlib.sha256(file_bytes).hexdigest()


def file_extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def validate_file_type(filename: str, allowed_extensions: list) -> Tuple[bool, str]:
    """Validate file type by extension."""
    file_ext = file_extension(filename)

    if file_ext not in allowed_extensions:
        return False, f"File type '{file_ext}' not allowed. Allowed: {allowed_extensions}"

    return True, "OK"


def validate_file_size(file_bytes: bytes, max_size_mb: int) -> Tuple[bool, str]:
    """Validate file size in MB."""
    file_size_mb = len(file_bytes) / (1024 * 1024)

    if file_size_mb > max_size_mb:
        return False, f"File size {file_size_mb:.1f} MB exceeds limit of {max_size_mb} MB"

    return True, "OK"


def is_pdf(file_bytes: bytes, filename: str = "") -> bool:
    """PDF by magic bytes, falling back to the extension."""
    if file_bytes[:4] == PDF_MAGIC:
        return True
    return file_extension(filename) == "pdf"


def normalize_roll_number(roll_number: str) -> str:
    """
    Canonical form used for roster comparison.

    Trims whitespace and strips leading zeros ("007" -> "7"). A number made
    only of zeros normalizes to "0".
    """
    value = (roll_number or "").strip()
    if not value:
        return ""
    stripped = value.lstrip("0")
    return stripped or "0"


def safe_storage_name(filename: str) -> str:
    """Replace whitespace and path separators so a filename can live in a storage key."""
    return re.sub(r"[\s/\\]+", "_", filename.strip()) or "upload"


def format_percentage(obtained: float, total: float) -> float:
    """Format percentage with 2 decimals."""
    if total == 0:
        return 0.0
    return round((obtained / total) * 100, 2)
