"""
Flag bookkeeping for answer sheets.

Every mutating operation calls recompute_derived_flags() on the sheet
immediately before it is persisted, so the stored flag_count,
has_critical_flags, last_flagged_at and flag_resolution_rate always agree
with the flags list.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..config.settings import settings
from ..models import (
    AnswerSheet,
    Flag,
    FlagSeverity,
    FlagType,
    ScanQuality,
    SEVERITY_RANK,
    SheetStatus,
    TERMINAL_STATUSES,
)
from ..utils import utcnow

# Unresolved flags at or above this severity hold a sheet in FLAGGED
BLOCKING_SEVERITY = FlagSeverity.HIGH

ACCEPTED_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "application/pdf"}


def make_flag(
    flag_type: FlagType,
    severity: FlagSeverity,
    description: str,
    detected_by: Optional[str] = None,
) -> Flag:
    return Flag(type=flag_type, severity=severity, description=description, detected_by=detected_by)


def is_blocking(flag: Flag) -> bool:
    return not flag.resolved and SEVERITY_RANK[flag.severity] >= SEVERITY_RANK[BLOCKING_SEVERITY]


def supported_status(sheet: AnswerSheet) -> SheetStatus:
    """The status a sheet's record supports once nothing holds it in FLAGGED."""
    if sheet.manual_overrides:
        return SheetStatus.MANUALLY_REVIEWED
    if sheet.ai_correction_results is not None:
        return SheetStatus.AI_CORRECTED
    if sheet.student_id:
        return SheetStatus.UPLOADED
    return SheetStatus.PROCESSING


def recompute_derived_flags(sheet: AnswerSheet) -> AnswerSheet:
    """
    Return a copy of the sheet with derived flag fields recomputed.

    Also reconciles the FLAGGED status: an unresolved CRITICAL flag forces
    FLAGGED unless the sheet is MISSING, ABSENT or ERROR; a FLAGGED sheet
    with no unresolved flags reverts to the status its record supports.
    A FLAGGED sheet that still has unresolved lower-severity flags stays
    FLAGGED.
    """
    updated = sheet.model_copy(deep=True)
    flags = updated.flags
    unresolved = [flag for flag in flags if not flag.resolved]

    updated.flag_count = len(flags)
    updated.has_critical_flags = any(flag.severity == FlagSeverity.CRITICAL for flag in unresolved)
    updated.last_flagged_at = max((flag.detected_at for flag in unresolved), default=None)

    resolved_count = len(flags) - len(unresolved)
    updated.flag_resolution_rate = round(resolved_count / len(flags) * 100, 2) if flags else 0.0

    if updated.status not in TERMINAL_STATUSES:
        if updated.has_critical_flags:
            updated.status = SheetStatus.FLAGGED
        elif updated.status == SheetStatus.FLAGGED and not unresolved:
            updated.status = supported_status(updated)

    return updated


def add_flag(sheet: AnswerSheet, flag: Flag) -> AnswerSheet:
    updated = sheet.model_copy(deep=True)
    updated.flags.append(flag)
    if SEVERITY_RANK[flag.severity] >= SEVERITY_RANK[BLOCKING_SEVERITY] and updated.status not in TERMINAL_STATUSES:
        updated.status = SheetStatus.FLAGGED
    return updated


def resolve_flag(
    sheet: AnswerSheet,
    index: int,
    resolved_by: str,
    resolution_notes: Optional[str] = None,
    auto_resolved: bool = False,
) -> AnswerSheet:
    """Resolve one flag by position. Raises IndexError / ValueError on bad input."""
    if index < 0 or index >= len(sheet.flags):
        raise IndexError("Invalid flag index")
    if sheet.flags[index].resolved:
        raise ValueError("Flag is already resolved")

    updated = sheet.model_copy(deep=True)
    _mark_resolved(updated.flags[index], resolved_by, resolution_notes, auto_resolved)
    return updated


def resolve_all_flags(
    sheet: AnswerSheet,
    resolved_by: str,
    resolution_notes: Optional[str] = None,
    flag_types: Optional[Iterable[FlagType]] = None,
    auto_resolved: bool = False,
) -> AnswerSheet:
    """Resolve every unresolved flag, optionally only those of the given types."""
    wanted = set(flag_types) if flag_types is not None else None
    updated = sheet.model_copy(deep=True)
    for flag in updated.flags:
        if flag.resolved:
            continue
        if wanted is not None and flag.type not in wanted:
            continue
        _mark_resolved(flag, resolved_by, resolution_notes, auto_resolved)
    return updated


def _mark_resolved(flag: Flag, resolved_by: str, notes: Optional[str], auto_resolved: bool):
    flag.resolved = True
    flag.resolved_by = resolved_by
    flag.resolved_at = utcnow()
    flag.resolution_notes = notes
    flag.auto_resolved = auto_resolved


def auto_detect_flags(sheet: AnswerSheet) -> List[Flag]:
    """
    Inspect a stored sheet and propose flags for conditions not already flagged.

    Uses the file metadata captured at upload time under
    ai_processing_results["file"].
    """
    already = {flag.type for flag in sheet.flags if not flag.resolved}
    proposed: List[Flag] = []

    def propose(flag_type: FlagType, severity: FlagSeverity, description: str):
        if flag_type not in already:
            proposed.append(make_flag(flag_type, severity, description))

    if not sheet.student_id and (not sheet.roll_number_detected or sheet.roll_number_confidence < 70):
        propose(
            FlagType.UNMATCHED_ROLL,
            FlagSeverity.HIGH,
            "Roll number could not be detected or matched with sufficient confidence",
        )

    if sheet.scan_quality in (ScanQuality.POOR, ScanQuality.UNREADABLE):
        severity = FlagSeverity.CRITICAL if sheet.scan_quality == ScanQuality.UNREADABLE else FlagSeverity.HIGH
        propose(FlagType.POOR_QUALITY, severity, f"Scan quality is {sheet.scan_quality.value.lower()}")

    if not sheet.is_aligned:
        propose(FlagType.ALIGNMENT_ISSUE, FlagSeverity.MEDIUM, "Answer sheet appears to be misaligned")

    file_info = sheet.ai_processing_results.get("file") or {}
    size_bytes = file_info.get("size_bytes") or 0
    if size_bytes > settings.RECOMMENDED_FILE_SIZE_MB * 1024 * 1024:
        propose(
            FlagType.SIZE_TOO_LARGE,
            FlagSeverity.MEDIUM,
            f"File size {size_bytes / (1024 * 1024):.1f} MB exceeds the recommended {settings.RECOMMENDED_FILE_SIZE_MB} MB",
        )

    mime_type = file_info.get("mime_type")
    if mime_type and mime_type not in ACCEPTED_MIME_TYPES:
        propose(FlagType.INVALID_FORMAT, FlagSeverity.HIGH, f"Unsupported file format: {mime_type}")

    return proposed


def flag_statistics(sheets: Iterable[AnswerSheet]) -> Dict[str, Any]:
    """Aggregate flag counts and resolution metrics across sheets."""
    total = 0
    resolved = 0
    by_type: Dict[str, int] = {}
    by_severity: Dict[str, int] = {}
    resolution_hours: List[float] = []
    flagged_sheets = 0

    for sheet in sheets:
        if sheet.flags:
            flagged_sheets += 1
        for flag in sheet.flags:
            total += 1
            by_type[flag.type.value] = by_type.get(flag.type.value, 0) + 1
            by_severity[flag.severity.value] = by_severity.get(flag.severity.value, 0) + 1
            if flag.resolved:
                resolved += 1
                if flag.resolved_at is not None:
                    resolution_hours.append(_hours_between(flag.detected_at, flag.resolved_at))

    return {
        "total_flags": total,
        "resolved_flags": resolved,
        "unresolved_flags": total - resolved,
        "flagged_sheets": flagged_sheets,
        "by_type": by_type,
        "by_severity": by_severity,
        "average_resolution_time_hours": round(sum(resolution_hours) / len(resolution_hours), 2) if resolution_hours else 0.0,
        "resolution_rate": round(resolved / total * 100, 2) if total else 0.0,
    }


def _hours_between(start: datetime, end: datetime) -> float:
    return max((end - start).total_seconds(), 0) / 3600
