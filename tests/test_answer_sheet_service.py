import asyncio

import pytest

from harness import ADMIN_ID, CLASS_ID, EXAM_ID, OUTSIDER_ID, TEACHER_ID
from scans import page_image
from sheetsense.errors import ConflictError, ForbiddenError, NotFoundError, StaleWriteError, ValidationFailure
from sheetsense.models import (
    AICorrectionResult,
    FlagCreateRequest,
    FlagSeverity,
    FlagType,
    ManualOverrideRequest,
    NotificationStatus,
    QuestionResult,
    SheetStatus,
)


def run(coro):
    return asyncio.run(coro)


def upload(harness, file_name="scan.png", roll_number=None, file_bytes=None, **kwargs):
    if roll_number is not None:
        harness.detector.returns(file_name, roll_number, 0.9)
    result = run(harness.pipeline.upload_sheet(EXAM_ID, file_bytes or page_image(), file_name, TEACHER_ID, **kwargs))
    return run(harness.sheets.get(result.sheet["answer_sheet_id"]))


def ai_result(q1=4, q2=3):
    return AICorrectionResult(
        confidence=0.85,
        total_marks=10,
        obtained_marks=q1 + q2,
        percentage=(q1 + q2) * 10,
        question_wise_results=[
            QuestionResult(question_number=1, marks_obtained=q1, max_marks=5, confidence=0.9),
            QuestionResult(question_number=2, marks_obtained=q2, max_marks=5, confidence=0.8),
        ],
    )


def override(question_number=2, marks=5):
    return ManualOverrideRequest(
        question_id=f"q{question_number}",
        question_number=question_number,
        corrected_answer="a^2 + b^2 = c^2",
        corrected_marks=marks,
        reason="Answer is complete",
    )


# ============ MISSING / ABSENT ============


def test_mark_absent_creates_placeholder(harness):
    sheet = run(harness.sheets.mark_absent(EXAM_ID, "stu_120", "Medical leave", TEACHER_ID))

    assert sheet.status == SheetStatus.ABSENT
    assert sheet.is_absent
    assert sheet.absent_reason == "Medical leave"
    assert sheet.original_file_name == "ABSENT"
    assert sheet.student_id == "stu_120"

    absent = harness.notifications.of_type("ABSENT_STUDENT")
    assert len(absent) == 1
    assert absent[0].recipient_id == ADMIN_ID
    assert absent[0].priority.value == "MEDIUM"


def test_mark_missing_on_uploaded_sheet(harness):
    sheet = upload(harness, "roll_007.png", "007")

    missing = run(harness.sheets.mark_missing("Sheet lost in transit", TEACHER_ID, sheet_id=sheet.id))

    assert missing.status == SheetStatus.MISSING
    assert missing.is_missing
    assert missing.missing_reason == "Sheet lost in transit"
    notice = harness.notifications.of_type("MISSING_ANSWER_SHEET")
    assert [(n.recipient_id, n.priority.value) for n in notice] == [(ADMIN_ID, "HIGH")]


def test_mark_missing_for_student_without_sheet(harness):
    sheet = run(harness.sheets.mark_missing("Not handed in", TEACHER_ID, exam_id=EXAM_ID, student_id="stu_245"))

    assert sheet.status == SheetStatus.MISSING
    assert sheet.original_file_name == "MISSING"
    assert sheet.cloud_storage_key.startswith(f"placeholders/{EXAM_ID}/stu_245/")


def test_mark_missing_needs_a_target(harness):
    with pytest.raises(ValidationFailure):
        run(harness.sheets.mark_missing("?", TEACHER_ID))


def test_marking_requires_class_access_and_roster_student(harness):
    with pytest.raises(ForbiddenError):
        run(harness.sheets.mark_absent(EXAM_ID, "stu_120", "Sick", OUTSIDER_ID))
    with pytest.raises(NotFoundError):
        run(harness.sheets.mark_absent(EXAM_ID, "stu_unknown", "Sick", TEACHER_ID))


def test_acknowledge_is_idempotent(harness):
    sheet = run(harness.sheets.mark_absent(EXAM_ID, "stu_120", "Medical leave", TEACHER_ID))

    first = run(harness.sheets.acknowledge(sheet.id, ADMIN_ID))
    harness.roster.access.add(("admin_2", CLASS_ID))
    second = run(harness.sheets.acknowledge(sheet.id, "admin_2"))

    assert first["already_acknowledged"] is False
    assert second["already_acknowledged"] is True
    assert first["sheet"].acknowledged_by == ADMIN_ID
    assert second["sheet"].acknowledged_by == ADMIN_ID
    assert second["sheet"].acknowledged_at == first["sheet"].acknowledged_at

    absent = harness.notifications.of_type("ABSENT_STUDENT")[0]
    assert absent.status == NotificationStatus.ACKNOWLEDGED
    assert absent.acknowledged_at is not None


# ============ AI RESULTS AND OVERRIDES ============


def test_apply_ai_correction(harness):
    sheet = upload(harness, "roll_007.png", "007")

    corrected = run(harness.sheets.apply_ai_correction(sheet.id, ai_result()))

    assert corrected.status == SheetStatus.AI_CORRECTED
    assert corrected.confidence == 0.85
    assert corrected.processed_at is not None
    assert corrected.effective_marks() == 7


def test_apply_ai_correction_unknown_sheet(harness):
    with pytest.raises(NotFoundError):
        run(harness.sheets.apply_ai_correction("sheet_missing", ai_result()))


def test_override_after_ai_correction(harness):
    sheet = upload(harness, "roll_007.png", "007")
    run(harness.sheets.apply_ai_correction(sheet.id, ai_result(q1=4, q2=3)))

    reviewed = run(harness.sheets.add_manual_override(sheet.id, override(2, 5), TEACHER_ID))

    assert reviewed.status == SheetStatus.MANUALLY_REVIEWED
    assert len(reviewed.manual_overrides) == 1
    assert reviewed.manual_overrides[0].corrected_by == TEACHER_ID
    # AI result itself is untouched; the override applies on read
    assert reviewed.ai_correction_results.question_wise_results[1].marks_obtained == 3
    assert reviewed.effective_marks() == 9

    notice = harness.notifications.of_type("MANUAL_OVERRIDE_ADDED")
    assert [n.recipient_id for n in notice] == ["user_stu_007"]


def test_latest_override_wins(harness):
    sheet = upload(harness, "roll_007.png", "007")
    run(harness.sheets.apply_ai_correction(sheet.id, ai_result(q1=4, q2=3)))
    run(harness.sheets.add_manual_override(sheet.id, override(2, 5), TEACHER_ID))

    reviewed = run(harness.sheets.add_manual_override(sheet.id, override(2, 1), TEACHER_ID))

    assert len(reviewed.manual_overrides) == 2
    assert reviewed.effective_marks() == 5


def test_ai_rerun_keeps_manual_review(harness):
    sheet = upload(harness, "roll_007.png", "007")
    run(harness.sheets.apply_ai_correction(sheet.id, ai_result()))
    run(harness.sheets.add_manual_override(sheet.id, override(1, 5), TEACHER_ID))

    rerun = run(harness.sheets.apply_ai_correction(sheet.id, ai_result(q1=2, q2=2)))

    assert rerun.status == SheetStatus.MANUALLY_REVIEWED
    assert len(rerun.manual_overrides) == 1
    assert rerun.effective_marks() == 7


def test_override_rejected_on_absent_sheet(harness):
    sheet = run(harness.sheets.mark_absent(EXAM_ID, "stu_120", "Sick", TEACHER_ID))
    with pytest.raises(ValidationFailure):
        run(harness.sheets.add_manual_override(sheet.id, override(), TEACHER_ID))


def test_override_by_question_id_replaces_ai_marks(harness):
    sheet = upload(harness, "roll_007.png", "007")
    run(harness.sheets.apply_ai_correction(sheet.id, ai_result(q1=4, q2=4)))

    request = ManualOverrideRequest(question_id="Q2", corrected_marks=1, reason="Wrong theorem")
    reviewed = run(harness.sheets.add_manual_override(sheet.id, request, TEACHER_ID))

    assert reviewed.manual_overrides[0].question_number == 2
    assert reviewed.effective_marks() == 5


def test_override_for_unknown_question_is_rejected(harness):
    sheet = upload(harness, "roll_007.png", "007")
    run(harness.sheets.apply_ai_correction(sheet.id, ai_result()))

    for question_id in ("Q9", "essay"):
        request = ManualOverrideRequest(question_id=question_id, corrected_marks=1, reason="Recount")
        with pytest.raises(ValidationFailure):
            run(harness.sheets.add_manual_override(sheet.id, request, TEACHER_ID))

    assert run(harness.sheets.get(sheet.id)).manual_overrides == []


def test_complete_requires_corrected_sheet(harness):
    sheet = upload(harness, "roll_007.png", "007")
    with pytest.raises(ValidationFailure):
        run(harness.sheets.complete(sheet.id, TEACHER_ID))

    run(harness.sheets.apply_ai_correction(sheet.id, ai_result()))
    completed = run(harness.sheets.complete(sheet.id, TEACHER_ID))

    assert completed.status == SheetStatus.COMPLETED
    assert completed.completed_at is not None


# ============ MATCHING ============


def test_manual_match_resolves_unmatched_flag(harness):
    sheet = upload(harness, "blank.png")
    assert sheet.status == SheetStatus.FLAGGED

    matched = run(harness.sheets.match_to_student(sheet.id, TEACHER_ID, student_id="stu_120"))

    assert matched.student_id == "stu_120"
    assert matched.roll_number_confidence == 100
    assert matched.status == SheetStatus.UPLOADED
    assert matched.flags[0].resolved
    assert not matched.has_critical_flags
    assert "user_stu_120" in [n.recipient_id for n in harness.notifications.of_type("ANSWER_SHEET_UPLOADED")]


def test_manual_match_by_roll_number(harness):
    sheet = upload(harness, "blank.png")
    matched = run(harness.sheets.match_to_student(sheet.id, TEACHER_ID, roll_number="245"))
    assert matched.student_id == "stu_245"


def test_manual_match_refuses_second_active_sheet(harness):
    upload(harness, "roll_007.png", "007")
    unmatched = upload(harness, "blank.png")

    with pytest.raises(ConflictError):
        run(harness.sheets.match_to_student(unmatched.id, TEACHER_ID, student_id="stu_007"))


def test_auto_match_picks_up_new_roster_entries(harness):
    pending = upload(harness, "late.png", "310")
    blank = upload(harness, "blank.png")
    harness.roster.students.append(
        {"student_id": "stu_310", "name": "Late Joiner", "roll_number": "310", "class_id": CLASS_ID}
    )

    outcome = run(harness.sheets.auto_match_unmatched(EXAM_ID, TEACHER_ID))

    assert outcome["total_processed"] == 2
    assert [m["answer_sheet_id"] for m in outcome["matched"]] == [pending.id]
    assert [u["answer_sheet_id"] for u in outcome["still_unmatched"]] == [blank.id]
    rematched = run(harness.sheets.get(pending.id))
    assert rematched.student_id == "stu_310"
    assert rematched.status == SheetStatus.UPLOADED
    assert all(f.auto_resolved for f in rematched.flags)


def test_list_by_exam_summary(harness):
    upload(harness, "roll_007.png", "007")
    upload(harness, "blank.png")
    run(harness.sheets.mark_absent(EXAM_ID, "stu_120", "Sick", TEACHER_ID))

    listing = run(harness.sheets.list_by_exam(EXAM_ID, TEACHER_ID))

    assert listing["summary"]["total"] == 3
    assert listing["summary"]["matched"] == 2
    assert listing["summary"]["unmatched"] == 1
    assert listing["summary"]["absent"] == 1
    assert listing["summary"]["by_status"] == {"UPLOADED": 1, "FLAGGED": 1, "ABSENT": 1}

    with pytest.raises(ValidationFailure):
        run(harness.sheets.list_by_exam(EXAM_ID, TEACHER_ID, "SHREDDED"))


def test_soft_deleted_sheet_frees_the_student_slot(harness):
    sheet = upload(harness, "roll_007.png", "007")
    run(harness.sheets.soft_delete(sheet.id, TEACHER_ID))

    with pytest.raises(NotFoundError):
        run(harness.sheets.get(sheet.id))
    replacement = upload(harness, "rescan.png", student_id="stu_007")
    assert replacement.student_id == "stu_007"


# ============ FLAGS ============


def test_flag_lifecycle(harness):
    sheet = upload(harness, "roll_007.png", "007")

    flagged = run(
        harness.sheets.add_flag(
            sheet.id, FlagCreateRequest(type="MISSING_PAGES", severity="HIGH", description="Page 3 absent"), TEACHER_ID
        )
    )
    assert flagged.status == SheetStatus.FLAGGED
    assert flagged.flags[0].detected_by == TEACHER_ID

    with pytest.raises(ValidationFailure):
        run(harness.sheets.resolve_flag(sheet.id, 4, TEACHER_ID))

    resolved = run(harness.sheets.resolve_flag(sheet.id, 0, TEACHER_ID, "Found page 3"))
    assert resolved.status == SheetStatus.UPLOADED
    assert resolved.flag_resolution_rate == 100.0

    with pytest.raises(ConflictError):
        run(harness.sheets.resolve_flag(sheet.id, 0, TEACHER_ID))


def test_bulk_resolve_reports_failures(harness):
    sheet = upload(harness, "blank.png")

    outcome = run(harness.sheets.bulk_resolve_flags([sheet.id, "sheet_missing"], ADMIN_ID, "Reviewed"))

    assert outcome["resolved"] == [sheet.id]
    assert outcome["failed"][0]["answer_sheet_id"] == "sheet_missing"
    assert run(harness.sheets.get(sheet.id)).status == SheetStatus.PROCESSING


def test_flagged_sheets_and_statistics(harness):
    upload(harness, "roll_007.png", "007")
    critical = upload(harness, "blank.png")
    upload(harness, "partial.png", "12")

    only_critical = run(harness.sheets.flagged_sheets(EXAM_ID, TEACHER_ID, severity="CRITICAL"))
    stats = run(harness.sheets.flag_statistics(EXAM_ID, TEACHER_ID))

    assert [s.id for s in only_critical] == [critical.id]
    assert stats["exam_id"] == EXAM_ID
    assert stats["total_sheets"] == 3
    assert stats["total_flags"] == 2
    assert stats["by_severity"] == {"CRITICAL": 1, "MEDIUM": 1}


def test_auto_detect_reflags_resolved_condition(harness):
    sheet = upload(harness, "sideways.png", "120", file_bytes=page_image(800, 600))
    run(harness.sheets.resolve_flag(sheet.id, 0, TEACHER_ID, "Looks fine"))

    outcome = run(harness.sheets.auto_detect_flags(sheet.id, TEACHER_ID))

    assert outcome["added"] == [FlagType.ALIGNMENT_ISSUE.value]
    assert outcome["sheet"].flag_count == 2
    assert outcome["sheet"].flags[1].severity == FlagSeverity.MEDIUM


# ============ ACCESS ============


def test_sheet_operations_require_class_access(harness):
    sheet = upload(harness, "roll_007.png", "007")
    run(harness.sheets.apply_ai_correction(sheet.id, ai_result()))
    flag = FlagCreateRequest(type="MISSING_PAGES", severity="HIGH", description="Page 3 absent")

    attempts = [
        harness.sheets.mark_missing("Lost", OUTSIDER_ID, sheet_id=sheet.id),
        harness.sheets.soft_delete(sheet.id, OUTSIDER_ID),
        harness.sheets.add_manual_override(sheet.id, override(1, 0), OUTSIDER_ID),
        harness.sheets.apply_ai_correction(sheet.id, ai_result(q1=0, q2=0), OUTSIDER_ID),
        harness.sheets.complete(sheet.id, OUTSIDER_ID),
        harness.sheets.acknowledge(sheet.id, OUTSIDER_ID),
        harness.sheets.add_flag(sheet.id, flag, OUTSIDER_ID),
        harness.sheets.resolve_all_flags(sheet.id, OUTSIDER_ID),
        harness.sheets.get_flags(sheet.id, OUTSIDER_ID),
        harness.sheets.auto_detect_flags(sheet.id, OUTSIDER_ID),
        harness.sheets.list_by_exam(EXAM_ID, OUTSIDER_ID),
        harness.sheets.flag_statistics(EXAM_ID, OUTSIDER_ID),
    ]
    for attempt in attempts:
        with pytest.raises(ForbiddenError):
            run(attempt)

    unchanged = run(harness.sheets.get(sheet.id))
    assert unchanged.status == SheetStatus.AI_CORRECTED
    assert unchanged.is_active
    assert unchanged.manual_overrides == []
    assert unchanged.effective_marks() == 7
    assert harness.notifications.of_type("MISSING_ANSWER_SHEET") == []


def test_bulk_resolve_skips_sheets_outside_the_class(harness):
    sheet = upload(harness, "blank.png")

    outcome = run(harness.sheets.bulk_resolve_flags([sheet.id], OUTSIDER_ID))

    assert outcome["resolved"] == []
    assert outcome["failed"][0]["answer_sheet_id"] == sheet.id
    assert run(harness.sheets.get(sheet.id)).has_critical_flags


# ============ NOTIFICATION FAILURES ============


def test_recipient_lookup_failure_does_not_fail_committed_write(harness, monkeypatch):
    async def unavailable(_user_or_student_id):
        raise RuntimeError("teachers collection unavailable")

    monkeypatch.setattr(harness.roster, "supervising_admin_id", unavailable)
    monkeypatch.setattr(harness.roster, "student_user_id", unavailable)

    absent = run(harness.sheets.mark_absent(EXAM_ID, "stu_120", "Sick", TEACHER_ID))
    assert absent.status == SheetStatus.ABSENT

    sheet = upload(harness, "blank.png")
    matched = run(harness.sheets.match_to_student(sheet.id, TEACHER_ID, student_id="stu_245"))
    assert matched.student_id == "stu_245"

    reviewed = run(harness.sheets.add_manual_override(matched.id, override(1, 2), TEACHER_ID))
    assert reviewed.status == SheetStatus.MANUALLY_REVIEWED

    missing = run(harness.sheets.mark_missing("Lost", TEACHER_ID, sheet_id=matched.id))
    assert missing.status == SheetStatus.MISSING
    assert harness.notifications.of_type("ABSENT_STUDENT") == []


# ============ PERSISTENCE ============


def test_stale_write_is_rejected(harness):
    sheet = upload(harness, "roll_007.png", "007")
    first = run(harness.repository.get(sheet.id))
    second = run(harness.repository.get(sheet.id))

    first.missing_reason = "first writer"
    run(harness.repository.save(first))

    second.missing_reason = "second writer"
    with pytest.raises(StaleWriteError):
        run(harness.repository.save(second))


def test_update_reapplies_change_after_concurrent_write(harness):
    sheet = upload(harness, "roll_007.png", "007")
    interfered = []

    def change(current):
        if not interfered:
            # another writer lands between our load and save
            other = run_in_place(harness.repository.get(sheet.id))
            other.absent_reason = "other writer"
            run_in_place(harness.repository.save(other))
            interfered.append(True)
        current.missing_reason = "ours"
        return current

    def run_in_place(coro):
        # fake repository coroutines never suspend
        try:
            coro.send(None)
        except StopIteration as done:
            return done.value
        raise AssertionError("coroutine suspended")

    updated = run(harness.sheets.update(sheet.id, change))

    assert updated.missing_reason == "ours"
    assert updated.absent_reason == "other writer"
