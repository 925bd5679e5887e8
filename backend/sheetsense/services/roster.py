"""
Read-only roster and authorization lookups (exams, students, staff access).
"""

import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from ..errors import ForbiddenError, NotFoundError
from ..models import RosterStudent

logger = logging.getLogger(__name__)


class RosterDirectory:
    """Lookups against exams, students, staff_access and teachers collections."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_exam(self, exam_id: str) -> Dict[str, Any]:
        exam = await self.db.exams.find_one({"exam_id": exam_id}, {"_id": 0})
        if not exam:
            raise NotFoundError("Exam not found")
        return exam

    async def has_class_access(self, user_id: str, class_id: str) -> bool:
        """Admins own every class; staff need an active grant for the class."""
        user = await self.db.users.find_one({"user_id": user_id}, {"_id": 0, "role": 1})
        if user and user.get("role") in ("admin", "super_admin"):
            return True

        grant = await self.db.staff_access.find_one(
            {"staff_id": user_id, "class_ids": class_id, "is_active": True},
            {"_id": 1},
        )
        return grant is not None

    async def list_active_students(self, class_id: str) -> List[RosterStudent]:
        cursor = self.db.students.find(
            {"class_id": class_id, "is_active": True},
            {"_id": 0},
        ).sort("roll_number", 1)

        students = []
        async for doc in cursor:
            students.append(_to_roster_student(doc))
        return students

    async def find_student(self, class_id: str, student_id: Optional[str] = None, roll_number: Optional[str] = None) -> Optional[RosterStudent]:
        query: Dict[str, Any] = {"class_id": class_id, "is_active": True}
        if student_id:
            query["student_id"] = student_id
        elif roll_number:
            query["roll_number"] = roll_number
        else:
            return None

        doc = await self.db.students.find_one(query, {"_id": 0})
        return _to_roster_student(doc) if doc else None

    async def student_user_id(self, student_id: str) -> Optional[str]:
        """User account behind a student record, for notifications."""
        doc = await self.db.students.find_one({"student_id": student_id}, {"_id": 0, "user_id": 1})
        if not doc:
            return None
        return doc.get("user_id") or student_id

    async def supervising_admin_id(self, user_id: str) -> Optional[str]:
        """Admin a teacher reports to; admins supervise themselves."""
        teacher = await self.db.teachers.find_one({"user_id": user_id}, {"_id": 0, "admin_id": 1})
        if teacher and teacher.get("admin_id"):
            return teacher["admin_id"]

        user = await self.db.users.find_one({"user_id": user_id}, {"_id": 0, "role": 1})
        if user and user.get("role") == "admin":
            return user_id
        return None


def _to_roster_student(doc: Dict[str, Any]) -> RosterStudent:
    return RosterStudent(
        student_id=doc["student_id"],
        name=doc.get("name", ""),
        roll_number=str(doc.get("roll_number", "")),
        email=doc.get("email"),
        class_id=doc.get("class_id"),
    )


async def require_class_access(roster, user_id: str, exam: Dict[str, Any]):
    """Raise ForbiddenError unless the user may work on the exam's class."""
    if not await roster.has_class_access(user_id, exam["class_id"]):
        logger.warning(f"⚠️  User {user_id} denied access to class {exam['class_id']}")
        raise ForbiddenError("You do not have access to this exam's class")
