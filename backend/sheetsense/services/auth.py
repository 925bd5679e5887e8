"""Session-token lookup for the request principal."""

from datetime import datetime, timezone
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: str = ""
    name: str = ""
    role: str = "teacher"  # super_admin, admin, teacher or student


class SessionAuthenticator:
    """Resolves session tokens through user_sessions -> users."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def resolve(self, session_token: str) -> Optional[User]:
        session = await self.db.user_sessions.find_one({"session_token": session_token}, {"_id": 0})
        if not session:
            return None

        expires_at = session.get("expires_at")
        if expires_at is not None:
            if isinstance(expires_at, str):
                expires_at = datetime.fromisoformat(expires_at)
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at < datetime.now(timezone.utc):
                return None

        user = await self.db.users.find_one({"user_id": session["user_id"]}, {"_id": 0})
        return User(**user) if user else None
