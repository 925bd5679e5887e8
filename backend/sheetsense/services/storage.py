"""
Answer-sheet file storage on MongoDB GridFS.
"""

import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorGridFSBucket

from ..config.settings import settings
from ..errors import NotFoundError
from ..utils import safe_storage_name, utcnow

logger = logging.getLogger(__name__)


def build_storage_key(exam_id: str, student_id: Optional[str], file_name: str) -> str:
    """answer-sheets/{exam}/{student|unknown}/{timestamp}-{nonce}-{file name}"""
    timestamp = int(utcnow().timestamp() * 1000)
    nonce = uuid.uuid4().hex[:8]
    return f"answer-sheets/{exam_id}/{student_id or 'unknown'}/{timestamp}-{nonce}-{safe_storage_name(file_name)}"


class GridFSStorage:
    """Stores uploaded sheets in a GridFS bucket keyed by a unique storage key."""

    def __init__(self, db: AsyncIOMotorDatabase, bucket_name: str = settings.STORAGE_BUCKET):
        self.bucket = AsyncIOMotorGridFSBucket(db, bucket_name=bucket_name)

    async def store(self, file_bytes: bytes, key: str, content_type: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        file_id = await self.bucket.upload_from_stream(
            key,
            file_bytes,
            metadata={"content_type": content_type, **(metadata or {})},
        )
        logger.info(f"✅ Stored {key} ({len(file_bytes)} bytes)")
        return {
            "key": key,
            "file_id": str(file_id),
            "url": f"{settings.STORAGE_BASE_URL}/api/files/{file_id}",
        }

    async def fetch(self, key: str) -> Tuple[bytes, str]:
        """Return (bytes, content_type) for a storage key."""
        try:
            stream = await self.bucket.open_download_stream_by_name(key)
        except NoFile:
            raise NotFoundError(f"Stored file not found: {key}")
        data = await stream.read()
        return data, (stream.metadata or {}).get("content_type", "application/octet-stream")

    async def fetch_by_id(self, file_id: str) -> Tuple[bytes, str, str]:
        """Return (bytes, content_type, key) for a GridFS file id."""
        try:
            stream = await self.bucket.open_download_stream(ObjectId(file_id))
        except (InvalidId, NoFile):
            raise NotFoundError("File not found")
        data = await stream.read()
        return data, (stream.metadata or {}).get("content_type", "application/octet-stream"), stream.filename

    async def delete(self, key: str):
        cursor = self.bucket.find({"filename": key})
        async for grid_out in cursor:
            await self.bucket.delete(grid_out._id)
        logger.info(f"🗑️  Removed stored file {key}")
