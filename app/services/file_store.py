import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Sequence

from fastapi import UploadFile

from app.core.clock import Clock
from app.core.errors import ValidationError
from app.schemas.assignment import Attachment

logger = logging.getLogger("assignments.files")

CHUNK_SIZE = 1024 * 1024  # 1MB


class FileStore(ABC):
    @abstractmethod
    async def stage(self, uploads: Sequence[UploadFile]) -> List[Attachment]:
        raise NotImplementedError

    @abstractmethod
    async def discard(self, attachments: Sequence[Attachment]) -> None:
        """Remove staged artifacts of a rejected request. Must not raise."""
        raise NotImplementedError


class LocalFileStore(FileStore):
    def __init__(self, base_dir: str, clock: Clock, max_files: int = 5):
        self.base_dir = Path(base_dir)
        self.clock = clock
        self.max_files = max_files

    async def stage(self, uploads: Sequence[UploadFile]) -> List[Attachment]:
        uploads = [u for u in uploads if u is not None and u.filename]
        if len(uploads) > self.max_files:
            raise ValidationError(f"At most {self.max_files} files per request")

        self.base_dir.mkdir(parents=True, exist_ok=True)
        staged: List[Attachment] = []
        try:
            for upload in uploads:
                safe_name = upload.filename.replace("/", "_").replace("\\", "_")
                destination = self.base_dir / f"{uuid.uuid4().hex}__{safe_name}"
                with destination.open("wb") as out:
                    while True:
                        chunk = await upload.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        out.write(chunk)
                await upload.close()
                staged.append(
                    Attachment(
                        fileName=upload.filename,
                        fileUrl=destination.as_posix(),
                        uploadedAt=self.clock.now(),
                    )
                )
        except OSError:
            await self.discard(staged)
            raise
        return staged

    async def discard(self, attachments: Sequence[Attachment]) -> None:
        for a in attachments:
            try:
                Path(a.fileUrl).unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove staged file %s", a.fileUrl, exc_info=True)
