import logging
import os
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, List

import aiofiles

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemporaryArtifact:
    path: str


class ArtifactScope:
    """
    Temporary files owned by exactly one request.
    Every path carries a fresh uuid so concurrent requests sharing the
    temp directory never collide. cleanup() is idempotent and never raises.
    """

    def __init__(self, temp_dir: str, request_id: str = "-"):
        self.temp_dir = temp_dir
        self.request_id = request_id
        self._artifacts: List[TemporaryArtifact] = []

    @property
    def artifacts(self) -> List[TemporaryArtifact]:
        return list(self._artifacts)

    def allocate(self, label: str, ext: str) -> TemporaryArtifact:
        os.makedirs(self.temp_dir, exist_ok=True)
        artifact = TemporaryArtifact(os.path.join(self.temp_dir, f"{uuid.uuid4().hex}-{label}.{ext}"))
        self._artifacts.append(artifact)
        return artifact

    def cleanup(self) -> None:
        # Synchronous so it still completes inside an already-cancelled scope
        while self._artifacts:
            artifact = self._artifacts.pop()
            try:
                os.remove(artifact.path)
                logger.debug(f"Removed {artifact.path}", extra={"request_id": self.request_id})
            except FileNotFoundError:
                pass
            except OSError as e:
                # Never surfaces to the client
                logger.warning(
                    f"Failed to remove temporary artifact {artifact.path}: {e}",
                    extra={"request_id": self.request_id},
                )


async def write_stream_to_file(chunks: AsyncIterator[bytes], path: str) -> int:
    """Materialize a byte stream on disk, returns bytes written"""
    written = 0
    async with aiofiles.open(path, "wb") as f:
        async with aclosing(chunks) as stream:
            async for chunk in stream:
                await f.write(chunk)
                written += len(chunk)
    return written


async def read_file_chunks(path: str, chunk_size: int) -> AsyncIterator[bytes]:
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk
