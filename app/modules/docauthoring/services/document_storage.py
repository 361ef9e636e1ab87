import logging
from pathlib import Path
from typing import Protocol

import anyio.to_thread

logger = logging.getLogger(__name__)


class DocumentStorage(Protocol):
    async def read_file(self, path: str) -> bytes: ...

    async def write_file(self, path: str, data: bytes) -> None: ...

    async def ensure_directory(self, path: str) -> None: ...

    async def read_text(self, path: str) -> str: ...

    async def write_text(self, path: str, text: str) -> None: ...

    async def exists(self, path: str) -> bool: ...


class LocalDocumentStorage:
    """Filesystem-backed storage; blocking calls run on anyio's worker threads.

    read_file/read_text raise FileNotFoundError for missing paths.
    write_file creates parent directories as needed.
    """

    async def read_file(self, path: str) -> bytes:
        return await anyio.to_thread.run_sync(Path(path).read_bytes)

    async def write_file(self, path: str, data: bytes) -> None:
        target = Path(path)
        await self.ensure_directory(str(target.parent))
        await anyio.to_thread.run_sync(target.write_bytes, data)
        logger.debug(f"[storage] wrote {len(data)} bytes to {path}")

    async def ensure_directory(self, path: str) -> None:
        await anyio.to_thread.run_sync(lambda: Path(path).mkdir(parents=True, exist_ok=True))

    async def read_text(self, path: str) -> str:
        return (await self.read_file(path)).decode("utf-8")

    async def write_text(self, path: str, text: str) -> None:
        await self.write_file(path, text.encode("utf-8"))

    async def exists(self, path: str) -> bool:
        return await anyio.to_thread.run_sync(Path(path).is_file)
