"""Destinations for received payloads."""
from __future__ import annotations

import errno
import logging
import time
from abc import ABC, abstractmethod
from contextlib import suppress
from pathlib import Path
from secrets import token_hex
from typing import Any

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


class PayloadSink(ABC):
    """Append-only sink that is either finalized or discarded, never left half-written."""

    bytes_written = 0

    @abstractmethod
    async def write(self, chunk: bytes) -> None: ...

    @abstractmethod
    async def finalize(self) -> None: ...

    @abstractmethod
    async def discard(self) -> None: ...


class TextSink(PayloadSink):
    def __init__(self) -> None:
        self._buffer = bytearray()
        self.text: str | None = None

    async def write(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        self.bytes_written += len(chunk)

    async def finalize(self) -> None:
        self.text = self._buffer.decode("utf-8", errors="replace")

    async def discard(self) -> None:
        self._buffer.clear()
        self.text = None


def safe_filename(name: str | None) -> str:
    """Strip directory components so a peer cannot write outside the target dir."""

    candidate = Path((name or "").replace("\\", "/")).name.strip()
    if candidate in {"", ".", ".."}:
        return f"pinq-{int(time.time() * 1000)}"
    return candidate


def unique_path(directory: Path, filename: str) -> Path:
    target = directory / filename
    stem, suffix = target.stem, target.suffix
    counter = 1
    while target.exists():
        target = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return target


class FileSink(PayloadSink):
    """Write into a hidden ``.part`` file and link it into place on finalize."""

    def __init__(self, directory: Path, filename: str | None) -> None:
        self.directory = Path(directory).expanduser()
        self.filename = safe_filename(filename)
        self.path = unique_path(self.directory, self.filename)
        self.temp_path = self.directory / f".{self.path.name}.{token_hex(4)}.part"
        self._file: Any = None
        self._done = False

    async def _open(self) -> None:
        await aiofiles.os.makedirs(self.directory, exist_ok=True)
        self._file = await aiofiles.open(self.temp_path, "wb")

    async def write(self, chunk: bytes) -> None:
        if self._done:
            raise OSError("Sink already closed")
        if self._file is None:
            await self._open()
        await self._file.write(chunk)
        self.bytes_written += len(chunk)

    async def finalize(self) -> None:
        if self._file is None:
            await self._open()
        await self._file.flush()
        await self._file.close()
        self._file = None
        await self._commit()
        self._done = True
        logger.info("Saved %s (%d bytes)", self.path, self.bytes_written)

    async def _commit(self) -> None:
        # link() refuses to replace an existing file, unlike rename()
        while True:
            try:
                await aiofiles.os.link(self.temp_path, self.path)
            except FileExistsError:
                self.path = unique_path(self.directory, self.filename)
                continue
            except OSError as exc:
                if exc.errno not in (errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP):
                    raise
                # no hard links on this filesystem
                if await aiofiles.os.path.exists(self.path):
                    self.path = unique_path(self.directory, self.filename)
                await aiofiles.os.rename(self.temp_path, self.path)
                return
            break
        await aiofiles.os.remove(self.temp_path)

    async def discard(self) -> None:
        if self._done and self._file is None and not self.temp_path.exists():
            return
        self._done = True
        if self._file is not None:
            with suppress(OSError):
                await self._file.close()
            self._file = None
        with suppress(FileNotFoundError):
            await aiofiles.os.remove(self.temp_path)
            logger.info("Discarded partial download %s", self.temp_path)
