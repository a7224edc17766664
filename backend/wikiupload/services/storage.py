from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
import uuid
from pathlib import Path

from wikiupload.core.config import settings

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int, pad: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits)).rjust(pad, "0")


class StorageService:
    def __init__(self) -> None:
        self._root = settings.storage_root
        self._tmp_dir = settings.tmp_dir
        self._stash_dir = settings.stash_dir
        self._files_dir = settings.files_dir

    def ensure_base_dirs(self) -> None:
        for directory in (self._root, self._tmp_dir, self._stash_dir, self._files_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def new_temp_path(self, suffix: str = "") -> Path:
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        return self._tmp_dir / f"{uuid.uuid4().hex}{suffix}.tmp"

    def stash_entry_dir(self, filekey: str) -> Path:
        path = self._stash_dir / filekey
        path.mkdir(parents=True, exist_ok=True)
        return path

    def chunk_path(self, filekey: str, index: int) -> Path:
        return self.stash_entry_dir(filekey) / f"chunk_{index:08d}.part"

    def stash_data_path(self, filekey: str) -> Path:
        return self.stash_entry_dir(filekey) / "data"

    def file_dir(self, file_id: str) -> Path:
        path = self._files_dir / file_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def final_file_path(self, file_id: str) -> Path:
        return self.file_dir(file_id) / "data"

    async def copy_file(self, source: Path, target: Path) -> int:
        def _copy() -> int:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
            return target.stat().st_size

        return await asyncio.to_thread(_copy)

    async def write_chunk(self, filekey: str, index: int, source: Path) -> Path:
        path = self.chunk_path(filekey, index)
        await self.copy_file(source, path)
        return path

    async def merge_chunks(self, filekey: str, total_chunks: int, target_path: Path) -> int:
        entry_dir = self.stash_entry_dir(filekey)

        def _merge() -> int:
            byte_count = 0
            target_path.parent.mkdir(parents=True, exist_ok=True)
            with open(target_path, "wb") as out_handle:
                for index in range(total_chunks):
                    chunk_path = entry_dir / f"chunk_{index:08d}.part"
                    with open(chunk_path, "rb") as in_handle:
                        while True:
                            chunk = in_handle.read(1024 * 1024)
                            if not chunk:
                                break
                            out_handle.write(chunk)
                            byte_count += len(chunk)
            return byte_count

        return await asyncio.to_thread(_merge)

    async def move_file(self, source: Path, target: Path) -> None:
        def _move() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, target)

        await asyncio.to_thread(_move)

    async def remove_entry(self, filekey: str) -> None:
        entry_dir = self._stash_dir / filekey

        def _cleanup() -> None:
            if entry_dir.exists():
                shutil.rmtree(entry_dir)

        await asyncio.to_thread(_cleanup)

    @staticmethod
    async def remove_path(path: Path) -> None:
        await asyncio.to_thread(path.unlink, missing_ok=True)

    @staticmethod
    async def read_head(path: Path, length: int = 512) -> bytes:
        def _read() -> bytes:
            with open(path, "rb") as handle:
                return handle.read(length)

        return await asyncio.to_thread(_read)

    @staticmethod
    async def compute_sha1(path: Path) -> str:
        """Base-36 SHA-1 of the file content, the key used for duplicate detection."""

        def _compute() -> str:
            hash_ = hashlib.sha1()
            with open(path, "rb") as handle:
                for chunk in iter(lambda: handle.read(1024 * 1024), b""):
                    hash_.update(chunk)
            return _base36(int(hash_.hexdigest(), 16), 31)

        return await asyncio.to_thread(_compute)


storage_service = StorageService()
