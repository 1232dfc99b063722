"""
Cold tier stores.

The cold tier is a capacity-elastic persistent store used for two things:

- bulk overflow: the ingestion path appends a batch of records as one JSON
  lines object when the fast tier is under pressure or failing
- per-key objects: the sweeper moves aged records here, one object per key,
  so the retrieval path can read them back by key

Backends:
- LocalColdTierStore: a directory tree, written with aiofiles
- HdfsCliColdTierStore: HDFS through the ``hdfs dfs`` command line
"""

from __future__ import annotations

import abc
import asyncio
import json
import os
import tempfile
import uuid
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

import aiofiles
import aiofiles.os
import structlog

from kv_offload.core.storage_keys import (
    OFFLOAD_DIR,
    offload_object_name,
    overflow_object_name,
)
from kv_offload.errors import (
    ColdTierError,
    ColdTierReadError,
    ColdTierWriteError,
    KeyNotFoundError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from kv_offload.config import ColdTierConfig

logger = structlog.get_logger()


def encode_jsonl(records: Sequence[dict[str, Any]]) -> bytes:
    """
    Encode records as JSON lines.

    Values that JSON cannot represent are written as their string form, so
    a batch is never rejected because of its contents.
    """
    lines = [json.dumps(r, default=str, separators=(",", ":")) for r in records]
    return ("\n".join(lines) + "\n").encode("utf-8") if lines else b""


class ColdTierStore(abc.ABC):
    """Abstract base class for cold tier backends."""

    @abc.abstractmethod
    async def ensure_dir(self) -> None:
        """
        Create the root and per-key directories if missing.

        Raises:
            ColdTierError: If the directories cannot be created.
        """
        ...

    @abc.abstractmethod
    async def put_bulk(self, records: Sequence[dict[str, Any]]) -> str:
        """
        Write a batch of records as one JSON lines object.

        Args:
            records: Records to append.

        Returns:
            Path of the written object.

        Raises:
            ColdTierWriteError: If the object cannot be written.
        """
        ...

    @abc.abstractmethod
    async def put_key(self, key: str, value: bytes) -> str:
        """
        Write the raw value of one key, replacing any previous copy.

        Returns:
            Path of the written object.

        Raises:
            ColdTierWriteError: If the object cannot be written.
        """
        ...

    @abc.abstractmethod
    async def get_key(self, key: str) -> bytes:
        """
        Read the raw value stored for one key.

        Raises:
            KeyNotFoundError: If no object exists for the key.
            ColdTierReadError: If the object exists but cannot be read.
        """
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if the store is reachable and writable."""
        ...


class LocalColdTierStore(ColdTierStore):
    """
    Cold tier on a local or mounted filesystem.

    Objects are written to a temporary file in the target directory and
    renamed into place, so readers never observe a partial object.
    """

    def __init__(self, root: Path):
        """
        Initialize the store.

        Args:
            root: Directory holding overflow files and the per-key subdirectory.
        """
        self.root = Path(root)
        self._initialized = False

    @property
    def offload_dir(self) -> Path:
        return self.root / OFFLOAD_DIR

    async def ensure_dir(self) -> None:
        try:
            await aiofiles.os.makedirs(self.root, exist_ok=True)
            await aiofiles.os.makedirs(self.offload_dir, exist_ok=True)
        except OSError as e:
            raise ColdTierError("ensure_dir", str(e), cause=e) from e
        self._initialized = True

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.ensure_dir()

    async def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp, path)
        except OSError as e:
            try:
                await aiofiles.os.remove(tmp)
            except FileNotFoundError:
                pass
            raise ColdTierWriteError(str(path), str(e), cause=e) from e

    async def put_bulk(self, records: Sequence[dict[str, Any]]) -> str:
        await self._ensure_initialized()
        path = self.root / overflow_object_name()
        await self._write_atomic(path, encode_jsonl(records))
        logger.debug("Wrote overflow batch", path=str(path), records=len(records))
        return str(path)

    async def put_key(self, key: str, value: bytes) -> str:
        await self._ensure_initialized()
        path = self.root / offload_object_name(key)
        await self._write_atomic(path, value)
        return str(path)

    async def get_key(self, key: str) -> bytes:
        path = self.root / offload_object_name(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise KeyNotFoundError(key, tier="cold") from e
        except OSError as e:
            raise ColdTierReadError(str(path), str(e), cause=e) from e

    async def health_check(self) -> bool:
        try:
            await self._ensure_initialized()
            test_path = self.root / ".health_check"
            async with aiofiles.open(test_path, "w") as f:
                await f.write("ok")
            await aiofiles.os.remove(test_path)
            return True
        except (OSError, ColdTierError):
            return False


class HdfsCliColdTierStore(ColdTierStore):
    """
    Cold tier on HDFS, driven through the ``hdfs dfs`` CLI.

    Uploads are staged in a local temporary file and pushed with
    ``-put -f``. Every CLI call is bounded by ``command_timeout``.
    """

    def __init__(
        self,
        root: str | PurePosixPath,
        hdfs_bin: str = "hdfs",
        command_timeout: float = 30.0,
    ):
        """
        Initialize the store.

        Args:
            root: HDFS directory holding overflow files.
            hdfs_bin: Path or name of the hdfs executable.
            command_timeout: Timeout for each CLI invocation in seconds.
        """
        self.root = PurePosixPath(str(root))
        self.hdfs_bin = hdfs_bin
        self.command_timeout = command_timeout
        self._initialized = False

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.setdefault("JAVA_HOME", "/usr/lib/jvm/java-11-openjdk")
        env.setdefault("HADOOP_HOME", "/opt/hadoop")
        return env

    async def _run(self, *args: str) -> tuple[int, bytes, bytes]:
        """Run ``hdfs dfs <args>``; returns (returncode, stdout, stderr)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.hdfs_bin,
                "dfs",
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as e:
            raise ColdTierError(args[0], f"cannot run {self.hdfs_bin}: {e}", cause=e) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.command_timeout
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ColdTierError(
                args[0], f"timed out after {self.command_timeout}s", cause=e
            ) from e
        return proc.returncode or 0, stdout, stderr

    async def ensure_dir(self) -> None:
        code, _, stderr = await self._run(
            "-mkdir", "-p", str(self.root), str(self.root / OFFLOAD_DIR)
        )
        if code != 0:
            raise ColdTierError("ensure_dir", stderr.decode(errors="replace").strip())
        self._initialized = True

    async def _upload(self, data: bytes, target: PurePosixPath) -> None:
        if not self._initialized:
            await self.ensure_dir()
        fd, tmp = tempfile.mkstemp(prefix="kvo_", suffix=target.suffix)
        os.close(fd)
        try:
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(data)
            code, _, stderr = await self._run("-put", "-f", tmp, str(target))
        except OSError as e:
            raise ColdTierWriteError(str(target), str(e), cause=e) from e
        finally:
            try:
                await aiofiles.os.remove(tmp)
            except FileNotFoundError:
                pass
        if code != 0:
            raise ColdTierWriteError(str(target), stderr.decode(errors="replace").strip())

    async def put_bulk(self, records: Sequence[dict[str, Any]]) -> str:
        target = self.root / overflow_object_name()
        await self._upload(encode_jsonl(records), target)
        return str(target)

    async def put_key(self, key: str, value: bytes) -> str:
        target = self.root / offload_object_name(key)
        await self._upload(value, target)
        return str(target)

    async def get_key(self, key: str) -> bytes:
        path = self.root / offload_object_name(key)
        code, stdout, stderr = await self._run("-cat", str(path))
        if code == 0:
            return stdout
        message = stderr.decode(errors="replace").strip()
        if "No such file" in message:
            raise KeyNotFoundError(key, tier="cold")
        raise ColdTierReadError(str(path), message)

    async def health_check(self) -> bool:
        try:
            code, _, _ = await self._run("-test", "-d", str(self.root))
        except ColdTierError:
            return False
        return code == 0


def create_cold_tier(config: ColdTierConfig) -> ColdTierStore:
    """
    Build the cold tier described by ``config``.

    Raises:
        ValueError: If the backend is unsupported.
    """
    if config.backend == "local":
        return LocalColdTierStore(config.root_path)
    elif config.backend == "hdfs":
        return HdfsCliColdTierStore(
            config.root_path.as_posix(),
            hdfs_bin=config.hdfs_bin,
            command_timeout=config.command_timeout,
        )
    else:
        raise ValueError(f"Unsupported cold tier backend: {config.backend}")
