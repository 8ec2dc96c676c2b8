"""Transports: the primitive file operations a sync is carried out with."""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Iterator

import paramiko

from .errors import ScanError, TransportError
from .filesystem import copy_file_atomic, ensure_parent, hash_file, prune_empty_dirs, write_stream_atomic
from .models import FileRecord, Snapshot
from .scanner import DEFAULT_WORKERS, ScanFilter, Scanner

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Primitive operations against the tree being synchronized.

    Paths are POSIX paths relative to the remote root. Each primitive either
    succeeds or raises ``TransportError``. Missing parent directories are
    created, directories emptied by a move or delete are pruned, and deleting
    a missing path succeeds.
    """

    @abstractmethod
    def list_remote_snapshot(self) -> Snapshot:
        """Return an uncommitted snapshot of the remote tree."""

    @abstractmethod
    def move(self, source: str, destination: str) -> None: ...

    @abstractmethod
    def copy(self, source: str, destination: str) -> None: ...

    @abstractmethod
    def write_bytes(self, destination: str, stream: BinaryIO, mode: int | None = None) -> int:
        """Write ``stream`` to ``destination``; return the number of bytes sent."""

    @abstractmethod
    def delete(self, path: str) -> None: ...

    @abstractmethod
    def fingerprint(self, path: str) -> str | None:
        """Return the SHA-256 of the file at ``path``, or None if there is none."""

    def close(self) -> None:
        return None

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()


def _check_relative(path: str) -> str:
    pure = PurePosixPath(path)
    if not path or pure.is_absolute() or ".." in pure.parts:
        raise TransportError(f"Refusing to operate on '{path}' outside the remote root", transient=False)
    return path


class LocalTransport(Transport):
    """A "remote" tree reachable through the local filesystem (disk, mount, tests)."""

    def __init__(
        self,
        root: Path,
        scan_filter: ScanFilter | None = None,
        workers: int = DEFAULT_WORKERS,
    ) -> None:
        self.root = Path(root)
        self.scanner = Scanner(workers=workers, scan_filter=scan_filter)

    def list_remote_snapshot(self) -> Snapshot:
        with self._guard("list"):
            self.root.mkdir(parents=True, exist_ok=True)
        try:
            result = self.scanner.scan(self.root)
        except ScanError as exc:
            raise TransportError(str(exc), transient=False) from exc
        for entry in result.skipped:
            logger.warning(f"Remote entry {entry.path} not listed: {entry.reason}")
        return result.snapshot

    def move(self, source: str, destination: str) -> None:
        src, dst = self._resolve(source), self._resolve(destination)
        with self._guard(f"move {source} -> {destination}"):
            if not src.is_file():
                raise FileNotFoundError(f"source '{source}' does not exist")
            ensure_parent(dst)
            os.replace(src, dst)
            prune_empty_dirs(src.parent, self.root)

    def copy(self, source: str, destination: str) -> None:
        src, dst = self._resolve(source), self._resolve(destination)
        with self._guard(f"copy {source} -> {destination}"):
            copy_file_atomic(src, dst)

    def write_bytes(self, destination: str, stream: BinaryIO, mode: int | None = None) -> int:
        dst = self._resolve(destination)
        with self._guard(f"write {destination}"):
            return write_stream_atomic(dst, stream, mode)

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        with self._guard(f"delete {path}"):
            target.unlink(missing_ok=True)
            prune_empty_dirs(target.parent, self.root)

    def fingerprint(self, path: str) -> str | None:
        target = self._resolve(path)
        with self._guard(f"hash {path}"):
            if not target.is_file():
                return None
            return hash_file(target)

    def _resolve(self, relative: str) -> Path:
        return self.root / _check_relative(relative)

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except FileNotFoundError as exc:
            raise TransportError(f"{action}: {exc}", transient=False) from exc
        except OSError as exc:
            raise TransportError(f"{action}: {exc}") from exc


class SSHTransport(Transport):
    """A remote tree reached over SSH.

    Listings run GNU ``find`` and ``sha256sum`` on the remote host; file
    operations run ``mv``/``cp``/``rm``; new content is uploaded over SFTP to
    a temporary name and renamed into place. Connection failures are
    transient and the client reconnects on the next call.
    """

    KEEPALIVE_SECONDS = 30

    def __init__(
        self,
        host: str,
        root: str,
        *,
        user: str | None = None,
        port: int = 22,
        key_file: Path | None = None,
        scan_filter: ScanFilter | None = None,
        timeout: float = 30.0,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.host = host
        self.root = root
        self.user = user
        self.port = port
        self.key_file = key_file
        self.scan_filter = scan_filter or ScanFilter()
        self.timeout = timeout
        self._client_factory = client_factory
        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    # ------------------------------------------------------------------
    # Transport primitives

    def list_remote_snapshot(self) -> Snapshot:
        started = datetime.now(timezone.utc)
        root = shlex.quote(self.root)
        prune = self._prune_expression()
        stats = self._exec(
            f"mkdir -p -- {root} && cd -- {root} && "
            f"find . -mindepth 1 {prune} -type f -printf '%s\\t%T@\\t%m\\t%P\\0'"
        )
        hashes = self._exec(f"cd -- {root} && find . -mindepth 1 {prune} -type f -exec sha256sum -z {{}} +")
        records = parse_listing(stats, hashes, self.scan_filter)
        logger.info(f"Listed {len(records)} file(s) on {self.host}:{self.root}")
        return Snapshot(records=tuple(records), created_at=started)

    def move(self, source: str, destination: str) -> None:
        src, dst = self._remote(source), self._remote(destination)
        self._exec(
            f"{self._mkdir_parent(dst)} && mv -f -- {shlex.quote(src)} {shlex.quote(dst)}" + self._prune(source)
        )

    def copy(self, source: str, destination: str) -> None:
        src, dst = self._remote(source), self._remote(destination)
        temp = f"{dst}.dirdiff-tmp-{uuid.uuid4().hex[:8]}"
        self._exec(
            f"{self._mkdir_parent(dst)} && cp -p -- {shlex.quote(src)} {shlex.quote(temp)} "
            f"&& mv -f -- {shlex.quote(temp)} {shlex.quote(dst)}"
        )

    def write_bytes(self, destination: str, stream: BinaryIO, mode: int | None = None) -> int:
        dst = self._remote(destination)
        temp = f"{dst}.dirdiff-tmp-{uuid.uuid4().hex[:8]}"
        self._exec(self._mkdir_parent(dst))
        try:
            sftp = self._open_sftp()
            attributes = sftp.putfo(stream, temp)
            if mode is not None:
                sftp.chmod(temp, mode)
        except (paramiko.SSHException, OSError) as exc:
            self._reset()
            raise TransportError(f"{self.host}: upload of {destination} failed: {exc}") from exc
        self._exec(f"mv -f -- {shlex.quote(temp)} {shlex.quote(dst)}")
        return int(attributes.st_size or 0)

    def delete(self, path: str) -> None:
        target = self._remote(path)
        self._exec(f"rm -f -- {shlex.quote(target)}" + self._prune(path))

    def fingerprint(self, path: str) -> str | None:
        target = shlex.quote(self._remote(path))
        output = self._exec(f"if [ -f {target} ]; then sha256sum < {target}; fi")
        digest = output.decode("ascii", errors="replace").strip()[:64]
        return digest.lower() or None

    def close(self) -> None:
        self._reset()

    # ------------------------------------------------------------------
    # Internal helpers

    def _remote(self, relative: str) -> str:
        return posixpath.join(self.root, _check_relative(relative))

    def _mkdir_parent(self, remote_path: str) -> str:
        return f"mkdir -p -- {shlex.quote(posixpath.dirname(remote_path))}"

    def _prune(self, relative: str) -> str:
        parent = posixpath.dirname(relative)
        if not parent:
            return ""
        return (
            f" && (cd -- {shlex.quote(self.root)} && "
            f"rmdir -p --ignore-fail-on-non-empty -- {shlex.quote(parent)} 2>/dev/null || true)"
        )

    def _prune_expression(self) -> str:
        names = list(self.scan_filter.reserved)
        if not self.scan_filter.include_hidden:
            names.insert(0, ".*")
        clauses = " -o ".join(f"-name {shlex.quote(name)}" for name in names)
        return f"\\( {clauses} \\) -prune -o"

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            transport = self._client.get_transport()
            if transport is not None and transport.is_active():
                return self._client
            self._reset()

        logger.debug(f"Connecting to {self.user + '@' if self.user else ''}{self.host}:{self.port}")
        client = self._client_factory()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.WarningPolicy())
        client.connect(
            hostname=self.host,
            port=self.port,
            username=self.user,
            key_filename=str(self.key_file) if self.key_file else None,
            timeout=self.timeout,
        )
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(self.KEEPALIVE_SECONDS)
        self._client = client
        return client

    def _open_sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            self._sftp = self._connect().open_sftp()
        return self._sftp

    def _exec(self, command: str) -> bytes:
        try:
            client = self._connect()
            _, stdout, stderr = client.exec_command(command, timeout=self.timeout)
            output = stdout.read()
            errors = stderr.read()
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            self._reset()
            raise TransportError(f"{self.host}: {exc}") from exc

        if status != 0:
            message = errors.decode("utf-8", errors="replace").strip()
            raise TransportError(f"{self.host}: command exited with {status}: {message}", transient=False)
        return output

    def _reset(self) -> None:
        for resource in (self._sftp, self._client):
            if resource is None:
                continue
            try:
                resource.close()
            except (paramiko.SSHException, OSError) as exc:
                logger.debug(f"Ignoring error while closing SSH resource: {exc}")
        self._sftp = None
        self._client = None


def parse_listing(stats: bytes, hashes: bytes, scan_filter: ScanFilter) -> list[FileRecord]:
    """Join NUL-separated ``find -printf`` and ``sha256sum -z`` output into records."""

    fingerprints: dict[str, str] = {}
    for entry in hashes.split(b"\0"):
        if not entry:
            continue
        text = entry.decode("utf-8", errors="surrogateescape")
        digest, name = text[:64], text[66:]
        fingerprints[name.removeprefix("./")] = digest.lower()

    records: list[FileRecord] = []
    for entry in stats.split(b"\0"):
        if not entry:
            continue
        try:
            size, mtime, mode, path = entry.decode("utf-8", errors="surrogateescape").split("\t", 3)
            mtime_ns = int(Decimal(mtime) * 1_000_000_000)
            record_size, record_mode = int(size), int(mode, 8)
        except (ValueError, InvalidOperation) as exc:
            raise TransportError(f"Unexpected listing entry {entry!r}", transient=False) from exc

        if scan_filter.excludes_path(path):
            continue
        fingerprint = fingerprints.get(path)
        if fingerprint is None:
            logger.warning(f"Remote file {path} vanished while listing")
            continue
        records.append(
            FileRecord(path=path, size=record_size, mtime_ns=mtime_ns, fingerprint=fingerprint, mode=record_mode)
        )
    return records
