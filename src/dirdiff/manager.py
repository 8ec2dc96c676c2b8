"""High level orchestration for dirdiff operations."""

from __future__ import annotations

import logging
import threading

from .config import Config, RemoteConfig
from .diff import diff
from .errors import DirdiffError, RevisionNotFound
from .executor import SyncExecutor
from .models import DiffResult, ScanResult, Snapshot, SyncOutcome, SyncPlan
from .planner import SyncPlanner
from .resume import ResumeLog
from .scanner import Scanner
from .store import RevisionStore
from .transport import LocalTransport, SSHTransport, Transport

logger = logging.getLogger(__name__)


class DirdiffManager:
    """Coordinates snapshots, diffs and syncs for one tracked tree."""

    def __init__(self, config: Config) -> None:
        self.config = config
        settings = config.settings
        self.store = RevisionStore.open(settings.store_dir)
        self.scanner = Scanner(workers=settings.scan_workers, scan_filter=settings.scan_filter())
        self.planner = SyncPlanner()
        self.executor = SyncExecutor(
            settings.root,
            retry=config.retry.policy(),
            concurrency=settings.transfer_concurrency,
        )

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "DirdiffManager":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def snapshot(self) -> tuple[Snapshot, ScanResult]:
        result = self.scanner.scan(self.config.settings.root)
        revision_id = self.store.commit(result.snapshot)
        return result.snapshot.with_revision(revision_id), result

    def revisions(self) -> list[Snapshot]:
        return [self.store.get(revision_id) for revision_id in self.store.revision_ids()]

    def diff(self, rev_a: int | None = None, rev_b: int | None = None) -> DiffResult:
        """Compare two revisions; defaults to the revision before head against head."""

        if rev_b is None:
            new = self.store.head()
        else:
            new = self.store.get(rev_b)

        if rev_a is None:
            previous = self.store.previous(new.revision_id)
            if previous is None:
                raise DirdiffError(f"Revision {new.revision_id} has no earlier revision to compare with")
            old = self.store.get(previous)
        else:
            old = self.store.get(rev_a)
        return diff(old, new)

    def status(self) -> tuple[DiffResult, ScanResult]:
        """Compare head with an uncommitted scan of the working tree."""

        try:
            head = self.store.head()
        except RevisionNotFound:
            head = Snapshot.empty()
        result = self.scanner.scan(self.config.settings.root)
        return diff(head, result.snapshot), result

    def plan(self, remote_name: str) -> SyncPlan:
        remote = self.config.remote(remote_name)
        head = self.store.head()
        with self._open_transport(remote) as transport:
            return self.planner.plan(head, transport.list_remote_snapshot())

    def sync(
        self,
        remote_name: str,
        *,
        fresh: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> tuple[SyncPlan, SyncOutcome]:
        remote = self.config.remote(remote_name)
        head = self.store.head()
        log_path = self.store.resume_path(remote.name)

        if fresh:
            log_path.unlink(missing_ok=True)
        resume_log = ResumeLog.load(log_path)
        if resume_log is not None and not resume_log.matches(head):
            logger.info(f"Discarding resume log for '{remote.name}': it targets revision {resume_log.target_revision}")
            resume_log.clear()
            resume_log = None

        with self._open_transport(remote) as transport:
            # Operations applied by an interrupted run are already visible in
            # the listing, so planning from it never repeats them.
            sync_plan = self.planner.plan(head, transport.list_remote_snapshot())
            if resume_log is not None:
                logger.info(
                    f"Resuming sync to '{remote.name}': {len(resume_log.completed)}/{len(resume_log.operations)} "
                    f"operation(s) recorded, {len(sync_plan.actions)} left after re-listing"
                )
            resume_log = ResumeLog.start(log_path, remote.name, sync_plan)

            outcome = self.executor.execute(sync_plan, transport, resume_log=resume_log, cancel_event=cancel_event)

        if not outcome.remaining and outcome.failed is None:
            resume_log.clear()
        return sync_plan, outcome

    def abandon(self, remote_name: str) -> bool:
        remote = self.config.remote(remote_name)
        log_path = self.store.resume_path(remote.name)
        if not log_path.exists():
            return False
        log_path.unlink()
        return True

    # ------------------------------------------------------------------
    # Internal helpers

    def _open_transport(self, remote: RemoteConfig) -> Transport:
        settings = self.config.settings
        if remote.is_ssh:
            return SSHTransport(
                remote.host,  # type: ignore[arg-type]
                remote.path,
                user=remote.user,
                port=remote.port,
                key_file=remote.key_file,
                scan_filter=settings.scan_filter(),
            )
        return LocalTransport(remote.path, scan_filter=settings.scan_filter(), workers=settings.scan_workers)
