"""
Transfer coordination.

Executes uploads, either planner-driven across every account (``backup``)
or to one chosen account (``upload_to_account``). Each account gets a single
worker at a time, so uploads to the same account are serialized while
different accounts upload in parallel. Jobs are persisted on every state
change and progress mark, which makes paused and interrupted uploads
resumable from the offset the remote acknowledged.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from drivepool.exceptions import (
    CapacityExceededError,
    DecryptionError,
    DrivePoolError,
    NeedsPassphraseError,
    RemoteUnavailableError,
    SessionExpiredError,
    TransferStateError,
    UploadCancelledError,
)
from drivepool.models import (
    EventKind,
    FileDescriptor,
    FileRecord,
    TransferEvent,
    TransferJob,
    TransferState,
    utcnow,
)
from drivepool.planner import PlacementPlanner

if TYPE_CHECKING:
    from drivepool.persistence import Persistence
    from drivepool.registry import AccountRegistry

__all__ = ["RetryPolicy", "ProgressChannel", "BatchResult", "TransferCoordinator"]

logger = logging.getLogger(__name__)

Subscriber = Callable[[TransferEvent], None]


@dataclass
class RetryPolicy:
    """
    Exponential backoff for transient remote failures.

    Attributes:
        attempts: Total attempts per job, including the first.
        base_delay: Delay before the second attempt, in seconds.
        multiplier: Growth factor between consecutive delays.
        max_delay: Upper bound for a single delay.
    """

    attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def delay(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


class ProgressChannel:
    """
    Publish/subscribe channel for transfer events.

    Subscribers are called synchronously on the publishing worker thread. A
    failing subscriber is logged and does not affect the transfer.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: TransferEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Progress subscriber failed on event for job {event.job_id}")


@dataclass
class BatchResult:
    """
    Outcome of a batch upload.

    Attributes:
        jobs: One job per planned file, in final state.
        unplaced: Files that were never assigned an account.
    """

    jobs: list[TransferJob] = field(default_factory=list)
    unplaced: list[FileDescriptor] = field(default_factory=list)

    def _in_state(self, state: TransferState) -> list[TransferJob]:
        return [job for job in self.jobs if job.state == state]

    @property
    def completed(self) -> list[TransferJob]:
        return self._in_state(TransferState.COMPLETED)

    @property
    def failed(self) -> list[TransferJob]:
        return self._in_state(TransferState.FAILED)

    @property
    def paused(self) -> list[TransferJob]:
        return self._in_state(TransferState.PAUSED)

    @property
    def is_complete(self) -> bool:
        return not self.unplaced and len(self.completed) == len(self.jobs)


class TransferCoordinator:
    """
    Runs transfer jobs against the accounts of a registry.

    Example:
        >>> coordinator = TransferCoordinator(registry, persistence)
        >>> coordinator.channel.subscribe(print)
        >>> result = coordinator.backup(files, passphrase='...')
        >>> [job.state.value for job in result.jobs]
        ['completed', 'completed']
    """

    def __init__(
        self,
        registry: AccountRegistry,
        persistence: Persistence,
        planner: PlacementPlanner | None = None,
        retry_policy: RetryPolicy | None = None,
        max_workers: int = 4,
        channel: ProgressChannel | None = None,
    ) -> None:
        self.registry = registry
        self.persistence = persistence
        self.planner = planner or PlacementPlanner()
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max_workers
        self.channel = channel or ProgressChannel()
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # -- public operations -------------------------------------------------

    def backup(
        self,
        files: Iterable[FileDescriptor],
        passphrase: str | None = None,
        allow_partial: bool = False,
    ) -> BatchResult:
        """
        Spread files over every account.

        Quotas are refreshed first, then the planner assigns files. Before
        each upload the target's live free space is read again; a file that
        no longer fits is displaced and, after the round, re-planned over the
        accounts not yet tried for it.

        Args:
            files: Files to upload.
            passphrase: Used to refresh expired access credentials.
            allow_partial: Upload what fits instead of refusing the batch.

        Raises:
            NeedsPassphraseError: If an expired credential needs a passphrase.
            DecryptionError: If the passphrase is wrong. Nothing is uploaded.
            CapacityExceededError: If some file fits nowhere and
                ``allow_partial`` is False. Nothing is uploaded.
        """
        files = list(files)
        free = self.registry.free_capacity(passphrase, refresh=True)
        plan = self.planner.plan(files, free)
        if plan.unplaced and not allow_partial:
            raise CapacityExceededError(plan.unplaced)

        jobs = [self._create_job(a.file, a.account_id) for a in plan.assignments]
        logger.info(
            f"Backing up {len(jobs)} file(s) to {len(plan.by_account())} account(s)"
            + (f", {len(plan.unplaced)} unplaced" if plan.unplaced else "")
        )
        self._execute(jobs, passphrase, replan=True)
        return BatchResult(jobs=jobs, unplaced=list(plan.unplaced))

    def upload_to_account(
        self,
        files: Iterable[FileDescriptor],
        account_id: str,
        passphrase: str | None = None,
    ) -> BatchResult:
        """
        Upload every file to one account.

        Raises:
            AccountNotFoundError: If the account is unknown.
            CapacityExceededError: If the batch does not fit the account.
        """
        files = list(files)
        quota = self.registry.refresh_quota(account_id, passphrase)
        plan = self.planner.plan_for_account(files, account_id, quota.free_bytes)
        if plan.unplaced:
            raise CapacityExceededError(plan.unplaced)

        jobs = [self._create_job(a.file, a.account_id) for a in plan.assignments]
        logger.info(f"Uploading {len(jobs)} file(s) to {account_id}")
        self._execute(jobs, passphrase, replan=False)
        return BatchResult(jobs=jobs)

    def cancel(self, job_id: str) -> TransferJob:
        """
        Pause a job.

        A running upload stops at the next chunk boundary and keeps its
        session; a job that is not running is paused directly.

        Raises:
            TransferStateError: If the job is completed or failed.
        """
        with self._lock:
            event = self._cancel_events.get(job_id)
        job = self._load(job_id)
        if event is not None:
            if job.is_terminal:
                raise TransferStateError(job.id, job.state.value, TransferState.PAUSED.value)
            event.set()
            logger.info(f"Cancellation requested for job {job_id}")
            return job

        self._transition(job, TransferState.PAUSED)
        return job

    def resume(self, job_id: str, passphrase: str | None = None) -> TransferJob:
        """
        Continue a paused job from the acknowledged offset.

        Raises:
            TransferStateError: If the job is not paused.
        """
        job = self._load(job_id)
        if job.state != TransferState.PAUSED:
            raise TransferStateError(job.id, job.state.value, TransferState.UPLOADING.value)
        self._register(job)
        try:
            self._run_job(job, passphrase, check_capacity=False)
        finally:
            self._unregister(job)
        return job

    def retry(self, job_id: str, passphrase: str | None = None) -> TransferJob:
        """
        Run a failed job again from the beginning.

        Raises:
            TransferStateError: If the job has not failed.
        """
        job = self._load(job_id)
        if job.state != TransferState.FAILED:
            raise TransferStateError(job.id, job.state.value, TransferState.PENDING.value)
        job.reset()
        job.attempts = 0
        self._save(job)
        self._publish_state(job)

        self._register(job)
        try:
            if self._run_job(job, passphrase, check_capacity=True):
                self._fail(job, f"Insufficient free space on {job.account_id}")
        finally:
            self._unregister(job)
        return job

    def jobs(self, state: TransferState | None = None) -> list[TransferJob]:
        return self.persistence.list_transfer_jobs(state=state)

    # -- execution ---------------------------------------------------------

    def _create_job(self, file: FileDescriptor, account_id: str) -> TransferJob:
        job = TransferJob(id=uuid.uuid4().hex, file=file, account_id=account_id)
        self.persistence.save_transfer_job(job)
        self._publish_state(job)
        return job

    def _load(self, job_id: str) -> TransferJob:
        job = self.persistence.get_transfer_job(job_id)
        if job is None:
            raise TransferStateError(job_id, "unknown", "any")
        return job

    def _register(self, job: TransferJob) -> threading.Event:
        with self._lock:
            return self._cancel_events.setdefault(job.id, threading.Event())

    def _unregister(self, job: TransferJob) -> None:
        with self._lock:
            self._cancel_events.pop(job.id, None)

    def _execute(self, jobs: list[TransferJob], passphrase: str | None, replan: bool) -> None:
        tried: dict[str, set[str]] = {job.id: {job.account_id} for job in jobs}
        for job in jobs:
            self._register(job)

        try:
            pending = list(jobs)
            while pending:
                by_account: dict[str, list[TransferJob]] = {}
                for job in pending:
                    by_account.setdefault(job.account_id, []).append(job)

                displaced: list[TransferJob] = []
                workers = max(1, min(self.max_workers, len(by_account)))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="drivepool") as pool:
                    futures = [
                        pool.submit(self._run_account, account_jobs, passphrase)
                        for account_jobs in by_account.values()
                    ]
                    for future in futures:
                        displaced.extend(future.result())

                if not replan:
                    for job in displaced:
                        self._fail(job, f"Insufficient free space on {job.account_id}")
                    break
                pending = self._replan(displaced, tried, passphrase)
        finally:
            for job in jobs:
                self._unregister(job)

    def _run_account(self, jobs: list[TransferJob], passphrase: str | None) -> list[TransferJob]:
        """Run one account's jobs in order; return the displaced ones."""
        return [job for job in jobs if self._run_job(job, passphrase, check_capacity=True)]

    def _replan(
        self, displaced: list[TransferJob], tried: dict[str, set[str]], passphrase: str | None
    ) -> list[TransferJob]:
        if not displaced:
            return []
        try:
            free = self.registry.free_capacity(passphrase, refresh=True)
        except (NeedsPassphraseError, DecryptionError) as e:
            for job in displaced:
                self._fail(job, str(e))
            return []
        moved: list[TransferJob] = []

        for job in sorted(displaced, key=lambda j: j.file.size_bytes, reverse=True):
            candidates = {a: s for a, s in free.items() if a not in tried[job.id]}
            plan = self.planner.plan([job.file], candidates)
            if not plan.assignments:
                self._fail(job, "Insufficient free space on every account")
                continue

            target = plan.assignments[0].account_id
            free[target] -= job.file.size_bytes
            tried[job.id].add(target)
            logger.info(f"Re-planned {job.file.name}: {job.account_id} -> {target}")
            job.account_id = target
            job.session_token = None
            self._save(job)
            moved.append(job)

        return moved

    def _run_job(self, job: TransferJob, passphrase: str | None, check_capacity: bool) -> bool:
        """
        Drive one job to a resting state.

        Returns:
            True if the job was displaced (not enough live free space); the
            job is then still pending. False otherwise.
        """
        cancel_event = self._register(job)
        policy = self.retry_policy
        capacity_checked = not check_capacity
        restarted = False
        attempt = 0

        while True:
            attempt += 1
            job.attempts += 1
            try:
                if cancel_event.is_set() and job.state == TransferState.PENDING:
                    self._transition(job, TransferState.PAUSED)
                    return False

                if not capacity_checked:
                    needed = job.file.size_bytes - job.bytes_transferred
                    free = self.registry.refresh_quota(job.account_id, passphrase).free_bytes
                    if free < needed:
                        logger.warning(
                            f"{job.file.name} ({needed} bytes) no longer fits on "
                            f"{job.account_id} ({free} free)"
                        )
                        return True
                    capacity_checked = True

                if job.state != TransferState.UPLOADING:
                    self._transition(job, TransferState.UPLOADING)
                remote_id = self._upload(job, passphrase, cancel_event)
                self._complete(job, remote_id, passphrase)
                return False

            except UploadCancelledError as e:
                job.record_progress(e.offset)
                self._transition(job, TransferState.PAUSED)
                logger.info(f"Paused {job.file.name} at byte {e.offset}")
                return False

            except SessionExpiredError as e:
                if restarted or job.session_token is None:
                    self._fail(job, str(e))
                    return False
                restarted = True
                logger.warning(f"Session for {job.file.name} was rejected; restarting from zero")
                job.reset()
                self._save(job)
                self._publish_state(job)

            except RemoteUnavailableError as e:
                if attempt >= policy.attempts:
                    self._fail(job, f"Gave up after {attempt} attempts: {e}")
                    return False
                delay = policy.delay(attempt)
                logger.warning(
                    f"Transient failure on {job.file.name} "
                    f"(attempt {attempt}/{policy.attempts}), retrying in {delay:.1f}s: {e}"
                )
                if cancel_event.wait(delay):
                    if job.state == TransferState.UPLOADING:
                        self._transition(job, TransferState.PAUSED)
                        return False

            except (DrivePoolError, OSError) as e:
                self._fail(job, str(e))
                return False

    def _upload(self, job: TransferJob, passphrase: str | None, cancel_event: threading.Event) -> str:
        with self.registry.open_store(job.account_id, passphrase) as store:
            with job.file.open() as stream:
                return store.upload(
                    job.file.name,
                    stream,
                    job.file.size_bytes,
                    job.file.content_type,
                    on_progress=lambda n: self._on_progress(job, n),
                    session_token=job.session_token,
                    on_session=lambda token: self._on_session(job, token),
                    cancel_event=cancel_event,
                )

    def _on_session(self, job: TransferJob, token: str) -> None:
        job.session_token = token
        job.bytes_transferred = 0
        self._save(job)

    def _on_progress(self, job: TransferJob, bytes_transferred: int) -> None:
        if job.record_progress(bytes_transferred):
            self._save(job)
            self.channel.publish(self._event(job, EventKind.PROGRESS))

    def _complete(self, job: TransferJob, remote_id: str, passphrase: str | None) -> None:
        job.remote_file_id = remote_id
        job.session_token = None
        job.record_progress(job.file.size_bytes)
        self._transition(job, TransferState.COMPLETED)

        now = utcnow()
        record = FileRecord(
            remote_id=remote_id,
            account_id=job.account_id,
            name=job.file.name,
            size_bytes=job.file.size_bytes,
            content_type=job.file.content_type,
            modified_time=now,
            created_time=now,
        )
        self.persistence.save_file_records(job.account_id, [record])
        logger.info(f"Uploaded {job.file.name} to {job.account_id} as {remote_id}")

        try:
            self.registry.refresh_quota(job.account_id, passphrase)
        except DrivePoolError as e:
            logger.warning(f"Quota refresh after upload failed for {job.account_id}: {e}")

    def _fail(self, job: TransferJob, error: str) -> None:
        self._transition(job, TransferState.FAILED, error)
        logger.error(f"Upload of {job.file.name} to {job.account_id} failed: {error}")

    # -- bookkeeping -------------------------------------------------------

    def _save(self, job: TransferJob) -> None:
        self.persistence.update_transfer_job(job)

    def _transition(
        self, job: TransferJob, state: TransferState, error: str | None = None
    ) -> None:
        job.advance(state, error)
        self._save(job)
        self._publish_state(job)

    def _event(self, job: TransferJob, kind: EventKind) -> TransferEvent:
        return TransferEvent(
            job_id=job.id,
            account_id=job.account_id,
            kind=kind,
            state=job.state,
            bytes_transferred=job.bytes_transferred,
            total_bytes=job.file.size_bytes,
            error=job.error,
        )

    def _publish_state(self, job: TransferJob) -> None:
        self.channel.publish(self._event(job, EventKind.STATE))
