"""
JobRegistry - In-memory job registry with optional file persistence.

The registry owns the id -> Job map:
- create/get/list/remove touch map membership under the registry lock
- status, transcript, error and result mutations happen under the job's
  own write lock, taken after the registry lock is released
- jobs in a terminal status (completed, failed, destroyed) can be
  snapshotted to disk and reloaded at startup

Storage layout (FileJobStore):
    data_dir/
        jobs/
            {job_id}.json
"""

import json
import logging
import os
import tempfile
import time
from itertools import count
from pathlib import Path
from typing import Optional

from easylab.config import EasylabConfig
from easylab.errors import InvalidStateError, JobNotFoundError
from easylab.rwlock import ReadWriteLock
from easylab.schemas import Job, JobStatus, LabConfig, PlatformResult

logger = logging.getLogger(__name__)


class FileJobStore:
    """
    File-based storage for terminal job snapshots.

    Each job is one JSON document named by its id. Writes go to a temporary
    file in the same directory which is then renamed over the target, so a
    reader never sees a half-written snapshot.
    """

    def __init__(self, data_dir: Path | str):
        self._jobs_dir = Path(data_dir) / "jobs"
        self._jobs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def jobs_dir(self) -> Path:
        return self._jobs_dir

    def path_for(self, job_id: str) -> Path:
        return self._jobs_dir / f"{job_id}.json"

    def save(self, job: Job) -> Path:
        """Write the job snapshot atomically. Raises OSError on failure."""
        target = self.path_for(job.id)
        payload = json.dumps(job.to_dict(), indent=2)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._jobs_dir, prefix=f".{job.id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def delete(self, job_id: str) -> bool:
        """Remove the job snapshot. Returns False if there was none."""
        path = self.path_for(job_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def load_all(self) -> list[Job]:
        """
        Load every terminal job snapshot.

        Corrupt or unreadable files, and snapshots of jobs that were not in
        a terminal status, are skipped with a warning.
        """
        jobs: list[Job] = []
        for path in sorted(self._jobs_dir.glob("*.json")):
            try:
                with open(path) as f:
                    data = json.load(f)
                job = Job.from_dict(data)
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable job file {path.name}: {e}")
                continue

            if not job.status.is_persistable():
                logger.warning(
                    f"Skipping job {job.id} with non-terminal status {job.status.value}"
                )
                continue
            jobs.append(job)
        return jobs


class JobRegistry:
    """
    Concurrent registry of jobs.

    Args:
        store: Optional FileJobStore; persistence is disabled without one
    """

    def __init__(self, store: Optional[FileJobStore] = None):
        self._store = store
        self._lock = ReadWriteLock()
        self._jobs: dict[str, Job] = {}
        self._sequence: dict[str, int] = {}
        self._issued: set[str] = set()
        self._counter = count()
        self._last_ns = 0

    @classmethod
    def from_config(cls, config: EasylabConfig) -> "JobRegistry":
        """Registry backed by the configured data directory, with persisted jobs reloaded."""
        store = FileJobStore(config.data_path) if config.persist_jobs else None
        registry = cls(store)
        registry.reload()
        return registry

    @property
    def persistence_enabled(self) -> bool:
        return self._store is not None

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def _next_id(self) -> str:
        # Caller holds the write lock
        ns = max(time.time_ns(), self._last_ns + 1)
        while f"job-{ns}" in self._issued:
            ns += 1
        self._last_ns = ns
        job_id = f"job-{ns}"
        self._issued.add(job_id)
        return job_id

    def create(self, config: LabConfig) -> str:
        """Store a new pending job for `config` and return its id."""
        with self._lock.write():
            job_id = self._next_id()
            self._jobs[job_id] = Job(job_id, config=config.copy())
            self._sequence[job_id] = next(self._counter)
        logger.debug(f"Created job {job_id}", extra={"job_id": job_id})
        return job_id

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock.read():
            return self._jobs.get(job_id)

    def _require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list(self) -> list[Job]:
        """Snapshot of all jobs, most recently created first."""
        with self._lock.read():
            entries = [(job, self._sequence[job_id]) for job_id, job in self._jobs.items()]
        entries.sort(key=lambda entry: (entry[0].created_at, entry[1]), reverse=True)
        return [job for job, _ in entries]

    def remove(self, job_id: str) -> None:
        """Delete the job and its on-disk snapshot."""
        with self._lock.write():
            if job_id not in self._jobs:
                raise JobNotFoundError(job_id)
            del self._jobs[job_id]
            del self._sequence[job_id]
        if self._store is not None:
            try:
                self._store.delete(job_id)
            except OSError as e:
                logger.warning(
                    f"Failed to remove snapshot of job {job_id}: {e}", extra={"job_id": job_id}
                )
        logger.info(f"Removed job {job_id}", extra={"job_id": job_id})

    # ------------------------------------------------------------------
    # Record mutation
    # ------------------------------------------------------------------
    def update_status(self, job_id: str, status: JobStatus) -> None:
        job = self._require(job_id)
        with job.lock.write():
            job._transition(JobStatus(status))

    def append_output(self, job_id: str, line: str) -> None:
        job = self._require(job_id)
        with job.lock.write():
            job._append(line)

    def set_error(self, job_id: str, message: str) -> None:
        """Record `message` and mark the job failed."""
        job = self._require(job_id)
        with job.lock.write():
            job._fail(message)
        logger.debug(f"Job {job_id} failed: {message}", extra={"job_id": job_id})

    def set_result(
        self,
        job_id: str,
        *,
        kubeconfig: Optional[str] = None,
        platform: Optional[PlatformResult] = None,
    ) -> None:
        job = self._require(job_id)
        with job.lock.write():
            job._set_result(kubeconfig=kubeconfig, platform=platform)

    def update_config(self, job_id: str, config: LabConfig) -> None:
        """Replace the job's configuration snapshot (credentials refresh)."""
        job = self._require(job_id)
        with job.lock.write():
            if job._status == JobStatus.DESTROYED:
                raise InvalidStateError(f"job {job_id} is destroyed")
            job._set_config(config)

    def reset_for_retry(self, job_id: str) -> None:
        """
        Move a failed job back to pending.

        Clears error, transcript and result fields. Raises InvalidStateError
        without touching the job when it is not failed.
        """
        job = self._require(job_id)
        with job.lock.write():
            job._reset()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def persist(self, job_id: str) -> bool:
        """
        Snapshot a terminal job to disk.

        No-op when persistence is disabled or the job is not terminal.
        Write failures are logged and reported as False.
        """
        job = self._require(job_id)
        if self._store is None or not job.status.is_persistable():
            return False
        try:
            path = self._store.save(job)
        except OSError as e:
            logger.warning(
                f"Failed to persist job {job_id}: {e}", extra={"job_id": job_id}
            )
            return False
        logger.debug(f"Persisted job {job_id} to {path}", extra={"job_id": job_id})
        return True

    def reload(self) -> int:
        """
        Repopulate the registry from the store.

        Jobs already in memory are left untouched. Returns the number of
        jobs loaded.
        """
        if self._store is None:
            return 0
        loaded = sorted(self._store.load_all(), key=lambda job: job.created_at)
        added = 0
        with self._lock.write():
            for job in loaded:
                if job.id in self._jobs:
                    continue
                self._jobs[job.id] = job
                self._sequence[job.id] = next(self._counter)
                self._issued.add(job.id)
                added += 1
        logger.info(f"Loaded {added} persisted jobs")
        return added
