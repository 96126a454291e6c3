"""LabJobRunner - Caller side of the job engine.

This module provides the entry point for lab operations:
1. Validates that the requested operation is legal for the job's status
2. Refreshes provider credentials from the CredentialStore
3. Hands the job to the ExecutionDriver on a worker thread (fire-and-forget)
4. Records unexpected crashes on the job

Usage:
    from easylab.job_runner import LabJobRunner

    runner = LabJobRunner.from_config(load_config())
    job_id = runner.create_lab(lab_config, dry_run=True)
    runner.wait(job_id)
    runner.launch(job_id)
"""

import logging
import threading
from contextlib import contextmanager
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterator, Optional

from easylab.config import EasylabConfig
from easylab.credentials import CredentialStore
from easylab.engine.driver import ExecutionDriver
from easylab.engine.prewarm import DependencyPrewarmer
from easylab.errors import EasylabError, InvalidStateError, JobNotFoundError
from easylab.job_store import JobRegistry
from easylab.schemas import Job, JobStatus, LabConfig
from easylab.utils import rfc3339

logger = logging.getLogger(__name__)

DESTROYABLE_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class LabJobRunner:
    """
    Runs driver operations for lab jobs on a thread pool.

    Args:
        registry: Job registry shared with the driver
        driver: Execution driver
        credentials: Provider credential store
        max_workers: Concurrent driver operations
    """

    def __init__(
        self,
        registry: JobRegistry,
        driver: ExecutionDriver,
        credentials: CredentialStore,
        max_workers: int = 4,
    ):
        self.registry = registry
        self.driver = driver
        self.credentials = credentials
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="easylab-job"
        )
        self._futures: dict[str, Future] = {}
        self._reserving: set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: EasylabConfig,
        credentials: Optional[CredentialStore] = None,
        engine: Optional[Any] = None,
        prewarm: bool = True,
    ) -> "LabJobRunner":
        """
        Build registry, driver and runner from process configuration.

        Dependencies are prewarmed only when `prewarm` is set and the
        configuration asks for it.
        """
        registry = JobRegistry.from_config(config)

        prewarmer = None
        if prewarm and config.prewarm_dependencies and not config.inline_program:
            prewarmer = DependencyPrewarmer(config)
            prewarmer.run()

        driver = ExecutionDriver(registry, config, engine=engine, prewarmer=prewarmer)
        if credentials is None:
            credentials = CredentialStore.from_env()
        return cls(registry, driver, credentials, max_workers=config.max_workers)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require(self, job_id: str) -> Job:
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _require_status(self, job: Job, allowed: frozenset[JobStatus], action: str) -> None:
        status = job.status
        if status not in allowed:
            expected = " or ".join(sorted(s.value for s in allowed))
            raise InvalidStateError(
                f"cannot {action} job {job.id}: status is {status.value}, expected {expected}"
            )

    def _refreshed(self, lab: LabConfig) -> LabConfig:
        """Copy of `lab` carrying the store's current credentials."""
        return lab.with_credentials(self.credentials.get(lab.provider))

    @contextmanager
    def _reserved(self, job_id: str) -> Iterator[None]:
        """
        Claim `job_id` for one operation until it is submitted.

        Raises InvalidStateError before anything on the job changes when
        another operation is queued, running or being prepared.
        """
        with self._lock:
            current = self._futures.get(job_id)
            if job_id in self._reserving or (current is not None and not current.done()):
                raise InvalidStateError(f"job {job_id} already has an operation in progress")
            self._reserving.add(job_id)
        try:
            yield
        finally:
            with self._lock:
                self._reserving.discard(job_id)

    def _submit(self, job_id: str, operation: Callable[[str], JobStatus]) -> Future:
        with self._lock:
            future = self._executor.submit(self._run, job_id, operation)
            self._futures[job_id] = future
        return future

    def _run(self, job_id: str, operation: Callable[[str], JobStatus]) -> JobStatus:
        try:
            return operation(job_id)
        except Exception as e:
            logger.exception(
                f"Job {job_id} failed unexpectedly", extra={"job_id": job_id}
            )
            try:
                self.registry.append_output(job_id, f"Unexpected failure: {e}")
            except EasylabError as record_error:
                logger.warning(f"Could not record failure on job {job_id}: {record_error}")
            try:
                self.registry.set_error(job_id, f"unexpected error: {e}")
            except EasylabError as record_error:
                logger.warning(f"Could not record failure on job {job_id}: {record_error}")
            self.registry.persist(job_id)
            return self._require(job_id).status

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create_lab(self, config: LabConfig, dry_run: bool = False) -> str:
        """
        Create a job for `config` and start a preview or a deployment.

        Raises:
            ConfigurationMissingError: If provider credentials are not configured
        """
        lab = self._refreshed(config)
        job_id = self.registry.create(lab)
        logger.info(
            f"Created job {job_id} for stack {lab.stack_name} ({'dry run' if dry_run else 'deploy'})",
            extra={"job_id": job_id, "stack": lab.stack_name},
        )
        self._submit(job_id, self.driver.preview if dry_run else self.driver.execute)
        return job_id

    def launch(self, job_id: str) -> None:
        """Launch the real deployment of a successful dry run."""
        job = self._require(job_id)
        with self._reserved(job_id):
            self._require_status(job, frozenset({JobStatus.DRY_RUN_COMPLETED}), "launch")
            logger.info(f"Launching job {job_id}", extra={"job_id": job_id})
            self._submit(job_id, self.driver.execute)

    def retry(self, job_id: str) -> None:
        """Retry a failed job with refreshed credentials."""
        job = self._require(job_id)
        with self._reserved(job_id):
            self._require_status(job, frozenset({JobStatus.FAILED}), "retry")
            lab = self._refreshed(job.config)

            self.registry.update_config(job_id, lab)
            self.registry.reset_for_retry(job_id)
            self.registry.append_output(job_id, f"Retrying job at {rfc3339()}")
            logger.info(f"Retrying job {job_id}", extra={"job_id": job_id})
            self._submit(job_id, self.driver.execute_retry)

    def destroy(self, job_id: str) -> None:
        """Destroy the lab of a completed or failed job."""
        job = self._require(job_id)
        if not job.stack_name:
            raise InvalidStateError(f"job {job_id} has no stack name")
        with self._reserved(job_id):
            self._require_status(job, DESTROYABLE_STATUSES, "destroy")

            if self.credentials.has(job.config.provider):
                self.registry.update_config(job_id, self._refreshed(job.config))
            logger.info(
                f"Destroying stack {job.stack_name} of job {job_id}",
                extra={"job_id": job_id, "stack": job.stack_name},
            )
            self._submit(job_id, self.driver.destroy)

    def recreate(self, job_id: str) -> str:
        """Deploy a destroyed lab again under a new job id."""
        job = self._require(job_id)
        self._require_status(job, frozenset({JobStatus.DESTROYED}), "recreate")
        lab = self._refreshed(job.config)

        new_id = self.registry.create(lab)
        logger.info(
            f"Recreating job {job_id} as {new_id}", extra={"job_id": new_id, "stack": lab.stack_name}
        )
        self._submit(new_id, self.driver.execute)
        return new_id

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        """
        Block until the job's current operation finishes.

        Raises:
            concurrent.futures.TimeoutError: If `timeout` elapses first
        """
        job = self._require(job_id)
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return job.status

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
