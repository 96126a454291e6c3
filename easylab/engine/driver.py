"""
ExecutionDriver - Turn a job's configuration into Pulumi operations.

Operations:
- preview: plan only, ends dry-run-completed
- execute: apply, extract outputs, prune sources, ends completed
- execute_retry: like execute, reusing an intact job directory
- destroy: destroy and remove the stack, ends destroyed

Each operation moves the job to running, streams progress into the job
transcript and records its own failure on the job (status failed plus a
transcript line naming the phase). Failures are returned as the final
JobStatus, never raised; only unknown ids (JobNotFoundError) and illegal
transitions (InvalidStateError) reach the caller.

Usage:
    driver = ExecutionDriver(registry, config)
    status = driver.execute(job_id)
"""

import importlib
import logging
from contextlib import contextmanager, nullcontext
from typing import Any, Callable, Iterator, Optional

from easylab.config import EasylabConfig
from easylab.engine.environment import build_engine_env, scoped_environ
from easylab.engine.outputs import ExtractedResults, extract_results
from easylab.engine.prewarm import DependencyPrewarmer
from easylab.engine.pulumi_engine import PulumiEngine
from easylab.engine.stack import project_config, select_existing, select_or_create
from easylab.engine.workspace import JobWorkspace, RuntimeProfile, get_runtime_profile
from easylab.errors import (
    ConfigurationMissingError,
    EngineError,
    InvalidStateError,
    JobNotFoundError,
    PreparationError,
)
from easylab.job_store import JobRegistry
from easylab.schemas import Job, JobStatus, LabConfig
from easylab.utils import rfc3339

logger = logging.getLogger(__name__)

INLINE_RUNTIME = "python"


def load_program(program_path: str) -> Callable[[], None]:
    """Load an inline Pulumi program by "module:function" path.

    Raises:
        ValueError: If the path is malformed
        ImportError: If the module is not found
        AttributeError: If the function is not found in the module
        TypeError: If the attribute is not callable
    """
    if ":" not in program_path:
        raise ValueError(f"Program path must be 'module:function', got: {program_path}")

    module_path, func_name = program_path.rsplit(":", 1)
    module = importlib.import_module(module_path)
    program = getattr(module, func_name)
    if not callable(program):
        raise TypeError(f"Program '{program_path}' is not callable")
    return program


class ExecutionDriver:
    """
    Drives Pulumi for jobs held in a JobRegistry.

    Args:
        registry: Job registry
        config: Process configuration (directories, runtime, passphrase)
        engine: Pulumi adapter (defaults to PulumiEngine)
        prewarmer: Dependency prewarmer; when warm, preparation only runs
            the lightweight dependency verification
    """

    def __init__(
        self,
        registry: JobRegistry,
        config: EasylabConfig,
        engine: Optional[Any] = None,
        prewarmer: Optional[DependencyPrewarmer] = None,
    ):
        self.registry = registry
        self.config = config
        self.engine = engine or PulumiEngine()
        self.prewarmer = prewarmer
        self.program = load_program(config.inline_program) if config.inline_program else None

    @property
    def inline(self) -> bool:
        return self.program is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require(self, job_id: str) -> Job:
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _transcript(self, job_id: str) -> Callable[[str], None]:
        """Append lines to the job transcript, mirrored to the debug log."""
        def log(line: str) -> None:
            line = line.rstrip("\n")
            self.registry.append_output(job_id, line)
            logger.debug(line, extra={"job_id": job_id})
        return log

    def _workspace(self, job_id: str) -> JobWorkspace:
        return JobWorkspace(self.config.work_path, job_id)

    def _profile(self) -> RuntimeProfile:
        if self.inline:
            return RuntimeProfile(name=INLINE_RUNTIME, required_files=())
        return get_runtime_profile(self.config.program_runtime)

    def _check_credentials(self, lab: LabConfig) -> None:
        missing = lab.missing_credentials()
        if missing:
            raise ConfigurationMissingError(
                f"{lab.provider} credentials not configured (missing: {', '.join(missing)})"
            )

    @contextmanager
    def _engine_scope(self, env: dict[str, str]) -> Iterator[None]:
        """Overlay the environment onto the process for inline programs only."""
        scope = scoped_environ(env) if self.inline else nullcontext()
        with scope:
            yield

    def _fail(self, job_id: str, line: str, message: str) -> JobStatus:
        self._transcript(job_id)(line)
        self.registry.set_error(job_id, message)
        logger.error(line, extra={"job_id": job_id})
        self.registry.persist(job_id)
        return JobStatus.FAILED

    def _prepare(
        self,
        lab: LabConfig,
        workspace: JobWorkspace,
        log: Callable[[str], None],
        reuse: bool = False,
    ) -> dict[str, str]:
        """
        Materialize the job directory and build the engine environment.

        Raises:
            ConfigurationMissingError: If provider credentials are missing
            PreparationError: If the directory, sources or dependencies fail
        """
        self._check_credentials(lab)
        profile = self._profile()

        log(f"Creating job directory: {workspace.path}")
        workspace.ensure()
        env = build_engine_env(self.config, lab, workspace.path)

        if reuse and workspace.has_required_files(profile):
            log("Reusing existing job directory, skipping source generation and dependency resolution")
            return env

        log("Writing Pulumi.yaml...")
        workspace.write_descriptor(self.config.project_name, profile.name)
        if self.inline:
            return env

        log(f"Copying source files from {self.config.template_path}...")
        workspace.copy_sources(self.config.template_path)
        log("Source files copied successfully")

        prewarmed = self.prewarmer is not None and self.prewarmer.is_warm
        log("Verifying dependencies..." if prewarmed else "Resolving dependencies...")
        warning = workspace.resolve_dependencies(
            profile,
            env,
            timeout=self.config.dependency_timeout_seconds,
            prewarmed=prewarmed,
        )
        if warning:
            log(f"Warning: {warning}")
        return env

    def _open_stack(
        self,
        workspace: JobWorkspace,
        lab: LabConfig,
        env: dict[str, str],
        log: Callable[[str], None],
    ) -> Any:
        ws = self.engine.workspace(workspace.path, env, program=self.program)
        stack = select_or_create(self.engine, ws, lab.stack_name, log)
        log("Setting Pulumi configuration...")
        self.engine.set_config(stack, project_config(lab))
        return stack

    def _record_results(
        self,
        job_id: str,
        results: ExtractedResults,
        log: Callable[[str], None],
    ) -> None:
        for note in results.notes:
            log(note)
        for warning in results.warnings:
            log(f"Warning: {warning}")
        if results.kubeconfig is None and results.platform is None:
            return
        self.registry.set_result(
            job_id,
            kubeconfig=results.kubeconfig,
            platform=results.platform,
        )

    def _salvage(
        self,
        job_id: str,
        stack: Any,
        workspace: JobWorkspace,
        lab: LabConfig,
        log: Callable[[str], None],
    ) -> None:
        """Best-effort output extraction after a failed apply."""
        log("Attempting to extract outputs from partially applied stack...")
        try:
            outputs = self.engine.read_outputs(stack)
        except EngineError as e:
            log(f"Warning: could not read stack outputs: {e}")
            return
        results = extract_results(outputs, workspace.path, lab)
        self._record_results(job_id, results, log)
        if results.has_cluster:
            log("Cluster credentials recovered despite apply failure")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def preview(self, job_id: str) -> JobStatus:
        """Run a plan-only preview. Ends dry-run-completed or failed."""
        lab = self._require(job_id).config
        log = self._transcript(job_id)

        self.registry.update_status(job_id, JobStatus.RUNNING)
        log(f"Dry run started at {rfc3339()}")
        workspace = self._workspace(job_id)

        try:
            env = self._prepare(lab, workspace, log)
            with self._engine_scope(env):
                stack = self._open_stack(workspace, lab, env, log)
                log("Running pulumi preview (dry run)...")
                self.engine.preview(stack, on_output=log)
        except ConfigurationMissingError as e:
            return self._fail(job_id, f"Configuration missing: {e}", str(e))
        except PreparationError as e:
            return self._fail(job_id, f"Preparation failed: {e}", str(e))
        except EngineError as e:
            return self._fail(job_id, f"Dry run failed: {e}", str(e))

        log(f"Dry run completed successfully at {rfc3339()}")
        log("Dry run passed! You can now launch the real deployment.")
        self.registry.update_status(job_id, JobStatus.DRY_RUN_COMPLETED)
        return JobStatus.DRY_RUN_COMPLETED

    def execute(self, job_id: str) -> JobStatus:
        """Apply the stack. Ends completed or failed."""
        return self._apply(job_id, retry=False)

    def execute_retry(self, job_id: str) -> JobStatus:
        """Apply again, reusing the job directory when it is intact."""
        return self._apply(job_id, retry=True)

    def _apply(self, job_id: str, retry: bool) -> JobStatus:
        lab = self._require(job_id).config
        log = self._transcript(job_id)

        self.registry.update_status(job_id, JobStatus.RUNNING)
        log(f"{'Retry' if retry else 'Job'} started at {rfc3339()}")
        workspace = self._workspace(job_id)

        try:
            env = self._prepare(lab, workspace, log, reuse=retry)
            with self._engine_scope(env):
                stack = self._open_stack(workspace, lab, env, log)
                log("Running pulumi up...")
                try:
                    outputs = self.engine.up(stack, on_output=log)
                except EngineError:
                    self._salvage(job_id, stack, workspace, lab, log)
                    raise
        except ConfigurationMissingError as e:
            return self._fail(job_id, f"Configuration missing: {e}", str(e))
        except PreparationError as e:
            return self._fail(job_id, f"Preparation failed: {e}", str(e))
        except EngineError as e:
            return self._fail(job_id, f"Deployment failed: {e}", str(e))

        log("Extracting stack outputs...")
        results = extract_results(outputs, workspace.path, lab)
        self._record_results(job_id, results, log)

        not_pruned = workspace.prune(lab.stack_name)
        if not_pruned:
            log(f"Warning: could not prune {', '.join(sorted(not_pruned))}")
        else:
            log("Generated sources pruned, Pulumi state kept")

        log(f"Deployment completed successfully at {rfc3339()}")
        self.registry.update_status(job_id, JobStatus.COMPLETED)
        self.registry.persist(job_id)
        return JobStatus.COMPLETED

    def destroy(self, job_id: str) -> JobStatus:
        """
        Destroy the job's stack. Ends destroyed or failed.

        A stack that a listing confirms absent counts as already destroyed.
        A failed destroy keeps the job directory and stack state so it can
        be retried.
        """
        lab = self._require(job_id).config
        stack_name = lab.stack_name
        if not stack_name:
            raise InvalidStateError(f"job {job_id} has no stack name")
        log = self._transcript(job_id)

        self.registry.update_status(job_id, JobStatus.RUNNING)
        log(f"Destroy started at {rfc3339()}")
        workspace = self._workspace(job_id)

        try:
            self._check_credentials(lab)
            if not workspace.has_descriptor():
                log(f"Job directory not found or incomplete: {workspace.path}. Regenerating project descriptor...")
                workspace.ensure()
                workspace.write_descriptor(self.config.project_name, self._profile().name)
            env = build_engine_env(self.config, lab, workspace.path)

            with self._engine_scope(env):
                ws = self.engine.workspace(workspace.path, env, program=self.program)
                stack = select_existing(self.engine, ws, stack_name, log)
                if stack is None:
                    log("Stack not found, treating job as already destroyed")
                else:
                    log("Running pulumi destroy...")
                    self.engine.destroy(stack, on_output=log)
                    log(f"Removing Pulumi stack '{stack_name}'...")
                    try:
                        self.engine.remove_stack(ws, stack_name)
                        log(f"Stack '{stack_name}' removed successfully")
                    except EngineError as e:
                        log(f"Warning: failed to remove stack: {e}")
        except ConfigurationMissingError as e:
            return self._fail(job_id, f"Configuration missing: {e}", str(e))
        except PreparationError as e:
            return self._fail(job_id, f"Destroy failed: {e}", str(e))
        except EngineError as e:
            return self._fail(job_id, f"Destroy failed: {e}", str(e))

        try:
            workspace.remove()
            log(f"Job directory removed: {workspace.path}")
        except OSError as e:
            log(f"Warning: failed to remove job directory: {e}")

        log(f"Destroy completed at {rfc3339()}")
        self.registry.update_status(job_id, JobStatus.DESTROYED)
        self.registry.persist(job_id)
        return JobStatus.DESTROYED
