"""
Per-job working directory.

Each job gets <work_dir>/<job_id>/ holding:
    Pulumi.yaml              project descriptor
    Pulumi.<stack>.yaml      stack settings (written by the engine)
    .pulumi/                 local state backend
    <program sources>        copied from the template directory

After a successful apply everything except the descriptor, stack settings
and .pulumi/ is pruned; after a successful destroy the directory is removed.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import yaml

from easylab.engine.environment import subprocess_env
from easylab.errors import PreparationError

logger = logging.getLogger(__name__)

DESCRIPTOR_NAME = "Pulumi.yaml"
STATE_DIR_NAME = ".pulumi"
DEFAULT_DESCRIPTION = "OVHcloud Gateway and Managed Kubernetes infrastructure"

# Never copied from the template directory
IGNORED_SOURCES = {".git", STATE_DIR_NAME, DESCRIPTOR_NAME, "__pycache__"}


@dataclass(frozen=True)
class RuntimeProfile:
    """
    How a Pulumi program runtime is prepared.

    Attributes:
        name: Pulumi runtime name written to the descriptor
        required_files: Files that must exist for the program to run
        resolve_command: Full dependency resolution (None when not needed)
        verify_command: Lightweight consistency pass used once caches are warm
    """
    name: str
    required_files: tuple[str, ...]
    resolve_command: Optional[tuple[str, ...]] = None
    verify_command: Optional[tuple[str, ...]] = None


RUNTIME_PROFILES = {
    "go": RuntimeProfile(
        name="go",
        required_files=("main.go", "go.mod"),
        resolve_command=("go", "mod", "download"),
        verify_command=("go", "mod", "verify"),
    ),
    "yaml": RuntimeProfile(
        name="yaml",
        required_files=("Main.yaml",),
    ),
}


def get_runtime_profile(name: str) -> RuntimeProfile:
    try:
        return RUNTIME_PROFILES[name]
    except KeyError:
        raise PreparationError(f"unsupported program runtime: {name}")


def run_dependency_command(
    command: tuple[str, ...],
    cwd: Path,
    env: Mapping[str, str],
    timeout: float,
) -> Optional[str]:
    """
    Run a dependency tool under a time budget.

    Returns:
        None on success, or a warning message when the budget ran out

    Raises:
        PreparationError: If the tool is missing or exits non-zero
    """
    try:
        result = subprocess.run(
            list(command),
            cwd=cwd,
            env=subprocess_env(env),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return f"{' '.join(command)} did not finish within {timeout:g}s, continuing"
    except OSError as e:
        raise PreparationError(f"{' '.join(command)} could not be started: {e}")

    if result.returncode != 0:
        error_msg = f"{' '.join(command)} failed with exit code {result.returncode}"
        if result.stderr:
            error_msg += f": {result.stderr.strip()[:500]}"
        raise PreparationError(error_msg)
    return None


class JobWorkspace:
    """Working directory of one job."""

    def __init__(self, work_root: Path | str, job_id: str):
        self.job_id = job_id
        self.path = Path(work_root) / job_id

    def __repr__(self) -> str:
        return f"JobWorkspace(path={self.path})"

    @property
    def descriptor_path(self) -> Path:
        return self.path / DESCRIPTOR_NAME

    @property
    def state_dir(self) -> Path:
        return self.path / STATE_DIR_NAME

    def stack_settings_path(self, stack_name: str) -> Path:
        return self.path / f"Pulumi.{stack_name}.yaml"

    def exists(self) -> bool:
        return self.path.is_dir()

    def ensure(self) -> Path:
        """Create the directory if needed."""
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreparationError(f"failed to create job directory: {e}")
        return self.path

    def has_descriptor(self) -> bool:
        return self.descriptor_path.is_file()

    def write_descriptor(
        self,
        project_name: str,
        runtime: str,
        description: str = DEFAULT_DESCRIPTION,
    ) -> Path:
        """Write Pulumi.yaml."""
        descriptor = {
            "name": project_name,
            "runtime": runtime,
            "description": description,
        }
        try:
            with open(self.descriptor_path, "w") as f:
                yaml.safe_dump(descriptor, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise PreparationError(f"failed to write {DESCRIPTOR_NAME}: {e}")
        return self.descriptor_path

    def has_required_files(self, profile: RuntimeProfile) -> bool:
        """True when the descriptor and every program file are present."""
        if not self.has_descriptor():
            return False
        return all((self.path / name).is_file() for name in profile.required_files)

    def copy_sources(self, template_dir: Optional[Path]) -> list[str]:
        """
        Copy program sources from the template directory.

        Returns:
            Names of the copied top-level entries

        Raises:
            PreparationError: If the template directory is missing or a copy fails
        """
        if template_dir is None or not template_dir.is_dir():
            raise PreparationError(f"template directory not found: {template_dir}")

        copied = []
        try:
            for entry in sorted(template_dir.iterdir()):
                if entry.name in IGNORED_SOURCES:
                    continue
                target = self.path / entry.name
                if entry.is_dir():
                    shutil.copytree(entry, target, dirs_exist_ok=True)
                else:
                    shutil.copy2(entry, target)
                copied.append(entry.name)
        except OSError as e:
            raise PreparationError(f"failed to copy source files: {e}")
        return copied

    def resolve_dependencies(
        self,
        profile: RuntimeProfile,
        env: Mapping[str, str],
        timeout: float,
        prewarmed: bool = False,
    ) -> Optional[str]:
        """
        Resolve the program's dependencies.

        Runs the profile's verify command when caches were prewarmed, the
        full resolution otherwise. Returns a warning message on timeout.
        """
        command = (profile.verify_command if prewarmed else None) or profile.resolve_command
        if command is None:
            return None
        logger.debug(f"Resolving dependencies in {self.path}: {' '.join(command)}")
        return run_dependency_command(command, self.path, env, timeout)

    def prune(self, stack_name: str) -> list[str]:
        """
        Remove generated sources, keeping engine state.

        Keeps .pulumi/, Pulumi.yaml and Pulumi.<stack>.yaml. Returns the
        names that could not be removed.
        """
        keep = {STATE_DIR_NAME, DESCRIPTOR_NAME, self.stack_settings_path(stack_name).name}
        failed = []
        if not self.exists():
            return failed
        for entry in self.path.iterdir():
            if entry.name in keep:
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError as e:
                logger.warning(f"Failed to prune {entry}: {e}")
                failed.append(entry.name)
        return failed

    def remove(self) -> None:
        """Delete the whole directory."""
        if self.exists():
            shutil.rmtree(self.path)
