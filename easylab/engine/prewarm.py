"""
Dependency prewarmer.

Runs the program's dependency resolution once per process against the
template directory so per-job preparation only needs a lightweight
consistency pass. Failures are logged, never raised.
"""

import logging
import threading
from typing import Optional

from easylab.config import EasylabConfig
from easylab.engine.environment import build_engine_env
from easylab.engine.workspace import get_runtime_profile, run_dependency_command
from easylab.errors import PreparationError
from easylab.schemas import LabConfig

logger = logging.getLogger(__name__)


class DependencyPrewarmer:
    """
    Pre-populate shared dependency caches.

    Usage:
        prewarmer = DependencyPrewarmer(config)
        prewarmer.run()
        if prewarmer.is_warm:
            ...
    """

    def __init__(self, config: EasylabConfig):
        self.config = config
        self._lock = threading.Lock()
        self._ran = False
        self._warm = False
        self.failed_packages: list[str] = []

    @property
    def is_warm(self) -> bool:
        return self._warm

    def run(self) -> bool:
        """Resolve and verify dependencies once. Returns is_warm."""
        with self._lock:
            if self._ran:
                return self._warm
            self._ran = True
            self._warm = self._prewarm()
            return self._warm

    def _prewarm(self) -> bool:
        template_dir = self.config.template_path
        if template_dir is None or not template_dir.is_dir():
            logger.warning(f"Skipping dependency prewarm: template directory not found: {template_dir}")
            return False

        try:
            profile = get_runtime_profile(self.config.program_runtime)
        except PreparationError as e:
            logger.warning(f"Skipping dependency prewarm: {e}")
            return False
        if profile.resolve_command is None:
            logger.info(f"Runtime {profile.name} has no dependencies to prewarm")
            return True

        env = build_engine_env(self.config, LabConfig(), template_dir)
        timeout = self.config.dependency_timeout_seconds

        logger.info(f"Prewarming dependencies in {template_dir}")
        try:
            warning = run_dependency_command(profile.resolve_command, template_dir, env, timeout)
        except PreparationError as e:
            logger.error(f"Dependency prewarm failed: {e}")
            return False
        if warning:
            logger.warning(f"Dependency prewarm incomplete: {warning}")
            return False

        self.failed_packages = []
        if profile.name == "go":
            for package in self.config.critical_packages:
                error = self._verify_package(package, template_dir, env, timeout)
                if error:
                    logger.warning(f"Critical package {package} not resolvable: {error}")
                    self.failed_packages.append(package)
                else:
                    logger.debug(f"Critical package {package} verified")

        logger.info(
            f"Dependency prewarm complete "
            f"({len(self.config.critical_packages) - len(self.failed_packages)} packages verified, "
            f"{len(self.failed_packages)} failed)"
        )
        return True

    def _verify_package(self, package, template_dir, env, timeout) -> Optional[str]:
        try:
            return run_dependency_command(("go", "list", package), template_dir, env, timeout)
        except PreparationError as e:
            return str(e)
