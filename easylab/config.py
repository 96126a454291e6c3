"""
Configuration management for easylab.

Loads config.yaml from the easylab home directory:
    $EASYLAB_HOME/config.yaml   (EASYLAB_HOME defaults to ~/.config/easylab)

An optional env_file is loaded into the process environment (existing
variables win). WORK_DIR and DATA_DIR environment variables override the
corresponding config values.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from easylab.errors import ConfigError

DEFAULT_WORK_DIR = "/tmp/easylab-jobs"
DEFAULT_DATA_DIR = "/tmp/easylab-data"

DEFAULT_CRITICAL_PACKAGES = [
    "github.com/pulumi/pulumi/sdk/v3/go/pulumi",
    "github.com/ovh/pulumi-ovh/sdk/v2/go/ovh/cloudproject",
    "github.com/coder/coder/v2/codersdk",
]

RUNTIMES = ("go", "yaml")
LOG_FORMATS = ("structured", "pretty")


def get_easylab_home() -> Path:
    """Return the easylab home directory (EASYLAB_HOME or ~/.config/easylab)."""
    home = os.environ.get("EASYLAB_HOME")
    if home:
        return Path(home)
    return Path("~/.config/easylab").expanduser()


@dataclass
class EasylabConfig:
    """
    Process-level settings for the job engine.

    Attributes:
        work_dir: Root of per-job working directories
        data_dir: Root of persisted job snapshots (data_dir/jobs/)
        persist_jobs: Snapshot terminal jobs and reload them at startup
        template_dir: Pulumi program sources copied into each job directory
        project_name: Pulumi project name written to Pulumi.yaml
        program_runtime: Runtime profile for the program ("go" or "yaml")
        inline_program: "module:function" of an in-process Pulumi program;
            when set, no sources are copied and no dependencies resolved
        base_dir: Explicit base directory for shared caches
        config_passphrase: PULUMI_CONFIG_PASSPHRASE for the local backend
        prewarm_dependencies: Resolve template dependencies once at startup
        dependency_timeout_seconds: Budget for per-job dependency resolution
        critical_packages: Packages verified by the prewarmer
        max_workers: Concurrent job executions
    """
    work_dir: str = DEFAULT_WORK_DIR
    data_dir: str = DEFAULT_DATA_DIR
    persist_jobs: bool = True
    template_dir: str = ""
    project_name: str = "lab-as-code"
    program_runtime: str = "go"
    inline_program: str = ""
    base_dir: str = ""
    config_passphrase: str = ""
    prewarm_dependencies: bool = False
    dependency_timeout_seconds: int = 300
    critical_packages: list[str] = field(
        default_factory=lambda: list(DEFAULT_CRITICAL_PACKAGES)
    )
    max_workers: int = 4
    log_level: str = "INFO"
    log_format: str = "structured"
    log_file: str = ""
    env_file: str = ""

    @property
    def work_path(self) -> Path:
        return Path(self.work_dir).expanduser()

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def template_path(self) -> Optional[Path]:
        return Path(self.template_dir).expanduser() if self.template_dir else None

    def validate(self) -> None:
        """Validate configuration values."""
        if self.program_runtime not in RUNTIMES:
            raise ConfigError(
                f"program_runtime must be one of {', '.join(RUNTIMES)}, got: {self.program_runtime}"
            )
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(
                f"log_format must be one of {', '.join(LOG_FORMATS)}, got: {self.log_format}"
            )
        if self.inline_program and ":" not in self.inline_program:
            raise ConfigError(
                f"inline_program must be 'module:function', got: {self.inline_program}"
            )
        if self.dependency_timeout_seconds <= 0:
            raise ConfigError("dependency_timeout_seconds must be positive")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if not self.project_name:
            raise ConfigError("project_name is required")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EasylabConfig":
        """Build a config from parsed YAML, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        values = {k: v for k, v in data.items() if v is not None}
        try:
            if "critical_packages" in values:
                values["critical_packages"] = [str(p) for p in values["critical_packages"]]
            for key in ("dependency_timeout_seconds", "max_workers"):
                if key in values:
                    values[key] = int(values[key])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config value: {e}")

        config = cls(**values)
        config.validate()
        return config


def load_config(config_path: Optional[Path] = None) -> EasylabConfig:
    """
    Load easylab configuration.

    Args:
        config_path: Path to config file. Defaults to $EASYLAB_HOME/config.yaml

    Returns:
        EasylabConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the file is not valid YAML or holds invalid values
    """
    if config_path is None:
        config_path = get_easylab_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"easylab config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError("config.yaml must contain a mapping")

    env_file = data.get("env_file")
    if env_file:
        load_dotenv(Path(env_file).expanduser(), override=False)

    if os.environ.get("WORK_DIR"):
        data["work_dir"] = os.environ["WORK_DIR"]
    if os.environ.get("DATA_DIR"):
        data["data_dir"] = os.environ["DATA_DIR"]

    return EasylabConfig.from_dict(data)


def write_default_config(config_path: Optional[Path] = None) -> Path:
    """Write a default config.yaml. Raises FileExistsError if one exists."""
    if config_path is None:
        config_path = get_easylab_home() / "config.yaml"
    if config_path.exists():
        raise FileExistsError(f"config already exists: {config_path}")

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(EasylabConfig().to_dict(), f, sort_keys=False)
    return config_path
