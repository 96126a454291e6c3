"""
Engine environment derivation.

Builds the explicit environment map handed to every Pulumi invocation and
to dependency-resolution subprocesses:
- provider credentials (OVH_*)
- local state backend scoped to the job directory
- Pulumi runtime switches (no update checks, no automatic plugin downloads)
- shared Pulumi/Go cache paths under a derived base directory

Only in-process (inline) programs read os.environ directly; for those the
map is overlaid onto the process with scoped_environ().
"""

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping, Optional

from easylab.config import EasylabConfig
from easylab.schemas import LabConfig


FALLBACK_BASE_DIR = Path("/tmp/easylab")

# Serializes process-wide environment overlays
_OVERLAY_LOCK = threading.Lock()


def _cache_root(path: Path) -> Path:
    """Base directory of a Go cache path (<base>/go/pkg/mod or <base>/go-build)."""
    if path.parts[-3:] == ("go", "pkg", "mod"):
        return path.parents[2]
    return path.parent


def derive_base_dir(
    config: EasylabConfig,
    environ: Optional[Mapping[str, str]] = None,
) -> Path:
    """
    Derive the base directory for shared caches.

    Priority:
    1. config.base_dir, then EASYLAB_BASE_DIR
    2. parent of the configured work directory
    3. parent of PULUMI_HOME
    4. root of GOMODCACHE, then GOCACHE
    5. parent of the configured data directory
    6. /tmp/easylab
    """
    environ = os.environ if environ is None else environ

    if config.base_dir:
        return Path(config.base_dir).expanduser()
    if environ.get("EASYLAB_BASE_DIR"):
        return Path(environ["EASYLAB_BASE_DIR"]).expanduser()
    if config.work_dir:
        return config.work_path.parent
    if environ.get("PULUMI_HOME"):
        return Path(environ["PULUMI_HOME"]).expanduser().parent
    for var in ("GOMODCACHE", "GOCACHE"):
        if environ.get(var):
            return _cache_root(Path(environ[var]).expanduser())
    if config.data_dir:
        return config.data_path.parent
    return FALLBACK_BASE_DIR


def build_engine_env(
    config: EasylabConfig,
    lab_config: LabConfig,
    job_dir: Path,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """
    Build the environment map for one engine invocation.

    Cache locations already set in the process environment are kept so
    every job shares them; anything unset lives under derive_base_dir().
    """
    environ = os.environ if environ is None else environ
    base_dir = derive_base_dir(config, environ)
    gopath = environ.get("GOPATH") or str(base_dir / "go")

    env = {
        "OVH_APPLICATION_KEY": lab_config.ovh_application_key,
        "OVH_APPLICATION_SECRET": lab_config.ovh_application_secret,
        "OVH_CONSUMER_KEY": lab_config.ovh_consumer_key,
        "OVH_SERVICE_NAME": lab_config.ovh_service_name,
        "OVH_ENDPOINT": lab_config.ovh_endpoint,
        "PULUMI_BACKEND_URL": f"file://{job_dir}",
        "PULUMI_CONFIG_PASSPHRASE": config.config_passphrase,
        "PULUMI_SKIP_UPDATE_CHECK": "true",
        "PULUMI_DISABLE_AUTOMATIC_PLUGIN_ACQUISITION": "true",
        "PULUMI_HOME": environ.get("PULUMI_HOME") or str(base_dir / ".pulumi"),
        "GOPATH": gopath,
        "GOMODCACHE": environ.get("GOMODCACHE") or str(Path(gopath) / "pkg" / "mod"),
        "GOCACHE": environ.get("GOCACHE") or str(base_dir / "go-build"),
        "GOFLAGS": environ.get("GOFLAGS") or "-mod=mod",
        "GOWORK": "off",
    }
    return env


def subprocess_env(overlay: Mapping[str, str]) -> dict[str, str]:
    """Full environment for a child process: os.environ plus `overlay`."""
    env = dict(os.environ)
    env.update(overlay)
    return env


@contextmanager
def scoped_environ(overlay: Mapping[str, str]) -> Iterator[None]:
    """
    Overlay `overlay` onto os.environ for the duration of the block.

    Prior values are restored (or removed) on every exit path. Overlays are
    serialized by a process-wide lock, so two blocks never interleave.
    """
    with _OVERLAY_LOCK:
        saved: dict[str, Optional[str]] = {key: os.environ.get(key) for key in overlay}
        try:
            os.environ.update(overlay)
            yield
        finally:
            for key, value in saved.items():
                if value is None:
                    os.environ.pop(key, None)
                else:
                    os.environ[key] = value
