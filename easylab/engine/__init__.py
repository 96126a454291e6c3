"""
easylab.engine - Drive Pulumi for lab jobs.

ExecutionDriver prepares a per-job working directory (JobWorkspace), builds
the job's engine environment, selects or creates its stack and runs
preview / up / destroy through PulumiEngine, extracting results from the
stack outputs.
"""

from .driver import ExecutionDriver
from .prewarm import DependencyPrewarmer
from .pulumi_engine import PulumiEngine
from .workspace import JobWorkspace

__all__ = [
    "ExecutionDriver",
    "DependencyPrewarmer",
    "PulumiEngine",
    "JobWorkspace",
]
