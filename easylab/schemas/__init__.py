"""
easylab.schemas - Data structures for lab jobs.

LabConfig -> Job (status, transcript, results)

Lifecycle:
1. LabConfig: validated lab configuration snapshot supplied by the caller
2. Job: tracked attempt to preview, provision or destroy the lab described
   by its LabConfig, moved through JobStatus by the execution driver
3. PlatformResult: Coder access captured after a successful apply
"""

from .lab_config import LabConfig, CREDENTIAL_FIELDS
from .job import (
    ALLOWED_TRANSITIONS,
    PERSISTABLE_STATUSES,
    Job,
    JobStatus,
    PlatformResult,
)

__all__ = [
    "LabConfig",
    "CREDENTIAL_FIELDS",
    "Job",
    "JobStatus",
    "PlatformResult",
    "ALLOWED_TRANSITIONS",
    "PERSISTABLE_STATUSES",
]
