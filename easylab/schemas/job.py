"""
Job schemas - the unit of work tracked by the registry.

A Job is one tracked attempt to preview, provision or destroy a lab. Its id
and creation time never change; status, output transcript, error and result
fields are mutable and guarded by the record's own reader/writer lock.

Mutation goes through the JobRegistry; the underscore-prefixed mutators
below assume the caller already holds the record's write lock.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from easylab.errors import InvalidStateError
from easylab.rwlock import ReadWriteLock
from easylab.schemas.lab_config import LabConfig
from easylab.utils import utcnow


class JobStatus(str, Enum):
    """Status of a job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    DRY_RUN_COMPLETED = "dry-run-completed"
    FAILED = "failed"
    DESTROYED = "destroyed"

    def is_persistable(self) -> bool:
        """Completed, failed and destroyed jobs are written to disk."""
        return self in PERSISTABLE_STATUSES


PERSISTABLE_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.DESTROYED,
})

# Targets reachable through update_status. FAILED is only reachable through
# set_error and FAILED -> PENDING only through reset_for_retry.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.DRY_RUN_COMPLETED,
        JobStatus.DESTROYED,
    }),
    JobStatus.DRY_RUN_COMPLETED: frozenset({JobStatus.RUNNING}),
    JobStatus.COMPLETED: frozenset({JobStatus.RUNNING}),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING}),
    JobStatus.DESTROYED: frozenset(),
}


@dataclass(frozen=True)
class PlatformResult:
    """Coder platform access captured after a successful apply."""
    url: str = ""
    admin_email: str = ""
    admin_password: str = ""
    session_token: str = ""
    organization_id: str = ""

    def is_empty(self) -> bool:
        return not self.url

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "admin_email": self.admin_email,
            "admin_password": self.admin_password,
            "session_token": self.session_token,
            "organization_id": self.organization_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "PlatformResult":
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError(f"platform result must be an object, got {type(data).__name__}")
        return cls(
            url=data.get("url", ""),
            admin_email=data.get("admin_email", ""),
            admin_password=data.get("admin_password", ""),
            session_token=data.get("session_token", ""),
            organization_id=data.get("organization_id", ""),
        )


class Job:
    """
    A job record.

    Readers use the properties below, which take the record's read lock and
    return copies. The registry mutates the record under its write lock.
    """

    def __init__(
        self,
        job_id: str,
        config: Optional[LabConfig] = None,
        status: JobStatus = JobStatus.PENDING,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        output: Optional[list[str]] = None,
        error: str = "",
        kubeconfig: str = "",
        platform: Optional[PlatformResult] = None,
    ):
        now = utcnow()
        self._id = job_id
        self._created_at = created_at or now
        self._status = status
        self._updated_at = updated_at or self._created_at
        self._output: list[str] = list(output or [])
        self._error = error
        self._config = config or LabConfig()
        self._kubeconfig = kubeconfig
        self._platform = platform or PlatformResult()
        self.lock = ReadWriteLock()

    def __repr__(self) -> str:
        return f"Job(id={self._id}, status={self.status.value})"

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------
    @property
    def id(self) -> str:
        return self._id

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def status(self) -> JobStatus:
        with self.lock.read():
            return self._status

    @property
    def updated_at(self) -> datetime:
        with self.lock.read():
            return self._updated_at

    @property
    def output(self) -> list[str]:
        with self.lock.read():
            return list(self._output)

    @property
    def error(self) -> str:
        with self.lock.read():
            return self._error

    @property
    def config(self) -> LabConfig:
        with self.lock.read():
            return self._config.copy()

    @property
    def stack_name(self) -> str:
        with self.lock.read():
            return self._config.stack_name

    @property
    def kubeconfig(self) -> str:
        with self.lock.read():
            return self._kubeconfig

    @property
    def platform(self) -> PlatformResult:
        with self.lock.read():
            return self._platform

    # ------------------------------------------------------------------
    # Mutators (caller holds the write lock)
    # ------------------------------------------------------------------
    def _touch(self) -> None:
        self._updated_at = utcnow()

    def _transition(self, status: JobStatus) -> None:
        if status == self._status:
            self._touch()
            return
        if status == JobStatus.FAILED:
            raise InvalidStateError(
                f"job {self._id}: status failed can only be set together with an error"
            )
        if status not in ALLOWED_TRANSITIONS[self._status]:
            raise InvalidStateError(
                f"job {self._id}: cannot transition from {self._status.value} to {status.value}"
            )
        if self._status == JobStatus.FAILED:
            self._error = ""
        self._status = status
        self._touch()

    def _append(self, line: str) -> None:
        if self._status in PERSISTABLE_STATUSES:
            raise InvalidStateError(
                f"job {self._id} is {self._status.value}; its transcript is closed"
            )
        self._output.append(line)
        self._touch()

    def _fail(self, message: str) -> None:
        if self._status == JobStatus.DESTROYED:
            raise InvalidStateError(f"job {self._id} is destroyed")
        self._error = message or "unknown error"
        self._status = JobStatus.FAILED
        self._touch()

    def _reset(self) -> None:
        if self._status != JobStatus.FAILED:
            raise InvalidStateError(
                f"job {self._id} is not in failed status (current status: {self._status.value})"
            )
        self._status = JobStatus.PENDING
        self._error = ""
        self._output = []
        self._kubeconfig = ""
        self._platform = PlatformResult()
        self._touch()

    def _set_result(
        self,
        kubeconfig: Optional[str] = None,
        platform: Optional[PlatformResult] = None,
    ) -> None:
        if kubeconfig is not None:
            self._kubeconfig = kubeconfig
        if platform is not None:
            self._platform = platform
        self._touch()

    def _set_config(self, config: LabConfig) -> None:
        self._config = config.copy()
        self._touch()

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output (takes the read lock)."""
        with self.lock.read():
            result: dict[str, Any] = {
                "id": self._id,
                "status": self._status.value,
                "created_at": self._created_at.isoformat(),
                "updated_at": self._updated_at.isoformat(),
                "output": list(self._output),
                "config": self._config.to_dict(),
            }
            if self._error:
                result["error"] = self._error
            if self._kubeconfig:
                result["kubeconfig"] = self._kubeconfig
            if not self._platform.is_empty():
                result["platform"] = self._platform.to_dict()
            return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """
        Deserialize from dictionary, tolerating unknown or missing fields.

        Raises:
            ValueError: If `data` is not a JSON object
        """
        if not isinstance(data, dict):
            raise ValueError(f"job snapshot must be an object, got {type(data).__name__}")
        created_at = _parse_timestamp(data.get("created_at"))
        updated_at = _parse_timestamp(data.get("updated_at"))
        return cls(
            job_id=data["id"],
            config=LabConfig.from_dict(data.get("config")),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            created_at=created_at,
            updated_at=updated_at,
            output=[str(line) for line in data.get("output") or []],
            error=data.get("error") or "",
            kubeconfig=data.get("kubeconfig") or "",
            platform=PlatformResult.from_dict(data.get("platform")),
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    # Snapshots without an offset are taken as UTC
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
