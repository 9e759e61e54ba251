"""
Models for the bookkeeping entry kept for every container the runtime has seen.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional
from pydantic import BaseModel, Field


class ContainerStatus(str, Enum):
    """
    Lifecycle status of a container record.
    """
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ContainerStatus.EXITED, ContainerStatus.FAILED, ContainerStatus.STOPPED)


# created -> running -> exited|failed; created|running -> stopping -> stopped
ALLOWED_TRANSITIONS: Dict[ContainerStatus, FrozenSet[ContainerStatus]] = {
    ContainerStatus.CREATED: frozenset({
        ContainerStatus.RUNNING, ContainerStatus.FAILED, ContainerStatus.STOPPING,
    }),
    ContainerStatus.RUNNING: frozenset({
        ContainerStatus.EXITED, ContainerStatus.FAILED, ContainerStatus.STOPPING,
    }),
    ContainerStatus.STOPPING: frozenset({ContainerStatus.STOPPED}),
    ContainerStatus.EXITED: frozenset(),
    ContainerStatus.FAILED: frozenset(),
    ContainerStatus.STOPPED: frozenset(),
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ContainerRecord(BaseModel):
    """
    A container as listed by the runtime: id, image and status.
    """
    id: str
    image: str
    status: ContainerStatus = ContainerStatus.CREATED
    created_at: str = Field(default_factory=_utcnow)
    finished_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    def can_transition(self, status: ContainerStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]
