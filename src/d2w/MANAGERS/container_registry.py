"""
In-memory table of container records.
"""
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from ..exceptions import InvalidTransitionError
from ..MODELS.container_record import ContainerRecord, ContainerStatus
from ..MODELS.container_spec import ContainerSpec


class ContainerRegistry:
    """
    Keeps one record per container ever registered. Records are never removed;
    they only change through status transitions.
    """
    def __init__(self):
        self._records: Dict[str, ContainerRecord] = {}
        self._lock = threading.Lock()

    def register(self, spec: ContainerSpec) -> ContainerRecord:
        """
        Adds a record in the 'created' state.

        :raises ValueError: If the id is already registered.
        """
        record = ContainerRecord(id=spec.id, image=spec.image_name)
        with self._lock:
            if spec.id in self._records:
                raise ValueError(f"Container {spec.id} is already registered")
            self._records[spec.id] = record
        return record.model_copy()

    def get(self, container_id: str) -> Optional[ContainerRecord]:
        with self._lock:
            record = self._records.get(container_id)
            return record.model_copy() if record else None

    def transition(self, container_id: str, status: ContainerStatus, **fields) -> Optional[ContainerRecord]:
        """
        Moves a record to a new status.

        :param container_id: The container.
        :param status: Target status.
        :param fields: Extra record fields to set (exit_code, error).
        :return: A copy of the updated record, or None for an unknown id.
        :raises InvalidTransitionError: If the record cannot reach that status.
        """
        with self._lock:
            record = self._records.get(container_id)
            if record is None:
                return None
            if not record.can_transition(status):
                raise InvalidTransitionError(
                    f"Container {container_id} cannot go from {record.status.value} to {status.value}"
                )
            previous = record.status
            record.status = status
            for name, value in fields.items():
                setattr(record, name, value)
            if status.is_terminal:
                record.finished_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            updated = record.model_copy()
        logger.debug("Container {}: {} -> {}", container_id, previous.value, status.value)
        return updated

    def list(self, include_all: bool = False) -> List[ContainerRecord]:
        """
        Lists records in registration order.

        :param include_all: Include records that are not running.
        """
        with self._lock:
            return [
                r.model_copy() for r in self._records.values()
                if include_all or r.status == ContainerStatus.RUNNING
            ]
