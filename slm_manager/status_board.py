from typing import Callable, Dict, Optional

from .schemas import InstanceStatus


class StatusBoard:
    """Latest observed status per instance id.

    Each id also carries a generation counter. Stops, reconfigures and removals
    bump it, so a health result stamped with an older generation is stale.
    """

    def __init__(self, on_change: Optional[Callable[[str], None]] = None) -> None:
        self.on_change = on_change
        self._statuses: Dict[str, InstanceStatus] = {}
        self._generations: Dict[str, int] = {}

    def get(self, instance_id: str) -> Optional[InstanceStatus]:
        return self._statuses.get(instance_id)

    def set(self, status: InstanceStatus) -> None:
        self._statuses[status.id] = status
        if self.on_change is not None:
            self.on_change(status.id)

    def set_if_current(self, status: InstanceStatus, generation: int) -> bool:
        if self.generation(status.id) != generation:
            return False
        self.set(status)
        return True

    def generation(self, instance_id: str) -> int:
        return self._generations.get(instance_id, 0)

    def bump(self, instance_id: str) -> int:
        generation = self.generation(instance_id) + 1
        self._generations[instance_id] = generation
        return generation

    def remove(self, instance_id: str) -> Optional[InstanceStatus]:
        self.bump(instance_id)
        removed = self._statuses.pop(instance_id, None)
        if removed is not None and self.on_change is not None:
            self.on_change(instance_id)
        return removed

    def is_running(self, instance_id: str) -> bool:
        status = self._statuses.get(instance_id)
        return bool(status and status.running)

    def snapshot(self) -> Dict[str, InstanceStatus]:
        return {key: status.model_copy() for key, status in self._statuses.items()}
