from collections.abc import Iterable
from dataclasses import asdict, dataclass
from typing import Any

from labcore.models.request import InstanceState


@dataclass(frozen=True)
class RequestAggregate:
    pending: int
    in_process: int
    completed: int
    total: int
    overall: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _state_of(instance: Any) -> str:
    state = instance if isinstance(instance, str) else getattr(instance, "state")
    return InstanceState(state).value


def _is_top_level(instance: Any) -> bool:
    return isinstance(instance, str) or getattr(instance, "parent_instance_id", None) is None


def aggregate(instances: Iterable[Any]) -> RequestAggregate:
    """Derive a request's status from its exam instances.

    Only instances attached directly to the request are counted; children of
    a composite are already reflected in their parent's state. The request is
    completed only when every instance is, and any progress at all (something
    in process *or* completed) moves it out of pending. An empty request is
    pending.
    """
    counts = {state.value: 0 for state in InstanceState}
    for instance in instances:
        if not _is_top_level(instance):
            continue
        counts[_state_of(instance)] += 1

    pending = counts[InstanceState.PENDING.value]
    in_process = counts[InstanceState.IN_PROCESS.value]
    completed = counts[InstanceState.COMPLETED.value]
    total = pending + in_process + completed

    if total > 0 and completed == total:
        overall = InstanceState.COMPLETED.value
    elif in_process > 0 or completed > 0:
        overall = InstanceState.IN_PROCESS.value
    else:
        overall = InstanceState.PENDING.value

    return RequestAggregate(pending=pending, in_process=in_process, completed=completed, total=total, overall=overall)
