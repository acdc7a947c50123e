"""
Static registry of diagnostic task descriptors.
"""

from typing import Iterable, Iterator, Optional

from .errors import UnknownTaskIds
from .models import TaskDescriptor


class TaskCatalog:
    """
    Immutable, ordered collection of TaskDescriptors.

    Built once at startup and shared read-only by every session.
    """

    def __init__(self, descriptors: Iterable[TaskDescriptor]):
        self._tasks: dict[str, TaskDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._tasks:
                raise ValueError(f"Duplicate task id in catalog: {descriptor.id}")
            self._tasks[descriptor.id] = descriptor

    def list_tasks(self) -> tuple[TaskDescriptor, ...]:
        """All descriptors in registration order."""
        return tuple(self._tasks.values())

    def get(self, task_id: str) -> Optional[TaskDescriptor]:
        return self._tasks.get(task_id)

    def resolve(self, task_ids: Iterable[str]) -> list[TaskDescriptor]:
        """
        Map ids to descriptors, preserving the requested order.

        Raises:
            UnknownTaskIds: listing every requested id missing from the catalog
        """
        task_ids = list(task_ids)
        missing = [tid for tid in task_ids if tid not in self._tasks]
        if missing:
            raise UnknownTaskIds(missing)
        return [self._tasks[tid] for tid in task_ids]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[TaskDescriptor]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)
