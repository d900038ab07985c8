"""Task board collaborator.

The pipeline never owns task storage semantics; it talks to the board
through this narrow interface. RepositoryTaskBoard adapts whichever
repository backend is configured.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Optional

from continuum.core.exceptions import TaskNotFoundError
from continuum.core.models import Task, TaskStatus, TaskUpdate
from continuum.db.base import BaseRepository

logger = logging.getLogger("continuum.tools.task_board")


class TaskBoard(ABC):

    @abstractmethod
    def create_task(self, task: Task) -> Task: ...

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]: ...

    @abstractmethod
    def list_tasks(
        self,
        statuses: Optional[list[TaskStatus]] = None,
        assignee: Optional[str] = None,
    ) -> list[Task]: ...

    @abstractmethod
    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        """Apply update and return the new task. Raises TaskNotFoundError."""

    @abstractmethod
    def delete_task(self, task_id: str) -> bool: ...


class RepositoryTaskBoard(TaskBoard):
    def __init__(self, repository: BaseRepository):
        self.repository = repository

    def create_task(self, task: Task) -> Task:
        created = self.repository.create_task(task)
        logger.info("Created task %s: %s", created.id, created.title)
        return created

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.repository.get_task(task_id)

    def list_tasks(
        self,
        statuses: Optional[list[TaskStatus]] = None,
        assignee: Optional[str] = None,
    ) -> list[Task]:
        return self.repository.list_tasks(statuses=statuses, assignee=assignee)

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        task = self.repository.update_task(task_id, update, datetime.now(UTC))
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def delete_task(self, task_id: str) -> bool:
        deleted = self.repository.delete_task(task_id)
        if deleted:
            logger.info("Deleted task %s", task_id)
        return deleted
