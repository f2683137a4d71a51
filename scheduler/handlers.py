"""
Task handler registry.

One handler per TaskType. CUSTOM tasks carry ``{"action": name, "params": {...}}``
and are routed to an explicitly registered named action; nothing outside
the allow-list can be invoked.

A handler fails by raising (or by returning False). Any other return
value counts as success.
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable, Optional

from models.errors import TaskExecutionError
from models.schemas import Task, TaskType

logger = structlog.get_logger()

TaskHandler = Callable[[Task], Awaitable[Any]]
ActionHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class TaskHandlerRegistry:

    def __init__(self):
        self._handlers: dict[TaskType, TaskHandler] = {TaskType.CUSTOM: self._run_custom_action}
        self._actions: dict[str, ActionHandler] = {}

    def register(self, task_type: TaskType, handler: TaskHandler):
        self._handlers[TaskType(task_type)] = handler
        logger.debug("task_handler_registered", task_type=TaskType(task_type).value)

    def get(self, task_type: TaskType) -> Optional[TaskHandler]:
        return self._handlers.get(task_type)

    def register_action(self, name: str, handler: ActionHandler):
        self._actions[name] = handler
        logger.debug("custom_action_registered", action=name)

    def has_action(self, name: str) -> bool:
        return name in self._actions

    @property
    def actions(self) -> list[str]:
        return sorted(self._actions)

    async def _run_custom_action(self, task: Task) -> Any:
        name = task.payload.get("action")
        action = self._actions.get(name)
        if action is None:
            raise TaskExecutionError(f"Unknown custom action: {name}", retryable=False)
        return await action(task.payload.get("params") or {})
