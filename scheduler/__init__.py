"""
Delayed task scheduling on top of the message broker.

Tasks are persisted first, then published either straight to the
ready queue or through the delay exchange. A periodic sweep republishes
anything overdue, so broker loss never strands a task.
"""
from scheduler.handlers import TaskHandlerRegistry
from scheduler.service import DelayedTaskScheduler, SCHEDULED_TASKS_QUEUE

__all__ = ["DelayedTaskScheduler", "TaskHandlerRegistry", "SCHEDULED_TASKS_QUEUE"]
