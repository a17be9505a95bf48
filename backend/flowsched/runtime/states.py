"""Status vocabularies for executions, tasks and work items."""

from __future__ import annotations

# Execution
EXEC_PENDING = "pending"
EXEC_RUNNING = "running"
EXEC_COMPLETED = "completed"
EXEC_FAILED = "failed"
EXEC_CANCELLED = "cancelled"
EXEC_TERMINAL = frozenset({EXEC_COMPLETED, EXEC_FAILED, EXEC_CANCELLED})

# Task: pending → queued → processing → completed | failed; a retryable
# provider error hands a processing task back to queued for the retry
TASK_PENDING = "pending"
TASK_QUEUED = "queued"
TASK_PROCESSING = "processing"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"
TASK_TERMINAL = frozenset({TASK_COMPLETED, TASK_FAILED})
TASK_IN_FLIGHT = frozenset({TASK_QUEUED, TASK_PROCESSING})

# Work item
ITEM_NODE_EXECUTION = "node_execution"
ITEM_POLL_STATUS = "poll_provider_status"
ITEM_QUEUED = "queued"
ITEM_RUNNING = "running"
ITEM_RETRYING = "retrying"
ITEM_DONE = "done"
ITEM_FAILED = "failed"
ITEM_CANCELLED = "cancelled"
ITEM_OPEN = frozenset({ITEM_QUEUED, ITEM_RUNNING, ITEM_RETRYING})

CANCELLED_BY_USER = "Cancelled by user"
STOPPED_BY_USER = "Stopped by user"
