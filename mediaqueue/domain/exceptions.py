"""
Defines custom exception types for the MediaQueue application.

These exceptions allow for specific error handling throughout the orchestration
core. All of them are local to one task: none of them is allowed to abort the
scheduler of a domain or the work of the other domain.

All custom exceptions inherit from the base `MediaQueueException`.
"""


class MediaQueueException(Exception):
    """Base class for all custom exceptions in the MediaQueue application."""

    pass


# --- Persistence ---
class TaskStoreError(MediaQueueException):
    """
    Raised when a task list file cannot be read, parsed or written.

    The in-memory change that triggered the write is discarded by the caller and
    the file on disk keeps its previous content. Nothing retries silently.
    """

    pass


# --- Lookup / Validation ---
class TaskNotFoundError(MediaQueueException):
    """Raised when a task id is not present in the domain's store."""

    pass


class InvalidTaskError(MediaQueueException):
    """Raised when an enqueue request is rejected (e.g. the source file does not exist)."""

    pass


class InvalidTaskStateError(MediaQueueException):
    """Raised when an operation is not allowed for the task's current status."""

    pass


class SchedulerBusyError(MediaQueueException):
    """
    Raised when a caller asks to start a specific waiting task while the
    domain already has an active one. Each domain runs at most one task.
    """

    pass


# --- External Tools ---
class ToolNotFoundError(MediaQueueException):
    """Raised when a configured external executable cannot be located."""

    pass


class TaskLaunchError(MediaQueueException):
    """
    Raised when the child process for a task could not be spawned.

    The scheduler marks the task `failed` with the text of this exception and
    moves on to the next waiting task.
    """

    pass


class LocatorResolutionError(MediaQueueException):
    """Raised when the fetch tool could not turn a descriptor file into a locator."""

    pass
