"""Errors raised by the workflow engine and template catalog."""


class WorkflowError(Exception):
    """Base class for workflow engine errors"""

    pass


class NotFoundError(WorkflowError):
    """Raised when a referenced template, step or workflow does not exist"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStateError(WorkflowError):
    """Raised when an entity exists but its state forbids the requested transition"""

    def __init__(self, message: str, current_state: str = None):
        self.current_state = current_state
        super().__init__(message)


class ConcurrentModificationError(WorkflowError):
    """Raised when a row was changed by another transaction between read and write"""

    pass
