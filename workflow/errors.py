"""Errors raised by the workflow engine."""


class WorkflowError(Exception):
    """Base error for workflow automation."""


class EntityNotFoundError(WorkflowError, LookupError):
    """A referenced entity id does not resolve."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidInputError(WorkflowError, ValueError):
    """Input outside the accepted domain (negative amounts, unknown status, ...)."""


class ConsistencyError(WorkflowError):
    """A uniqueness backstop tripped; a concurrent transaction already produced the derivative."""
