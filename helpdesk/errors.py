"""Exceptions raised by the assignment engine.

ValidationError and NotFoundError are terminal and reported to the caller.
InfrastructureError wraps datastore failures; nothing here is retried.
Running out of capacity is not an error: it is what sends an incident to a
pending status.
"""

from contextlib import contextmanager


class EngineError(Exception):
    """Base class for engine errors."""


class ValidationError(EngineError):
    """Request cannot be honoured as asked."""


class NotFoundError(EngineError):
    """Referenced record does not exist."""


class InfrastructureError(EngineError):
    """Datastore or other backing service failed."""


class CategoryNotFound(ValidationError):
    def __init__(self, category: str):
        super().__init__(f"Category '{category}' not found")
        self.category = category


class TeamNotFound(ValidationError):
    def __init__(self, category: str):
        super().__init__(f"No team found for category '{category}'")
        self.category = category


class SubCategoryNotFound(ValidationError):
    def __init__(self, category: str):
        super().__init__(f"No sub-category found for category '{category}'")
        self.category = category


class TechnicianNotFound(ValidationError):
    def __init__(self, technician_id: str):
        super().__init__(f"Technician {technician_id} not found or not active")
        self.technician_id = technician_id


class TechnicianNotSkilled(ValidationError):
    pass


class TechnicianAtCapacity(ValidationError):
    pass


class NoCurrentHandler(ValidationError):
    pass


class TeamAdminNotFound(ValidationError):
    pass


class IncidentNotFound(NotFoundError):
    def __init__(self, incident_number: str):
        super().__init__(f"Incident with incident_number {incident_number} not found")
        self.incident_number = incident_number


@contextmanager
def wrap_infrastructure(operation: str):
    """Re-raise engine errors untouched; wrap anything else as InfrastructureError."""
    try:
        yield
    except EngineError:
        raise
    except Exception as e:
        raise InfrastructureError(f"Failed to {operation}: {e}") from e
