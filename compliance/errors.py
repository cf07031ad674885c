"""Exception taxonomy for the compliance engine.

Only structural problems are fatal. Bad numbers on a document degrade to a
zero contribution, and ambiguous reconciliation outcomes are surfaced as
OverrideRequests rather than raised.
"""


class ComplianceError(Exception):
    """Base class for all engine errors."""


class RecoverableDataError(ComplianceError):
    """A document field is missing or not a number.

    Raised by the coercion helpers and caught by the income calculator,
    which logs it and treats the field as zero.
    """

    def __init__(self, field: str, value: object):
        self.field = field
        self.value = value
        super().__init__(f"{field}: unusable numeric value {value!r}")


class IntegrityViolation(ComplianceError):
    """Referential or structural corruption. Rolls back the whole operation."""


class InvalidTransition(ComplianceError):
    """A state-machine event is not allowed from the current state."""

    def __init__(self, state, event, detail: str | None = None):
        self.state = state
        self.event = event
        message = f"cannot apply {getattr(event, 'value', event)} to {getattr(state, 'value', state)}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class OverrideError(ComplianceError):
    """An override request cannot be created or resolved as asked."""


class NotFound(ComplianceError):
    """A lookup by id found nothing."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
