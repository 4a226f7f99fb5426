"""
Domain exceptions for the harmonization engine.

Services raise these; routers translate them into HTTP responses.
"""


class HarmonizationError(Exception):
    """Base class for harmonization engine errors."""


class ValidationError(HarmonizationError):
    """Malformed input: self-mapping, missing ids, unknown framework. Never retried."""


class NotFoundError(HarmonizationError):
    """Referenced control or mapping does not exist."""


class ConflictError(HarmonizationError):
    """A mapping already exists for the unordered control pair."""

    def __init__(self, message: str, existing_id: int | None = None):
        super().__init__(message)
        self.existing_id = existing_id


class ScorerFailure(HarmonizationError):
    """The similarity scorer could not score a pair (bad input, bad output, remote error)."""


class ScorerTimeoutError(ScorerFailure):
    """The similarity scorer did not answer within the per-pair timeout."""


class PartialHarmonizationFailure(HarmonizationError):
    """Every target framework failed during harmonize-all; no partial results exist."""

    def __init__(self, message: str, errors: list | None = None):
        super().__init__(message)
        self.errors = errors or []


class PersistenceError(HarmonizationError):
    """Store-level I/O failure that aborted a whole write batch."""
