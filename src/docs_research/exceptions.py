"""Custom exceptions for the documentation research pipeline."""


class DocsResearchError(Exception):
    """Base exception for documentation research errors."""

    pass


class FatalConfigError(DocsResearchError):
    """Raised when a run cannot start: no resolvable targets or an unwritable output path."""

    pass


class FetchFailure(DocsResearchError):
    """Raised by a single fetch attempt. Recorded in the FetchResult, never fatal to the run."""

    def __init__(self, message: str, *, transient: bool, status_code: int | None = None, retry_after: float | None = None):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code
        self.retry_after = retry_after


class ExtractionSkip(DocsResearchError):
    """Raised when a document is malformed or binary and yields no extractions."""

    pass


class ResolverExhausted(DocsResearchError):
    """Raised when the resolver has no further supplemental targets to offer."""

    def __init__(self, message: str, *, passes_used: int):
        super().__init__(message)
        self.passes_used = passes_used


class BundleIncompleteError(DocsResearchError):
    """Raised by the downstream gate when a bundle is incomplete and no override was given."""

    pass
