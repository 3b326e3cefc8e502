"""
Error taxonomy for the narrative generation pipeline

Generation errors are raised by GenerationClient and recovered by the
orchestrator's fallback chain. Validation problems are reported as
ValidationIssue codes rather than raised; the exception classes below carry
those codes so the orchestrator can surface them in diagnostics.

DurableStorageError is logged and swallowed by StoryCache and never blocks
returning an in-memory result.
"""

from typing import Optional


class NarrativeError(Exception):
    """Base class for all pipeline errors"""

    code = "narrative_error"


# =========================================================================
# GENERATION ERRORS
# =========================================================================

class GenerationError(NarrativeError):
    """Base class for failures of the external text generator"""

    code = "generation_error"
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class OfflineError(GenerationError):
    """No network path; no request was attempted"""

    code = "offline"

    def __init__(self, message: str = "Device is offline"):
        super().__init__(message)


class GenerationTimeoutError(GenerationError):
    """A generation attempt (or the whole request) ran out of time"""

    code = "timeout"
    retryable = True


class TransientServiceError(GenerationError):
    """5xx, connection reset, empty response and similar recoverable failures"""

    code = "transient_service_error"
    retryable = True


class RateLimitError(TransientServiceError):
    """Raised when a rate limit (429) is detected"""

    code = "rate_limited"

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        self.provider = provider
        self.retry_after = retry_after
        super().__init__(f"Rate limit hit for {provider}", status_code=429)


class NonRetryableGenerationError(GenerationError):
    """Malformed request, authentication failure and other 4xx rejections"""

    code = "rejected"


class ContentPolicyError(NonRetryableGenerationError):
    """The generator refused the prompt on content-policy grounds"""

    code = "content_policy"


# =========================================================================
# VALIDATION ERRORS
# =========================================================================

class ValidationFailure(NarrativeError):
    """Base class for validation outcomes raised out of the orchestrator's VALIDATE state"""

    code = "validation_error"


class ParseError(ValidationFailure):
    """Response is not structurally recoverable"""

    code = "parse_error"


class SchemaError(ValidationFailure):
    """Missing or malformed required field"""

    code = "schema_error"


class ConceptCoverageError(ValidationFailure):
    """A requested learning concept is not covered by the text"""

    code = "concept_coverage"


class LengthError(ValidationFailure):
    """Narrative length outside the contract bounds (soft)"""

    code = "length_out_of_bounds"


# =========================================================================
# STORAGE ERRORS
# =========================================================================

class DurableStorageError(NarrativeError):
    """Durable cache tier failure (best-effort, never fatal)"""

    code = "durable_storage"
