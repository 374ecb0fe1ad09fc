"""Custom exceptions for the cover art pipeline."""


class PipelineError(Exception):
    """Base class for cover art pipeline failures."""

    def __init__(self, message: str = "", input_tokens: int = 0, output_tokens: int = 0):
        """Initialize pipeline error.

        Args:
            message: Human-readable error message
            input_tokens: LLM prompt tokens billed before the failure
            output_tokens: LLM completion tokens billed before the failure
        """
        super().__init__(message)
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens


class PipelineTimeoutError(PipelineError):
    """Raised at a stage boundary once the overall deadline has passed."""

    pass


class ValidationError(PipelineError, ValueError):
    """Raised when an LLM response violates structural constraints."""

    pass


class ConvergenceError(ValidationError):
    """Raised when convergence returns no candidates or an out-of-range selection."""

    pass


class ExtractionError(PipelineError):
    """Raised when theme extraction cannot produce a usable object."""

    pass


class APIError(PipelineError):
    """Raised when an external API call fails."""

    pass


class LLMError(APIError):
    """Raised when the OpenAI API fails or returns unusable output."""

    pass


class ImageGenerationError(APIError):
    """Raised when Replicate fails, is canceled, or times out."""

    pass


class CompressionError(PipelineError):
    """Raised when an image cannot be brought under the upload byte ceiling."""

    pass


class TokenRefreshError(PipelineError):
    """Raised when a stored refresh token cannot be decrypted or exchanged."""

    pass


class StorageError(PipelineError):
    """Raised when the relational store or blob store rejects a write."""

    pass
