"""Centralized exception hierarchy for Narrator.

Exception Hierarchy:

    NarratorError (base for all application errors)
    ├── LLMError (LLM/Ollama related errors)
    │   ├── LLMConnectionError (connection failures)
    │   └── LLMGenerationError (generation failures after retries)
    ├── ImageGenerationError (image provider failures)
    ├── ConfigError (configuration parsing/validation failures)
    ├── PipelineError (generation pipeline misuse)
    └── GenerationCancelledError (user cancelled generation)

Usage:
    from src.utils.exceptions import LLMError, GenerationCancelledError

    try:
        await services.translation.translate_narration(text, "fr", False)
    except GenerationCancelledError:
        logger.info("Translation cancelled")
    except LLMError:
        logger.error("Translation failed")
"""

import logging

logger = logging.getLogger(__name__)


def summarize_llm_error(error: BaseException, max_length: int = 300) -> str:
    """Create a concise summary of an LLM-related exception for logging.

    Ollama response errors and validation failures can carry the full raw
    model output in their message. This keeps log lines readable.

    Args:
        error: The exception to summarize.
        max_length: Maximum length of the summary string.

    Returns:
        A concise error summary suitable for log messages.
    """
    error_type = type(error).__name__
    msg = str(error)

    if not msg:
        return error_type

    if len(msg) <= max_length:
        return msg

    return f"{msg[:max_length]}... [{len(msg) - max_length} chars truncated]"


class NarratorError(Exception):
    """Base exception for all Narrator errors.

    All custom exceptions should inherit from this class to allow
    catching all application-specific errors with a single except clause.
    """

    pass


class LLMError(NarratorError):
    """Base exception for LLM-related errors.

    Raised when any LLM operation fails. Subclasses provide more
    specific error types.
    """

    pass


class LLMConnectionError(LLMError):
    """Raised when unable to connect to Ollama.

    This typically indicates the Ollama server is not running or
    the connection was refused.
    """

    pass


class LLMGenerationError(LLMError):
    """Raised when generation fails after retries.

    This indicates the LLM request failed despite multiple retry
    attempts. Check logs for specific failure reasons.
    """

    pass


class ImageGenerationError(NarratorError):
    """Raised when the image provider rejects or fails a request.

    Attributes:
        status_code: HTTP status code returned by the provider, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        """Initialize ImageGenerationError with the provider status.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code returned by the provider.
        """
        super().__init__(message)
        self.status_code = status_code


class ConfigError(NarratorError):
    """Raised when configuration parsing or validation fails.

    This indicates issues with settings files or request files that
    cannot be loaded or are invalid.
    """

    pass


class PipelineError(NarratorError):
    """Raised when the generation pipeline is used incorrectly.

    For example, reading a phase or pipeline result before its event
    stream has been fully consumed.
    """

    pass


class GenerationCancelledError(NarratorError):
    """Raised when generation is cancelled by the user.

    Services raise this from inside a long-running operation when they
    notice the request's cancellation token. Phases translate it into an
    ``aborted`` event rather than an error.

    Attributes:
        operation: Name of the operation that was interrupted, if known.
    """

    def __init__(self, message: str = "Generation cancelled", operation: str | None = None):
        """Initialize GenerationCancelledError.

        Args:
            message: Human-readable error message.
            operation: Name of the interrupted operation.
        """
        super().__init__(message)
        self.operation = operation
        logger.debug("GenerationCancelledError initialized: operation=%s", operation)
