"""Custom exceptions for mailbrief.

The hierarchy mirrors how failures are handled by the background loops:
transient errors are retried with backoff, a cursor-invalid signal triggers
a bounded resync, authentication failures stop the affected loop.
"""


class MailbriefError(Exception):
    """Base exception for all mailbrief errors."""


class TransientError(MailbriefError):
    """Network, timeout or rate-limit failure that is safe to retry."""


class CursorInvalidError(MailbriefError):
    """The mailbox rejected the sync cursor (history truncated or expired)."""


class AuthenticationError(MailbriefError):
    """Exception raised for authentication failures."""


class ConfigurationError(MailbriefError):
    """Exception raised for configuration related errors."""


class GmailAPIError(MailbriefError):
    """Exception raised for non-retryable Gmail API errors."""


class EmbeddingUnavailableError(TransientError):
    """The embedding backend could not produce a vector right now."""


class OllamaConnectionError(TransientError):
    """Exception raised when unable to connect to Ollama."""


class OllamaInferenceError(MailbriefError):
    """Exception raised when Ollama inference fails."""


class SummarizationError(MailbriefError):
    """The summarizer failed to produce digest content."""


class DeliveryError(MailbriefError):
    """The mail transport did not confirm delivery."""


class DataIntegrityError(MailbriefError):
    """A derived record references data that does not exist."""
