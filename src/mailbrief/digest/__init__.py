"""Weekly digests: subscribers, pending records, summarization and delivery."""

from .pending import PendingDigestRepository
from .scheduler import CycleReport, DigestOutcome, DigestScheduler, DigestState, DigestStatus
from .subscribers import SqlSubscriberRegistry
from .summarizer import MarkdownSummarizer, OllamaSummarizer, Summarizer, build_summarizer
from .transport import MailTransport, SmtpTransport

__all__ = [
    "CycleReport",
    "DigestOutcome",
    "DigestScheduler",
    "DigestState",
    "DigestStatus",
    "MailTransport",
    "MarkdownSummarizer",
    "OllamaSummarizer",
    "PendingDigestRepository",
    "SmtpTransport",
    "SqlSubscriberRegistry",
    "Summarizer",
    "build_summarizer",
]
