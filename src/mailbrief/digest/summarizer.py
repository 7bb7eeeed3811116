"""Summarization capability.

Exactly one summarizer is active at a time, chosen by
``summarizer_backend``:
- ``ollama``: abstractive digest written by a local LLM
- ``markdown``: extractive digest (subjects, senders, first lines)
"""

from __future__ import annotations

from typing import Protocol

import structlog

from mailbrief.config import Settings
from mailbrief.exceptions import OllamaConnectionError, OllamaInferenceError, SummarizationError
from mailbrief.models import ContentFormat, DigestContent, Message, SubscriberContext
from mailbrief.ollama import OllamaClient

logger = structlog.get_logger()

EXCERPT_CHARS = 280
PROMPT_BODY_CHARS = 1200


class Summarizer(Protocol):
    async def summarize(self, messages: list[Message], context: SubscriberContext) -> DigestContent:
        ...


def digest_subject(messages: list[Message], context: SubscriberContext) -> str:
    count = len(messages)
    noun = "message" if count == 1 else "messages"
    if context.highlight_ids:
        return f"Your weekly digest: {count} new {noun}, {len(context.highlight_ids)} on your topics"
    return f"Your weekly digest: {count} new {noun}"


def _excerpt(text: str, limit: int) -> str:
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 1].rstrip() + "…"


class MarkdownSummarizer:
    """Extractive digest: highlighted messages first, then everything else."""

    async def summarize(self, messages: list[Message], context: SubscriberContext) -> DigestContent:
        highlighted = set(context.highlight_ids)
        top = [m for m in messages if m.provider_id in highlighted]
        rest = [m for m in messages if m.provider_id not in highlighted]

        greeting = f"Hi {context.display_name}," if context.display_name else "Hi,"
        lines = [greeting, "", f"Here is what arrived since your last digest ({len(messages)} messages).", ""]

        if top:
            lines.append(f"## On your topics ({', '.join(context.topics)})")
            lines.append("")
            lines.extend(self._render(m) for m in top)
            lines.append("")

        if rest:
            lines.append("## Everything else" if top else "## New messages")
            lines.append("")
            lines.extend(self._render(m) for m in rest)
            lines.append("")

        return DigestContent(
            subject=digest_subject(messages, context),
            body="\n".join(lines).rstrip() + "\n",
            content_format=ContentFormat.MARKDOWN,
        )

    def _render(self, message: Message) -> str:
        subject = message.subject.strip() or "(no subject)"
        line = f"- **{subject}** from {message.sender or 'unknown sender'} ({message.received_at:%a %d %b})"
        excerpt = _excerpt(message.body_text, EXCERPT_CHARS)
        if excerpt:
            line += f"\n  {excerpt}"
        return line


def build_digest_prompt(messages: list[Message], context: SubscriberContext) -> str:
    """Build the digest prompt.

    Response contract: markdown only, no preamble.
    """

    highlighted = set(context.highlight_ids)
    blocks: list[str] = []
    for i, m in enumerate(messages, start=1):
        marker = " [TOPIC MATCH]" if m.provider_id in highlighted else ""
        blocks.append(
            f"Message {i}{marker}\n"
            f"From: {m.sender or 'unknown'}\n"
            f"Subject: {m.subject or '(no subject)'}\n"
            f"Received: {m.received_at.isoformat()}\n"
            f"{_excerpt(m.body_text, PROMPT_BODY_CHARS)}"
        )

    topics = ", ".join(context.topics) if context.topics else "(none)"
    return (
        "You are writing a weekly email digest for one reader.\n\n"
        "Summarize the messages below into a short markdown digest.\n"
        "Group related messages. Lead with messages marked [TOPIC MATCH].\n"
        "Mention every message at least once; do NOT invent facts, dates or amounts.\n"
        "Keep it under 400 words.\n\n"
        f"Reader: {context.display_name or context.address}\n"
        f"Reader topics: {topics}\n\n"
        "Messages:\n\n"
        + "\n\n---\n\n".join(blocks)
        + "\n\nRespond ONLY with the markdown digest body.\n"
    )


class OllamaSummarizer:
    """Abstractive digest written by the configured Ollama model."""

    def __init__(self, settings: Settings, client: OllamaClient | None = None) -> None:
        self._settings = settings
        self._client = client or OllamaClient(settings)

    async def summarize(self, messages: list[Message], context: SubscriberContext) -> DigestContent:
        prompt = build_digest_prompt(messages, context)
        try:
            data = await self._client.generate(prompt, model=self._settings.ollama_model)
        except (OllamaConnectionError, OllamaInferenceError) as exc:
            raise SummarizationError(f"Digest generation failed: {exc}") from exc

        body = str(data.get("response") or "").strip()
        if not body:
            raise SummarizationError("Digest generation returned an empty response")

        logger.info(
            "digest_summarized",
            subscriber_id=context.subscriber_id,
            messages=len(messages),
            body_length=len(body),
        )
        return DigestContent(
            subject=digest_subject(messages, context),
            body=body + "\n",
            content_format=ContentFormat.MARKDOWN,
        )


def build_summarizer(settings: Settings) -> Summarizer:
    if settings.summarizer_backend == "markdown":
        return MarkdownSummarizer()
    return OllamaSummarizer(settings)
