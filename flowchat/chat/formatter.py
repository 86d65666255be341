"""Thread -> OutboundRequest conversion."""

from __future__ import annotations

from itertools import takewhile
from typing import Any, Iterable, Mapping

from flowchat.chat.models import (
    DEFAULT_INPUT_KEY,
    DEFAULT_SESSION_KEY,
    Attachment,
    ImagePart,
    OutboundRequest,
    Thread,
)
from flowchat.kernel.errors import ValidationError

DEFAULT_MAX_INPUT_LENGTH = 4000


class MessageFormatter:
    """Builds the outbound envelope for the most recent user turn.

    Pure transform: the thread is read, never mutated, and nothing is sent.
    """

    def __init__(self, *, max_input_length: int = DEFAULT_MAX_INPUT_LENGTH) -> None:
        self.max_input_length = max_input_length

    def format(
        self,
        thread: Thread,
        *,
        session_id: str,
        input_key_name: str = DEFAULT_INPUT_KEY,
        session_key_name: str = DEFAULT_SESSION_KEY,
        context: Mapping[str, Any] | None = None,
        attachments: Iterable[Attachment] = (),
    ) -> OutboundRequest:
        message = thread.last_user_message()
        if message is None:
            raise ValidationError(
                message="There is no user message to send.",
                code="message.missing",
            )

        text = message.text
        if len(text) > self.max_input_length:
            raise ValidationError(
                message="Your message is too long. Please shorten it.",
                code="message.too_long",
                meta={"length": len(text), "max_length": self.max_input_length},
            )

        refs = self._attachment_refs(message.content, message.attachments, attachments)
        if not text.strip() and not refs:
            raise ValidationError(message="Please enter a message.", code="message.empty")

        history = [
            {"role": earlier.role, "content": earlier.text}
            for earlier in takewhile(lambda candidate: candidate is not message, thread.messages)
        ]

        return OutboundRequest(
            session_id=session_id,
            text=text,
            context=dict(context or {}),
            attachments=refs,
            history=history,
            input_key_name=input_key_name,
            session_key_name=session_key_name,
        )

    @staticmethod
    def _attachment_refs(parts, message_attachments, staged) -> list[dict[str, Any]]:
        refs: list[dict[str, Any]] = []
        seen: set[str] = set()

        def add(attachment: Attachment) -> None:
            if attachment.url in seen:
                return
            seen.add(attachment.url)
            refs.append(attachment.to_ref())

        for part in parts:
            if isinstance(part, ImagePart):
                add(
                    Attachment(
                        url=part.url,
                        mime_type=part.mime_type,
                        size=part.size,
                        filename=part.filename,
                    )
                )
        for attachment in message_attachments:
            add(attachment)
        for attachment in staged:
            add(attachment)
        return refs
