"""
Conversation and Request Schemas

The UI runtime owns the thread; the transport only reads a snapshot of it per
run and produces an OutboundRequest whose wire payload is what the automation
endpoint receives.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from flowchat.kernel.ids import new_message_id
from flowchat.kernel.serialization import to_jsonable
from flowchat.kernel.time import utc_now

Role = Literal["user", "assistant", "system"]

DEFAULT_INPUT_KEY = "chatInput"
DEFAULT_SESSION_KEY = "sessionId"
SEND_MESSAGE_ACTION = "sendMessage"


# =============================================================================
# Message Parts
# =============================================================================


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    url: str
    mime_type: str = Field(default="application/octet-stream")
    size: int | None = Field(default=None, ge=0)
    filename: str | None = None


class ToolCallPart(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


Part = Annotated[Union[TextPart, ImagePart, ToolCallPart], Field(discriminator="type")]


# =============================================================================
# Thread
# =============================================================================


class Attachment(BaseModel):
    """A file already uploaded somewhere the automation endpoint can fetch."""

    url: str
    mime_type: str = Field(default="application/octet-stream")
    size: int | None = Field(default=None, ge=0)
    filename: str | None = None

    def to_ref(self) -> dict[str, Any]:
        ref: dict[str, Any] = {"url": self.url, "mimeType": self.mime_type, "size": self.size}
        if self.filename:
            ref["filename"] = self.filename
        return ref


class Message(BaseModel):
    id: str = Field(default_factory=new_message_id)
    role: Role
    content: list[Part] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    attachments: list[Attachment] = Field(default_factory=list)

    @property
    def text(self) -> str:
        """Text parts concatenated in order; other parts are ignored."""
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    @classmethod
    def user(cls, text: str, **kwargs: Any) -> "Message":
        return cls(role="user", content=[TextPart(text=text)], **kwargs)

    @classmethod
    def assistant(cls, text: str, **kwargs: Any) -> "Message":
        return cls(role="assistant", content=[TextPart(text=text)], **kwargs)


class Thread(BaseModel):
    messages: list[Message] = Field(default_factory=list)

    def last_user_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None


# =============================================================================
# Outbound Request
# =============================================================================


class OutboundRequest(BaseModel):
    """Provider-agnostic request envelope for one turn."""

    session_id: str
    text: str
    context: dict[str, Any] = Field(default_factory=dict)
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    history: list[dict[str, str]] = Field(default_factory=list)
    action: str = SEND_MESSAGE_ACTION
    input_key_name: str = DEFAULT_INPUT_KEY
    session_key_name: str = DEFAULT_SESSION_KEY

    def to_payload(self) -> dict[str, Any]:
        """JSON body as the automation endpoint expects it.

        `sessionId` is always present; the configurable session key mirrors it
        so workflows keyed on either name keep their memory. `messageHistory`
        carries the earlier turns for workflows without memory of their own.
        """
        payload: dict[str, Any] = {
            "action": self.action,
            "sessionId": self.session_id,
            self.session_key_name: self.session_id,
            self.input_key_name: self.text,
            "context": to_jsonable(self.context),
            "messageHistory": [dict(entry) for entry in self.history],
        }
        if self.attachments:
            payload["attachments"] = list(self.attachments)
        return payload


# =============================================================================
# Client Profile
# =============================================================================


class ClientProfile(BaseModel):
    """Public, secret-free view of a connection profile.

    This is all a widget ever learns about an instance. `direct_url` is only
    set when the upstream needs no server-held secret.
    """

    instance_id: str
    relay_url: str | None = None
    direct_url: str | None = None
    streaming_enabled: bool = True
    input_key_name: str = DEFAULT_INPUT_KEY
    session_key_name: str = DEFAULT_SESSION_KEY
    max_input_length: int = Field(default=4000, gt=0)
    timeout_seconds: float | None = Field(default=None, gt=0)

    def chat_url(self) -> str:
        if self.direct_url:
            return self.direct_url
        if not self.relay_url:
            raise ValueError(f"Client profile {self.instance_id!r} has no relay or direct URL")
        return f"{self.relay_url.rstrip('/')}/instances/{self.instance_id}/chat"
