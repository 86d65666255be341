"""
Chat Transport Module

Client side of the chat relay: formatting a thread into a request, decoding
the streamed reply into typed events, and classifying failures.
"""

from flowchat.chat.classifier import ClassifiedError, ErrorClassifier
from flowchat.chat.decoder import ChunkDecoder, Framing, decode_stream
from flowchat.chat.events import (
    ErrorKind,
    RunComplete,
    RunError,
    RunStart,
    RunState,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
)
from flowchat.chat.formatter import MessageFormatter
from flowchat.chat.models import Attachment, ClientProfile, Message, OutboundRequest, Thread
from flowchat.chat.transport import Run, TransportClient

__all__ = [
    "Attachment",
    "ChunkDecoder",
    "ClassifiedError",
    "ClientProfile",
    "ErrorClassifier",
    "ErrorKind",
    "Framing",
    "Message",
    "MessageFormatter",
    "OutboundRequest",
    "Run",
    "RunComplete",
    "RunError",
    "RunStart",
    "RunState",
    "StreamEvent",
    "TextDelta",
    "Thread",
    "ToolCallDelta",
    "TransportClient",
    "decode_stream",
]
