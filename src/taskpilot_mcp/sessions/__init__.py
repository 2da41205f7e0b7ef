"""Agent session supervision and the message channel bound to each session."""

from .manager import (
    AgentSession,
    DEFAULT_IDLE_TIMEOUT,
    SessionError,
    SessionManager,
    SessionNotFoundError,
    SessionOptions,
    SessionState,
)
from .messages import (
    ChannelClosedError,
    CloseMessage,
    ErrorMessage,
    InboundMessage,
    InputMessage,
    InterruptMessage,
    MessageType,
    OutputMessage,
    SessionChannel,
    SessionMessage,
    message_to_dict,
    parse_inbound,
)

__all__ = [
    "AgentSession",
    "ChannelClosedError",
    "CloseMessage",
    "DEFAULT_IDLE_TIMEOUT",
    "ErrorMessage",
    "InboundMessage",
    "InputMessage",
    "InterruptMessage",
    "MessageType",
    "OutputMessage",
    "SessionChannel",
    "SessionError",
    "SessionManager",
    "SessionMessage",
    "SessionNotFoundError",
    "SessionOptions",
    "SessionState",
    "message_to_dict",
    "parse_inbound",
]
