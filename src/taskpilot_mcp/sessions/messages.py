"""Typed messages and the duplex channel attached to every agent session."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, ClassVar, Union


class MessageType(str, Enum):
    OUTPUT = "output"
    ERROR = "error"
    CLOSE = "close"
    INPUT = "input"
    INTERRUPT = "interrupt"


@dataclass(slots=True, frozen=True)
class OutputMessage:
    data: str
    type: ClassVar[MessageType] = MessageType.OUTPUT


@dataclass(slots=True, frozen=True)
class ErrorMessage:
    data: str
    type: ClassVar[MessageType] = MessageType.ERROR


@dataclass(slots=True, frozen=True)
class CloseMessage:
    exit_code: int | None
    type: ClassVar[MessageType] = MessageType.CLOSE


@dataclass(slots=True, frozen=True)
class InputMessage:
    data: str
    type: ClassVar[MessageType] = MessageType.INPUT


@dataclass(slots=True, frozen=True)
class InterruptMessage:
    type: ClassVar[MessageType] = MessageType.INTERRUPT


SessionMessage = Union[OutputMessage, ErrorMessage, CloseMessage]
InboundMessage = Union[InputMessage, InterruptMessage]


class ChannelClosedError(RuntimeError):
    """Raised when sending to a channel whose session has already closed."""


def message_to_dict(message: SessionMessage | InboundMessage) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": message.type.value}
    if isinstance(message, CloseMessage):
        payload["exit_code"] = message.exit_code
    elif not isinstance(message, InterruptMessage):
        payload["data"] = message.data
    return payload


def parse_inbound(payload: dict[str, Any]) -> InboundMessage:
    """Build an inbound message from a transport payload such as decoded JSON."""

    kind = str(payload.get("type", "")).lower()
    if kind == MessageType.INPUT.value:
        data = payload.get("data")
        if not isinstance(data, str):
            raise ValueError("Input messages require a string 'data' field")
        return InputMessage(data=data)
    if kind == MessageType.INTERRUPT.value:
        return InterruptMessage()
    raise ValueError(f"Unsupported inbound message type '{kind}'")


class SessionChannel:
    """Duplex stream between one session and its observers.

    Outbound messages fan out to every active :meth:`stream` subscriber and are
    kept in a bounded history so late subscribers can replay them. Inbound
    messages are queued for the session manager to consume.
    """

    def __init__(self, session_id: str, *, history_limit: int = 1000) -> None:
        self.session_id = session_id
        self._history: deque[tuple[int, SessionMessage]] = deque(maxlen=history_limit)
        self._published = 0
        self._subscribers: set[asyncio.Queue[SessionMessage]] = set()
        self._inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self._close: CloseMessage | None = None

    @property
    def closed(self) -> bool:
        return self._close is not None

    @property
    def exit_code(self) -> int | None:
        return self._close.exit_code if self._close is not None else None

    def publish(self, message: SessionMessage) -> None:
        if self._close is not None:
            return
        self._published += 1
        self._history.append((self._published, message))
        if isinstance(message, CloseMessage):
            self._close = message
        for queue in list(self._subscribers):
            queue.put_nowait(message)

    def history(self, since: int = 0) -> list[tuple[int, SessionMessage]]:
        """Return retained messages with a sequence number greater than ``since``."""

        return [(seq, message) for seq, message in self._history if seq > since]

    async def stream(self) -> AsyncIterator[SessionMessage]:
        """Yield retained then live messages until the close message."""

        queue: asyncio.Queue[SessionMessage] = asyncio.Queue()
        for _, message in self._history:
            queue.put_nowait(message)
        self._subscribers.add(queue)
        try:
            while True:
                message = await queue.get()
                yield message
                if isinstance(message, CloseMessage):
                    return
        finally:
            self._subscribers.discard(queue)

    async def send(self, message: InboundMessage) -> None:
        if self._close is not None:
            raise ChannelClosedError(f"Session {self.session_id} is closed")
        await self._inbound.put(message)

    async def receive(self) -> InboundMessage:
        return await self._inbound.get()


__all__ = [
    "ChannelClosedError",
    "CloseMessage",
    "ErrorMessage",
    "InboundMessage",
    "InputMessage",
    "InterruptMessage",
    "MessageType",
    "OutputMessage",
    "SessionChannel",
    "SessionMessage",
    "message_to_dict",
    "parse_inbound",
]
