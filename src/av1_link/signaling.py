"""Signaling message envelope and the reconnecting WebSocket channel."""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Literal

import websockets
from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator

from .errors import TransportError

logger = logging.getLogger(__name__)

MESSAGE_TYPES: frozenset[str] = frozenset({"offer", "answer", "ice-candidate", "hangup"})
DEFAULT_RECONNECT_DELAY = 3.0


class SessionDescriptionPayload(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class SignalingMessage(BaseModel):
    """JSON envelope exchanged with the remote peer."""

    type: Literal["offer", "answer", "ice-candidate", "hangup"]
    sdp: SessionDescriptionPayload | None = None
    candidate: dict[str, Any] | None = None

    @field_validator("sdp", mode="before")
    @classmethod
    def _wrap_bare_sdp(cls, value: Any, info: ValidationInfo) -> Any:
        # Some peers send the SDP text directly instead of a description object.
        if isinstance(value, str):
            kind = info.data.get("type")
            return {"type": kind if kind in {"offer", "answer"} else "offer", "sdp": value}
        return value

    @classmethod
    def offer(cls, sdp: str) -> "SignalingMessage":
        return cls(type="offer", sdp=SessionDescriptionPayload(type="offer", sdp=sdp))

    @classmethod
    def answer(cls, sdp: str) -> "SignalingMessage":
        return cls(type="answer", sdp=SessionDescriptionPayload(type="answer", sdp=sdp))

    @classmethod
    def ice_candidate(cls, candidate: dict[str, Any]) -> "SignalingMessage":
        return cls(type="ice-candidate", candidate=candidate)

    @classmethod
    def hangup(cls) -> "SignalingMessage":
        return cls(type="hangup")

    def to_json(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True), separators=(",", ":"))


def parse_message(raw: str | bytes | bytearray) -> SignalingMessage | None:
    """Decode an inbound frame, returning ``None`` for anything unusable."""

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "replace")
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        logger.warning("Ignoring non-JSON signaling frame: %s", exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring signaling frame that is not an object")
        return None
    message_type = payload.get("type")
    if message_type not in MESSAGE_TYPES:
        logger.warning("Ignoring unknown signaling message type: %r", message_type)
        return None
    try:
        return SignalingMessage.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Ignoring malformed %s message: %s", message_type, exc)
        return None


MessageHandler = Callable[[SignalingMessage], Awaitable[None]]
StatusHandler = Callable[[bool], Awaitable[None] | None]


class SignalingChannel(ABC):
    """Ordered, at-least-once message delivery with a connected status."""

    def __init__(self) -> None:
        self._on_message: MessageHandler | None = None
        self._on_status: StatusHandler | None = None

    def set_handlers(
        self,
        on_message: MessageHandler | None = None,
        on_status: StatusHandler | None = None,
    ) -> None:
        self._on_message = on_message
        self._on_status = on_status

    @property
    @abstractmethod
    def connected(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def send(self, message: SignalingMessage) -> None:  # pragma: no cover - interface only
        """Send *message*, raising :class:`TransportError` while disconnected."""
        raise NotImplementedError

    async def start(self) -> None:  # pragma: no cover - optional override
        return None

    async def aclose(self) -> None:  # pragma: no cover - optional override
        return None

    async def _deliver(self, message: SignalingMessage) -> None:
        if self._on_message is None:
            logger.debug("Dropping %s message: no handler registered", message.type)
            return
        try:
            await self._on_message(message)
        except Exception:
            logger.exception("Signaling handler failed for %s message", message.type)

    async def _notify_status(self, connected: bool) -> None:
        if self._on_status is None:
            return
        try:
            result = self._on_status(connected)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Signaling status handler failed")


class WebSocketSignalingChannel(SignalingChannel):
    """WebSocket client that reconnects on a fixed delay without a retry limit.

    Messages sent while disconnected are rejected, and nothing missed during
    an outage is replayed after reconnecting.
    """

    def __init__(
        self,
        url: str,
        *,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        connect: Callable[[str], Any] | None = None,
    ) -> None:
        super().__init__()
        if reconnect_delay <= 0:
            raise ValueError("reconnect_delay must be positive")
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._connect = connect or websockets.connect
        self._socket: Any = None
        self._task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._socket is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._closing = False
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def aclose(self) -> None:
        self._closing = True
        task = self._task
        self._task = None
        socket = self._socket
        if socket is not None:
            with contextlib.suppress(Exception):
                await socket.close()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def send(self, message: SignalingMessage) -> None:
        socket = self._socket
        if socket is None:
            raise TransportError(f"Signaling channel not connected; {message.type} not sent")
        try:
            await socket.send(message.to_json())
        except websockets.exceptions.ConnectionClosed as exc:
            raise TransportError(f"Signaling channel closed while sending {message.type}") from exc
        logger.debug("Sent signaling message: %s", message.type)

    async def _run(self) -> None:
        while not self._closing:
            try:
                async with self._connect(self.url) as socket:
                    self._socket = socket
                    logger.info("Signaling connected to %s", self.url)
                    await self._notify_status(True)
                    async for raw in socket:
                        message = parse_message(raw)
                        if message is not None:
                            logger.debug("Received signaling message: %s", message.type)
                            await self._deliver(message)
            except asyncio.CancelledError:
                raise
            except (OSError, websockets.exceptions.WebSocketException) as exc:
                logger.warning("Signaling connection to %s failed: %s", self.url, exc)
            finally:
                if self._socket is not None:
                    self._socket = None
                    logger.info("Signaling disconnected from %s", self.url)
                    await self._notify_status(False)
            if self._closing:
                break
            await asyncio.sleep(self.reconnect_delay)


__all__ = [
    "DEFAULT_RECONNECT_DELAY",
    "MESSAGE_TYPES",
    "SessionDescriptionPayload",
    "SignalingChannel",
    "SignalingMessage",
    "WebSocketSignalingChannel",
    "parse_message",
]
