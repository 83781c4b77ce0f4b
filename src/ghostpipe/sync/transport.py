"""Automerge sync over a websocket signaling server.

Every session subscribes to its channel on the signaling server and
exchanges JSON text frames with the browser peers subscribed to the same
channel::

    {"type": "subscribe", "topics": [channel]}
    {"type": "publish", "topic": channel, "kind": "announce", "from": peer}
    {"type": "publish", "topic": channel, "kind": "sync", "from": peer,
     "to": peer, "data": "<hex automerge sync message>"}
    {"type": "ping"}  ->  {"type": "pong"}

An ``announce`` introduces a peer; both sides then run the Automerge sync
protocol, one ``SyncState`` per remote peer.  A dropped connection is
retried with exponential backoff and every sync state starts over.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from ghostpipe.core.ids import generate_peer_id
from ghostpipe.sync.changes import MapChange, is_local_origin

logger = logging.getLogger(__name__)

CONNECTING = "connecting"
CONNECTED = "connected"
DISCONNECTED = "disconnected"

INITIAL_BACKOFF = 1.0  # seconds
MAX_BACKOFF = 30.0

StatusCallback = Callable[[str], None]
SyncedCallback = Callable[[str], None]  # remote peer id


class SignalingTransport:
    """One channel on one signaling server, carrying one document."""

    def __init__(
        self,
        channel_id: str,
        signaling_endpoints: str | Sequence[str],
        document: Any,
        *,
        peer_id: str | None = None,
        name: str = "transport",
        initial_backoff: float = INITIAL_BACKOFF,
        max_backoff: float = MAX_BACKOFF,
    ) -> None:
        if isinstance(signaling_endpoints, str):
            signaling_endpoints = [signaling_endpoints]
        if not signaling_endpoints:
            raise ValueError("at least one signaling endpoint is required")
        self.channel_id = channel_id
        self.endpoints = list(signaling_endpoints)
        self.document = document
        self.peer_id = peer_id or generate_peer_id()
        self.name = name
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff

        self.status = DISCONNECTED
        self._status_callbacks: list[StatusCallback] = []
        self._synced_callbacks: list[SyncedCallback] = []
        self._sync_states: dict[str, Any] = {}
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._closed = False
        self._unsubscribe = document.observe(self._on_document_change)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    def on_synced(self, callback: SyncedCallback) -> None:
        self._synced_callbacks.append(callback)

    def start(self) -> None:
        """Start connecting in the background.  Needs a running event loop."""
        if self._task is None and not self._closed:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def destroy(self) -> None:
        """Stop reconnecting, drop the connection and forget every peer."""
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._pending):
            task.cancel()
        if self._task is not None:
            self._task.cancel()
        self._sync_states.clear()

    async def wait_closed(self) -> None:
        """Wait for the background tasks cancelled by :meth:`destroy`."""
        tasks = [t for t in (self._task, *self._pending) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def peers(self) -> list[str]:
        return sorted(self._sync_states)

    # ------------------------------------------------------------------
    # connection loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        delay = self.initial_backoff
        attempt = 0
        while not self._closed:
            endpoint = self.endpoints[attempt % len(self.endpoints)]
            attempt += 1
            self._set_status(CONNECTING)
            try:
                async with websockets.connect(endpoint) as ws:
                    self._ws = ws
                    self._sync_states.clear()
                    delay = self.initial_backoff
                    self._set_status(CONNECTED)
                    logger.debug("[%s] connected to %s", self.name, endpoint)
                    await self._send({"type": "subscribe", "topics": [self.channel_id]})
                    await self._publish("announce")
                    async for raw in ws:
                        await self._handle_frame(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("[%s] signaling connection failed: %s", self.name, exc)
            finally:
                self._ws = None

            if self._closed:
                break
            self._set_status(DISCONNECTED)
            logger.debug("[%s] reconnecting in %.0fs", self.name, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_backoff)
        self._set_status(DISCONNECTED)

    def _set_status(self, status: str) -> None:
        if status == self.status:
            return
        self.status = status
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception("[%s] status callback failed", self.name)

    # ------------------------------------------------------------------
    # frames
    # ------------------------------------------------------------------

    async def _send(self, message: dict) -> None:
        ws = self._ws
        if ws is None:
            return
        await ws.send(json.dumps(message))

    async def _publish(self, kind: str, to: str | None = None, data: bytes | None = None) -> None:
        message: dict[str, Any] = {
            "type": "publish",
            "topic": self.channel_id,
            "kind": kind,
            "from": self.peer_id,
        }
        if to is not None:
            message["to"] = to
        if data is not None:
            message["data"] = data.hex()
        await self._send(message)

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("[%s] bad frame: %s", self.name, exc)
            return
        if not isinstance(message, dict):
            return

        kind = message.get("type")
        if kind == "ping":
            await self._send({"type": "pong"})
            return
        if kind != "publish" or message.get("topic") != self.channel_id:
            return

        sender = message.get("from")
        target = message.get("to")
        if not isinstance(sender, str) or sender == self.peer_id:
            return
        if target is not None and target != self.peer_id:
            return

        if message.get("kind") == "announce":
            await self._on_announce(sender, answered=target is not None)
        elif message.get("kind") == "sync":
            await self._on_sync(sender, message.get("data"))

    async def _on_announce(self, peer: str, *, answered: bool) -> None:
        logger.debug("[%s] peer joined: %s", self.name, peer)
        self._sync_states[peer] = self.document.new_sync_state()
        if not answered:
            await self._publish("announce", to=peer)
        await self._sync_peer(peer)

    async def _on_sync(self, peer: str, data: Any) -> None:
        try:
            payload = bytes.fromhex(data)
        except (TypeError, ValueError) as exc:
            logger.warning("[%s] bad sync payload from %s: %s", self.name, peer, exc)
            return
        state = self._sync_states.get(peer)
        if state is None:
            state = self._sync_states[peer] = self.document.new_sync_state()
        try:
            self.document.receive_sync_message(peer, state, payload)
        except Exception as exc:
            logger.warning("[%s] rejected sync message from %s: %s", self.name, peer, exc)
            return
        # Relay what the sender taught us to everyone else on the channel.
        for other in list(self._sync_states):
            if other != peer:
                await self._sync_peer(other)
        if not await self._sync_peer(peer):
            for callback in list(self._synced_callbacks):
                try:
                    callback(peer)
                except Exception:
                    logger.exception("[%s] synced callback failed", self.name)

    async def _sync_peer(self, peer: str) -> int:
        """Send every pending sync message to *peer*; returns how many were sent."""
        state = self._sync_states.get(peer)
        if state is None or self._ws is None:
            return 0
        sent = 0
        while True:
            data = self.document.generate_sync_message(state)
            if data is None:
                return sent
            await self._publish("sync", to=peer, data=data)
            sent += 1

    # ------------------------------------------------------------------
    # local changes
    # ------------------------------------------------------------------

    def _on_document_change(self, changes: list[MapChange], origin: str) -> None:
        if not is_local_origin(origin) or self._ws is None or self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._broadcast())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _broadcast(self) -> None:
        for peer in list(self._sync_states):
            try:
                await self._sync_peer(peer)
            except (OSError, WebSocketException) as exc:
                logger.warning("[%s] cannot sync with %s: %s", self.name, peer, exc)
                return


def connect(
    channel_id: str,
    signaling_endpoints: str | Sequence[str],
    document: Any,
    *,
    name: str = "transport",
) -> SignalingTransport:
    """Create a transport for *document* and start connecting."""
    transport = SignalingTransport(channel_id, signaling_endpoints, document, name=name)
    transport.start()
    return transport
