# peer_connector.py
# --------------------------------------------------------------------
# Client side of a two-party call: signaling transport + negotiation
# state machine driving one aiortc peer connection
# --------------------------------------------------------------------

import asyncio, enum, logging, os, queue, time

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

import envelopes
from envelopes import SignalingError
from media import RemoteRenderer, open_local_media
from peer_session import (
    CONNECTION_STATE, LOCAL_CANDIDATE, REMOTE_STREAM, SIGNALING_STATE, PeerSession,
)

SIGNAL_URL = os.environ.get("SIGNAL_URL", "ws://localhost:8080")

MESSAGE = "message"
TRANSPORT_CLOSED = "transport-closed"

logger = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    IDLE = "idle"
    JOINING = "joining"
    WAITING = "waiting"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    LEFT = "left"


class JoinError(SignalingError):
    pass


class PeerConnector:
    """
    One call membership: joins a room over the signaling websocket and
    negotiates a single peer connection with whoever else is in it.

    Incoming envelopes, transport loss and peer connection callbacks are
    all queued as events and handled one at a time by a pump task, so two
    negotiation steps never run against the same connection at once.
    UI updates go out through `gui_q` as {"kind", "data"} dicts.
    """

    def __init__(self, gui_q: queue.Queue = None, signal_url: str = SIGNAL_URL,
                 media_factory=open_local_media, renderer: RemoteRenderer = None,
                 pc_factory=None, connect=websockets.connect, constraints=None):
        self.gui_q = gui_q if gui_q is not None else queue.Queue()
        self.signal_url = signal_url
        self.media_factory = media_factory
        self.renderer = renderer if renderer is not None else RemoteRenderer()
        self.connect = connect
        self.constraints = constraints

        self.session = PeerSession(self._enqueue, pc_factory)
        self.events = asyncio.Queue()
        self.phase = Phase.IDLE
        self.room = None
        self.client_id = None
        self.peer_id = None
        self.ws = None
        self.media = None
        self.audio_enabled = True
        self.video_enabled = True
        self._reader = None
        self._pump = None

    # ───────────────────────────── public API ─────────────────────────────
    async def join(self, room: str, name: str) -> str:
        """
        Acquires local media, opens the signaling socket and sends `join`.

        Raises JoinError for bad input or an unreachable server and
        MediaAccessError when capture fails; in both cases nothing is left
        open. Returns the generated client id.
        """
        if self.phase not in (Phase.IDLE, Phase.LEFT):
            raise JoinError("Already in a room")
        room, name = (room or "").strip(), (name or "").strip()
        if not room:
            raise JoinError("Please enter a room name")
        if not name:
            raise JoinError("Please enter your name")

        client_id = f"{name}-{int(time.time() * 1000)}"
        try:
            self.media = await self.media_factory(self.constraints)
        except SignalingError as e:
            self._post("error", str(e))
            raise

        try:
            self.ws = await self.connect(self.signal_url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error("WebSocket error: %s", e)
            self._release_local_media()
            self._post("error", "Failed to connect to signaling server")
            raise JoinError("Failed to connect to signaling server") from e

        logger.info("WebSocket connected")
        self._post("status", "Connected to signaling server")
        self.room, self.client_id = room, client_id
        self.audio_enabled = self.video_enabled = True
        self.events = asyncio.Queue()
        self._set_phase(Phase.JOINING)
        self._reader = asyncio.create_task(self._read(self.ws))
        self._pump = asyncio.create_task(self._run())
        await self._send(envelopes.join(room, client_id))
        return client_id

    async def leave(self):
        """Tears everything down, abandoning any negotiation step in flight."""
        logger.info("Leaving room")
        await self._teardown()

    def toggle_audio(self) -> bool:
        track = self.media.track("audio") if self.media else None
        if track is not None:
            self.audio_enabled = not self.audio_enabled
            track.enabled = self.audio_enabled
            logger.info("Audio: %s", "enabled" if self.audio_enabled else "disabled")
        return self.audio_enabled

    def toggle_video(self) -> bool:
        track = self.media.track("video") if self.media else None
        if track is not None:
            self.video_enabled = not self.video_enabled
            track.enabled = self.video_enabled
            logger.info("Video: %s", "enabled" if self.video_enabled else "disabled")
        return self.video_enabled

    def state(self) -> dict:
        return {
            "phase": self.phase.value,
            "room": self.room,
            "id": self.client_id,
            "peer": self.peer_id,
            "audio": self.audio_enabled,
            "video": self.video_enabled,
        }

    # ─────────────────────────── event plumbing ───────────────────────────
    def _enqueue(self, kind, data=None, pc=None):
        self.events.put_nowait((kind, data, pc))

    async def _read(self, ws):
        try:
            async for raw in ws:
                try:
                    msg = envelopes.decode(raw)
                except envelopes.EnvelopeError as e:
                    logger.warning("Error handling signaling message: %s", e)
                    continue
                self._enqueue(MESSAGE, msg)
        except ConnectionClosed:
            pass
        finally:
            self._enqueue(TRANSPORT_CLOSED, ws)

    async def _run(self):
        me = asyncio.current_task()
        while self._pump is me:
            kind, data, pc = await self.events.get()
            try:
                await self.dispatch(kind, data, pc)
            finally:
                self.events.task_done()

    async def dispatch(self, kind, data, pc=None):
        if kind == MESSAGE:
            await self.handle_message(data)
        elif kind == TRANSPORT_CLOSED:
            if data is self.ws:
                await self._on_transport_closed()
        elif pc is None or pc is not self.session.pc:
            # queued before its connection was replaced or closed
            logger.debug("Dropping %s from a replaced peer connection", kind)
        elif kind == CONNECTION_STATE:
            await self._on_connection_state(data)
        elif kind == REMOTE_STREAM:
            if data is self.session.remote_stream:
                self.renderer.attach(data)
        elif kind == LOCAL_CANDIDATE:
            logger.debug("Sending ICE candidate")
            await self._send(envelopes.ice_candidate(self.room, data))
        elif kind == SIGNALING_STATE:
            logger.debug("Signaling state: %s", data)

    async def handle_message(self, msg: dict):
        t = msg.get("type")
        logger.debug("Received message: %s", t)
        handler = {
            envelopes.JOINED: self._on_joined,
            envelopes.PEER_JOINED: self._on_peer_joined,
            envelopes.OFFER: self._on_offer,
            envelopes.ANSWER: self._on_answer,
            envelopes.ICE_CANDIDATE: self._on_ice_candidate,
            envelopes.PEER_LEFT: self._on_peer_left,
            envelopes.ERROR: self._on_server_error,
        }.get(t)
        if handler is None:
            logger.info("Unknown message type: %s", t)
            return
        await handler(msg)

    # ─────────────────────────── envelope handlers ──────────────────────────
    async def _on_joined(self, msg):
        logger.info("Successfully joined room: %s", self.room)
        self._set_phase(Phase.WAITING)
        self._post("view", "call")
        self._post("status", "Waiting for another participant...")
        self._post("waiting", True)

    async def _on_peer_joined(self, msg):
        self.peer_id = msg.get("peerId")
        logger.info("Peer joined: %s", self.peer_id)
        self._post("status", "Peer joined. Establishing connection...")

        if self.session.live:
            logger.info("Closing existing peer connection")
            await self.renderer.stop()
            await self.session.close()
        self.session.create(self._local_tracks())
        self._set_phase(Phase.NEGOTIATING)

        try:
            offer = await self.session.create_offer()
        except Exception as e:
            logger.error("Error creating offer: %s", e)
            self._post("status", "Failed to create connection")
            return
        await self._send(envelopes.offer(self.room, offer))
        logger.info("Offer sent")

    async def _on_offer(self, msg):
        offer, sender = msg.get("offer"), msg.get("from")
        logger.info("Received offer")
        if not isinstance(offer, dict):
            logger.warning("Offer without a session description, dropped")
            return
        if sender:
            self.peer_id = sender

        state = self.session.signaling_state
        if state == "have-local-offer" and self._wins_glare(sender):
            # both sides offered; the lower id keeps its offer and waits for the answer
            logger.info("Offer collision with %s, keeping local offer", sender)
            return
        if not self.session.live:
            self.session.create(self._local_tracks())
        elif state != "stable":
            logger.info("Peer connection in wrong state (%s), resetting...", state)
            await self.renderer.stop()
            await self.session.close()
            self.session.create(self._local_tracks())
        if self.phase is not Phase.CONNECTED:
            self._set_phase(Phase.NEGOTIATING)

        try:
            answer = await self.session.accept_offer(offer)
        except Exception as e:
            logger.error("Error handling offer: %s", e)
            self._post("status", "Failed to establish connection. Try refreshing.")
            return
        await self._send(envelopes.answer(self.room, answer))
        logger.info("Answer sent")

    async def _on_answer(self, msg):
        logger.info("Received answer")
        if not self.session.live:
            logger.error("No peer connection exists")
            return
        if self.session.signaling_state != "have-local-offer":
            logger.info("Not expecting answer, current state: %s", self.session.signaling_state)
            return
        answer = msg.get("answer")
        try:
            await self.session.apply_answer(answer)
        except Exception as e:
            logger.error("Error handling answer: %s", e)
            self._post("status", "Connection error. Try refreshing the page.")

    async def _on_ice_candidate(self, msg):
        if not self.session.live:
            logger.info("No peer connection yet, ignoring ICE candidate")
            return
        # TODO: buffer these and flush after the remote description lands
        if not self.session.has_remote_description:
            logger.info("Remote description not set yet, ignoring ICE candidate")
            return
        candidate = msg.get("candidate")
        if not isinstance(candidate, dict):
            return
        try:
            await self.session.add_remote_candidate(candidate)
        except Exception as e:
            logger.error("Error adding ICE candidate: %s", e)

    async def _on_peer_left(self, msg):
        logger.info("Peer left the room: %s", msg.get("peerId"))
        self._post("status", "Peer left. Waiting for another participant...")
        await self.renderer.stop()
        await self.session.close()
        self.peer_id = None
        self._set_phase(Phase.WAITING)
        self._post("waiting", True)

    async def _on_server_error(self, msg):
        message = msg.get("message") or "Server error"
        logger.error("Server error: %s", message)
        self._post("error", message)
        await self._teardown()

    async def _on_transport_closed(self):
        logger.info("WebSocket disconnected")
        self._post("status", "Disconnected from server")
        if self.phase not in (Phase.IDLE, Phase.LEFT):
            self._post("error", "Connection to server lost. Please rejoin.")
            await self._teardown()

    async def _on_connection_state(self, state):
        if state == "connected":
            self._set_phase(Phase.CONNECTED)
            await self.renderer.start()
            self._post("waiting", False)
            self._post("status", "Connected")
        elif state == "disconnected":
            self._set_phase(Phase.DISCONNECTED)
            self._post("status", "Disconnected")
        elif state == "failed":
            self._set_phase(Phase.FAILED)
            self._post("status", "Connection failed")
        elif state == "closed":
            self._post("status", "Connection closed")

    # ─────────────────────────────── helpers ────────────────────────────────
    def _wins_glare(self, sender) -> bool:
        return bool(sender) and self.client_id < sender

    def _local_tracks(self):
        return self.media.tracks if self.media else []

    async def _send(self, msg: dict) -> bool:
        if self.ws is None:
            logger.error("WebSocket is not connected")
            return False
        try:
            await self.ws.send(envelopes.encode(msg))
            return True
        except ConnectionClosed:
            logger.warning("WebSocket closed, %s not sent", msg.get("type"))
            return False

    async def _teardown(self):
        current = asyncio.current_task()
        tasks = [t for t in (self._pump, self._reader) if t is not None and t is not current]
        self._pump = self._reader = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.send(envelopes.encode(envelopes.leave(self.room)))
            except ConnectionClosed:
                pass
            await ws.close()

        await self.session.close()
        await self.renderer.stop()
        self._release_local_media()

        self.room = self.client_id = self.peer_id = None
        self.audio_enabled = self.video_enabled = True
        self._set_phase(Phase.LEFT)
        self._post("waiting", False)
        self._post("view", "join")

    def _release_local_media(self):
        if self.media is not None:
            self.media.stop()
            self.media = None

    def _set_phase(self, phase: Phase):
        if phase is not self.phase:
            logger.debug("Phase %s -> %s", self.phase.value, phase.value)
            self.phase = phase
            self._post("phase", phase.value)

    def _post(self, kind, data=""):
        self.gui_q.put({"kind": kind, "data": data})
