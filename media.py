# media.py
# --------------------------------------------------------------------
# Local capture + remote render collaborators built on aiortc.contrib
# --------------------------------------------------------------------

import asyncio, logging, os, platform

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av import VideoFrame

from envelopes import SignalingError

logger = logging.getLogger(__name__)

MEDIA_ERROR = "Could not access camera/microphone. Please grant permissions."

DEFAULT_CONSTRAINTS = {
    "video": {"width": 1280, "height": 720, "framerate": 30},
    "audio": True,
}

# a single file (or URL) providing both tracks, handy on headless boxes
MEDIA_FILE = os.environ.get("MEDIA_FILE")
VIDEO_DEVICE = os.environ.get("VIDEO_DEVICE")
AUDIO_DEVICE = os.environ.get("AUDIO_DEVICE")


class MediaAccessError(SignalingError):
    pass


def black_frame(like: VideoFrame) -> VideoFrame:
    """A yuv420p black picture with the size and timing of `like`."""
    frame = VideoFrame(width=like.width, height=like.height, format="yuv420p")
    # limited range black: Y=16, neutral chroma
    for plane, value in zip(frame.planes, (16, 128, 128)):
        plane.update(bytes([value]) * plane.buffer_size)
    frame.pts = like.pts
    frame.time_base = like.time_base
    return frame


class ToggleableTrack(MediaStreamTrack):
    """
    Relays frames from a capture track; while `enabled` is False each frame is
    blanked (silence for audio, a black picture for video). The sender keeps
    streaming, so toggling never needs renegotiation.
    """

    def __init__(self, source):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, VideoFrame):
            return black_frame(frame)
        for plane in frame.planes:
            plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMedia:
    def __init__(self, players, audio=None, video=None):
        self.players = players
        self.audio = ToggleableTrack(audio) if audio is not None else None
        self.video = ToggleableTrack(video) if video is not None else None

    @property
    def tracks(self):
        return [t for t in (self.audio, self.video) if t is not None]

    def track(self, kind):
        return self.audio if kind == "audio" else self.video

    def stop(self):
        for track in self.tracks:
            track.stop()
        self.audio = self.video = None
        self.players = []


def _device_players(constraints):
    video_opts = {}
    video = constraints.get("video")
    if isinstance(video, dict):
        if video.get("width") and video.get("height"):
            video_opts["video_size"] = f"{video['width']}x{video['height']}"
        if video.get("framerate"):
            video_opts["framerate"] = str(video["framerate"])

    system = platform.system()
    players = []
    if video:
        if system == "Darwin":
            players.append(MediaPlayer(VIDEO_DEVICE or "default:none", format="avfoundation", options=video_opts))
        elif system == "Windows":
            players.append(MediaPlayer(VIDEO_DEVICE or "video=Integrated Camera", format="dshow", options=video_opts))
        else:
            players.append(MediaPlayer(VIDEO_DEVICE or "/dev/video0", format="v4l2", options=video_opts))
    if constraints.get("audio"):
        if system == "Darwin":
            players.append(MediaPlayer(AUDIO_DEVICE or "none:default", format="avfoundation"))
        elif system == "Windows":
            players.append(MediaPlayer(AUDIO_DEVICE or "audio=Microphone", format="dshow"))
        else:
            players.append(MediaPlayer(AUDIO_DEVICE or "default", format="pulse"))
    return players


def _open(constraints):
    if MEDIA_FILE:
        players = [MediaPlayer(MEDIA_FILE, loop=True)]
    else:
        players = _device_players(constraints)
    audio = next((p.audio for p in players if p.audio is not None), None)
    video = next((p.video for p in players if p.video is not None), None)
    return LocalMedia(players, audio=audio, video=video)


async def open_local_media(constraints=None) -> LocalMedia:
    """Opens capture devices off the event loop; any failure is a MediaAccessError."""
    constraints = constraints or DEFAULT_CONSTRAINTS
    try:
        media = await asyncio.to_thread(_open, constraints)
    except Exception as e:  # av / OS errors vary by platform and backend
        logger.error("Error accessing media devices: %s", e)
        raise MediaAccessError(MEDIA_ERROR) from e
    logger.info("Local media initialized")
    return media


class RemoteRenderer:
    """
    Render surface for the remote stream. Without `record_to` frames are
    consumed and discarded; with it they are written to that file.
    """

    def __init__(self, record_to: str = None):
        self.record_to = record_to
        self.stream = None
        self._sink = None

    def attach(self, stream):
        self.stream = stream

    async def start(self):
        if self.stream is None or self._sink is not None:
            return
        sink = MediaRecorder(self.record_to) if self.record_to else MediaBlackhole()
        for track in self.stream.tracks:
            sink.addTrack(track)
        await sink.start()
        self._sink = sink
        logger.info("Remote stream set")

    async def stop(self):
        sink, self._sink = self._sink, None
        self.stream = None
        if sink is not None:
            await sink.stop()
