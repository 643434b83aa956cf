"""Local capture handle and media acquisition."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from ..core.config import Settings, settings
from ..core.errors import DeviceUnavailable

logger = logging.getLogger(__name__)

MEDIA_KINDS = ("audio", "video")


def blank_frame(frame: AudioFrame | VideoFrame) -> AudioFrame | VideoFrame:
    """Return silence or a black picture shaped and timed like ``frame``."""

    if isinstance(frame, AudioFrame):
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    else:
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
        luma, *chroma = blank.planes
        luma.update(bytes(luma.buffer_size))
        for plane in chroma:
            plane.update(b"\x80" * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class SwitchableTrack(MediaStreamTrack):
    """Relay a capture track, substituting blank frames while disabled."""

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self) -> Any:
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return blank_frame(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


class LocalMedia:
    """The local user's capture handle, shared by every peer connection."""

    def __init__(
        self,
        audio: MediaStreamTrack | None = None,
        video: MediaStreamTrack | None = None,
        *,
        players: Iterable[Any] = (),
    ) -> None:
        self._tracks: Dict[str, SwitchableTrack] = {}
        for source in (audio, video):
            if source is not None:
                self._tracks[source.kind] = SwitchableTrack(source)
        self._players = list(players)
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def tracks(self) -> list[SwitchableTrack]:
        return [self._tracks[kind] for kind in MEDIA_KINDS if kind in self._tracks]

    def track(self, kind: str) -> Optional[SwitchableTrack]:
        return self._tracks.get(kind)

    def is_enabled(self, kind: str) -> bool:
        track = self._tracks.get(kind)
        return track is not None and track.enabled

    def set_enabled(self, kind: str, enabled: bool) -> None:
        track = self._tracks.get(kind)
        if track is not None:
            track.enabled = enabled

    def replace_source(self, kind: str, source: MediaStreamTrack) -> SwitchableTrack:
        """Swap the capture device for ``kind``; returns the new outbound track."""

        if source.kind != kind:
            raise ValueError(f"Expected a {kind} track, got {source.kind}")
        previous = self._tracks.get(kind)
        replacement = SwitchableTrack(source)
        if previous is not None:
            replacement.enabled = previous.enabled
            previous.stop()
        self._tracks[kind] = replacement
        return replacement

    def stop(self) -> None:
        """Release every capture track; safe to call more than once."""

        if self._stopped:
            return
        self._stopped = True
        for track in self._tracks.values():
            track.stop()
        logger.info("Local capture stopped")


class MediaAcquirer:
    """Open the configured camera and microphone."""

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or settings

    async def acquire(self) -> LocalMedia:
        config = self._config
        players: list[MediaPlayer] = []
        try:
            video_player = await asyncio.to_thread(
                MediaPlayer,
                config.video_device,
                format=config.video_format,
                options={"video_size": config.video_size},
            )
            players.append(video_player)
            audio_player = await asyncio.to_thread(
                MediaPlayer, config.audio_device, format=config.audio_format
            )
            players.append(audio_player)
        except (FFmpegError, OSError, ValueError) as exc:
            for player in players:
                for track in (player.audio, player.video):
                    if track is not None:
                        track.stop()
            raise DeviceUnavailable(str(exc)) from exc

        logger.info("Acquired capture devices %s and %s", config.video_device, config.audio_device)
        return LocalMedia(audio=audio_player.audio, video=video_player.video, players=players)
