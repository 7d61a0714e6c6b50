"""aiortc implementations of the peer connection and media source.

aiortc gathers all local candidates while applying the local description and
embeds them in the SDP, so the only trickled local candidate is the
end-of-candidates marker.
"""

import asyncio
import logging
from typing import Any

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from src.client.base import DescriptionKind, LocalMedia, MediaSource, PeerConnection
from src.client.config import IceServerConfig, MediaConfig
from src.common.errors import MediaAcquisitionError, NegotiationError
from src.signaling.transport.websocket_protocol import IceCandidate

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


def build_rtc_configuration(ice_servers: list[IceServerConfig]) -> RTCConfiguration:
    """Translate configured ICE servers into an aiortc configuration."""
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
    )


class AiortcPeerConnection(PeerConnection):
    """PeerConnection backed by aiortc's RTCPeerConnection."""

    def __init__(self, configuration: RTCConfiguration | None = None) -> None:
        super().__init__()
        self._pc = RTCPeerConnection(configuration=configuration)

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.debug("aiortc connection state", extra={"state": state})
            if self.on_connection_state is not None:
                self.on_connection_state(state)

        @self._pc.on("track")
        def on_track(track: Any) -> None:
            logger.info("Remote track received", extra={"kind": track.kind})
            if self.on_track is not None:
                self.on_track(track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def add_tracks(self, media: LocalMedia) -> None:
        for track in media.tracks:
            self._pc.addTrack(track)

    async def create_offer(self) -> str:
        try:
            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f"Failed to create offer: {e}") from e

        self._end_of_candidates()
        return self._pc.localDescription.sdp

    async def create_answer(self) -> str:
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(f"Failed to create answer: {e}") from e

        self._end_of_candidates()
        return self._pc.localDescription.sdp

    async def set_remote_description(self, kind: DescriptionKind, sdp: str) -> None:
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))
        except Exception as e:
            raise NegotiationError(f"Failed to apply remote {kind}: {e}") from e

    async def add_ice_candidate(self, candidate: IceCandidate | None) -> None:
        if candidate is None or not candidate.candidate:
            # End-of-candidates; aiortc needs no marker
            return

        line = candidate.candidate
        if line.startswith(CANDIDATE_PREFIX):
            line = line[len(CANDIDATE_PREFIX):]

        try:
            rtc_candidate = candidate_from_sdp(line)
            rtc_candidate.sdpMid = candidate.sdpMid
            rtc_candidate.sdpMLineIndex = candidate.sdpMLineIndex
            await self._pc.addIceCandidate(rtc_candidate)
        except Exception as e:
            raise NegotiationError(f"Failed to add ICE candidate: {e}") from e

    async def close(self) -> None:
        await self._pc.close()

    def _end_of_candidates(self) -> None:
        if self.on_ice_candidate is not None:
            self.on_ice_candidate(None)


class PlayerMedia(LocalMedia):
    """Tracks opened from an aiortc MediaPlayer."""

    def __init__(self, player: MediaPlayer, audio: bool = True, video: bool = True) -> None:
        self._player = player
        self._tracks: list[Any] = []
        if audio and player.audio is not None:
            self._tracks.append(player.audio)
        if video and player.video is not None:
            self._tracks.append(player.video)

    @property
    def tracks(self) -> list[Any]:
        return list(self._tracks)

    def release(self) -> None:
        for track in self._tracks:
            track.stop()
        self._tracks = []


class PlayerMediaSource(MediaSource):
    """Opens a capture device or media file with aiortc's MediaPlayer."""

    def __init__(self, config: MediaConfig) -> None:
        self._config = config

    async def acquire(self) -> LocalMedia:
        """Open the configured source.

        The device is opened in the default executor because opening it can
        block for a noticeable time.

        Raises:
            MediaAcquisitionError: If the source cannot be opened or has no
                usable tracks
        """
        loop = asyncio.get_running_loop()
        try:
            player = await loop.run_in_executor(None, self._open)
        except Exception as e:
            raise MediaAcquisitionError(f"Cannot open media source {self._config.source}: {e}") from e

        media = PlayerMedia(player, audio=self._config.audio, video=self._config.video)
        if not media.tracks:
            media.release()
            raise MediaAcquisitionError(f"Media source {self._config.source} has no usable tracks")

        logger.info(
            "Media source opened",
            extra={"source": self._config.source, "tracks": len(media.tracks)},
        )
        return media

    def _open(self) -> MediaPlayer:
        return MediaPlayer(
            self._config.source,
            format=self._config.format,
            options=self._config.options or None,
        )
