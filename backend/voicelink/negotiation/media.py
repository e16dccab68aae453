"""로컬 오디오 스트림 모듈.

마이크 캡처와 음소거 가능한 오디오 트랙을 제공합니다. 로컬 스트림은
엔진이 소유하고, 각 PeerLink는 MediaRelay 구독 트랙을 받아 붙입니다.
구독 트랙마다 프레임 버퍼가 따로 있어 모든 피어가 같은 프레임을 받습니다.
"""

import asyncio
import logging
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

from ..shared.errors import MediaError
from .config import MediaConfig, media_config

logger = logging.getLogger(__name__)


class MutableAudioTrack(MediaStreamTrack):
    """원본 오디오 트랙을 감싸 음소거를 지원하는 트랙.

    enabled가 False인 동안에는 원본과 같은 포맷/샘플레이트/타임스탬프의
    무음 프레임을 내보냅니다. 원본 프레임 소비는 계속되므로 RTP 타이밍이
    유지됩니다.

    Attributes:
        kind (str): 트랙 종류 ("audio")
        track (MediaStreamTrack): 원본 오디오 트랙
        enabled (bool): False면 무음 전송

    Examples:
        >>> player = MediaPlayer("default", format="pulse")
        >>> track = MutableAudioTrack(player.audio)
        >>> track.enabled = False  # 음소거
    """
    kind = "audio"

    def __init__(self, track: MediaStreamTrack):
        super().__init__()
        self.track = track
        self.enabled = True

    async def recv(self):
        """원본 프레임을 받아 그대로 또는 무음으로 반환합니다."""
        if self.readyState != "live":
            raise MediaStreamError
        frame = await self.track.recv()
        if self.enabled:
            return frame
        return self._silence_like(frame)

    @staticmethod
    def _silence_like(frame: AudioFrame) -> AudioFrame:
        silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in silent.planes:
            plane.update(bytes(plane.buffer_size))
        silent.pts = frame.pts
        silent.sample_rate = frame.sample_rate
        silent.time_base = frame.time_base
        return silent

    def stop(self):
        super().stop()
        self.track.stop()


class LocalMediaStream:
    """로컬 오디오 캡처 결과.

    Attributes:
        tracks (List[MediaStreamTrack]): 캡처된 트랙 (음성 전용)
        player (Optional[MediaPlayer]): 캡처 장치 핸들
        relay (MediaRelay): 원본 트랙 하나를 여러 PeerLink로 나누는 릴레이
    """

    def __init__(self, tracks: List[MediaStreamTrack], player: Optional[MediaPlayer] = None):
        self.tracks = list(tracks)
        self.player = player
        self.relay = MediaRelay()
        self._subscribers: List[MediaStreamTrack] = []

    def subscribe(self, track: MediaStreamTrack) -> MediaStreamTrack:
        """원본 트랙의 구독 트랙을 만듭니다.

        구독 트랙은 각자 프레임 버퍼를 가지므로 여러 송신자가 같은 원본을
        읽어도 프레임이 나뉘지 않습니다. 음소거는 원본에서 처리되어
        모든 구독 트랙에 적용됩니다.
        """
        proxy = self.relay.subscribe(track)
        self._subscribers.append(proxy)
        return proxy

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self.tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self.tracks if t.kind == "audio"]

    def set_enabled(self, enabled: bool) -> None:
        """모든 오디오 트랙의 enabled를 설정합니다."""
        for track in self.get_audio_tracks():
            track.enabled = enabled

    def stop(self) -> None:
        """캡처를 중지하고 트랙을 해제합니다."""
        for proxy in self._subscribers:
            proxy.stop()
        self._subscribers.clear()
        for track in self.tracks:
            track.stop()
        self.tracks.clear()
        self.player = None
        logger.info("[Media] 로컬 오디오 캡처 중지")


async def acquire_local_stream(config: MediaConfig = media_config) -> LocalMediaStream:
    """마이크를 열어 로컬 오디오 스트림을 만듭니다.

    echo cancellation 등 브라우저 제약은 캡처 장치 옵션으로 대체됩니다.

    Args:
        config (MediaConfig): 장치/포맷/옵션 설정

    Returns:
        LocalMediaStream: 음소거 가능한 오디오 트랙 하나를 가진 스트림

    Raises:
        MediaError: 장치를 열 수 없거나 오디오 트랙이 없는 경우
    """
    loop = asyncio.get_running_loop()
    try:
        player = await loop.run_in_executor(
            None,
            lambda: MediaPlayer(config.AUDIO_DEVICE, format=config.AUDIO_FORMAT,
                                options=dict(config.AUDIO_OPTIONS)),
        )
    except Exception as e:
        raise MediaError("Failed to access microphone", {
            "device": config.AUDIO_DEVICE,
            "format": config.AUDIO_FORMAT,
            "error": str(e),
        }) from e

    if player.audio is None:
        raise MediaError("Capture device has no audio track", {"device": config.AUDIO_DEVICE})

    logger.info(f"[Media] 마이크 캡처 시작: {config.AUDIO_DEVICE} ({config.AUDIO_FORMAT})")
    return LocalMediaStream([MutableAudioTrack(player.audio)], player=player)
