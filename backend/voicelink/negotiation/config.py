"""협상 엔진 설정.

STUN 서버, 시그널링 접속 정책, 로컬 오디오 캡처 장치 등
환경변수 기반 설정. TURN 릴레이는 사용하지 않습니다.
"""

import os
import sys
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv
from aiortc import RTCConfiguration, RTCIceServer

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정 (STUN 전용)."""

    # 커스텀 STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL") or None

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    )

    @property
    def stun_urls(self) -> List[str]:
        """사용할 STUN URL 목록 (커스텀 서버 우선)."""
        urls = [self.STUN_SERVER_URL] if self.STUN_SERVER_URL else []
        return urls + list(self.DEFAULT_STUN_SERVERS)

    def as_ice_server_list(self) -> List[Dict[str, str]]:
        """브라우저/클라이언트에 제공할 ICE 서버 목록."""
        return [{"urls": url} for url in self.stun_urls]

    def build_rtc_configuration(self) -> RTCConfiguration:
        """aiortc RTCConfiguration을 생성합니다."""
        return RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in self.stun_urls])


# ============================================================
# 시그널링 연결 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """시그널링 채널 연결 정책."""

    # 시그널링 서버 WebSocket URL
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:3000/ws")

    # 부트스트랩 연결 타임아웃 (초)
    CONNECT_TIMEOUT: float = float(os.getenv("CONNECT_TIMEOUT", "10"))

    # 연결 끊김 후 재연결 시도 횟수
    RECONNECTION_ATTEMPTS: int = int(os.getenv("RECONNECTION_ATTEMPTS", "10"))

    # 재연결 시도 간격 (초, 고정)
    RECONNECTION_DELAY: float = float(os.getenv("RECONNECTION_DELAY", "2"))


# ============================================================
# 로컬 오디오 캡처 설정
# ============================================================

def _default_audio_source() -> tuple:
    """플랫폼별 기본 마이크 장치와 입력 포맷."""
    if sys.platform == "darwin":
        return ":0", "avfoundation"
    if sys.platform.startswith("win"):
        return "audio=Microphone", "dshow"
    return "default", "pulse"


@dataclass(frozen=True)
class MediaConfig:
    """로컬 오디오 캡처 설정 (음성 전용)."""

    AUDIO_DEVICE: str = os.getenv("AUDIO_DEVICE") or _default_audio_source()[0]
    AUDIO_FORMAT: str = os.getenv("AUDIO_FORMAT") or _default_audio_source()[1]

    # 캡처 장치 옵션 (ffmpeg 입력 옵션)
    AUDIO_OPTIONS: Dict[str, str] = field(default_factory=lambda: {
        "sample_rate": "48000",
        "channels": "1",
    })


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
media_config = MediaConfig()


logger.debug(f"[Engine Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.debug(f"[Engine Config] STUN: {ice_config.stun_urls}")
logger.debug(f"[Engine Config] 시그널링 URL: {connection_config.SIGNALING_URL}")
