"""협상 엔진 모듈.

참가자 측에서 릴레이에 연결하고 원격 참가자별 WebRTC 협상을 수행합니다.

Classes:
    NegotiationEngine: 세션 부트스트랩, PeerLink 관리, 음소거/정리
    PeerLink: 원격 참가자 한 명과의 협상 상태 머신
    SignalingChannel: 재연결을 지원하는 WebSocket 채널
    LocalMediaStream: 로컬 마이크 스트림

Config:
    ice_config: STUN 서버 설정
    connection_config: 시그널링 URL/타임아웃/재연결 설정
    media_config: 캡처 장치 설정
"""

from .config import (
    ICEServerConfig,
    ConnectionConfig,
    MediaConfig,
    ice_config,
    connection_config,
    media_config,
)
from .events import (
    LocalStreamReady,
    RemoteStreamReady,
    ConnectionStateChanged,
    MediaUnavailable,
    RoomJoined,
    PeerLeft,
)
from .media import MutableAudioTrack, LocalMediaStream, acquire_local_stream
from .peer_link import LinkState, NegotiationRole, PeerLink, parse_candidate, candidate_to_payload
from .channel import SignalingChannel
from .engine import NegotiationEngine

__all__ = [
    # Engine
    "NegotiationEngine",
    "PeerLink",
    "LinkState",
    "NegotiationRole",
    "SignalingChannel",
    "parse_candidate",
    "candidate_to_payload",
    # Media
    "MutableAudioTrack",
    "LocalMediaStream",
    "acquire_local_stream",
    # Events
    "LocalStreamReady",
    "RemoteStreamReady",
    "ConnectionStateChanged",
    "MediaUnavailable",
    "RoomJoined",
    "PeerLeft",
    # Config
    "ICEServerConfig",
    "ConnectionConfig",
    "MediaConfig",
    "ice_config",
    "connection_config",
    "media_config",
]
