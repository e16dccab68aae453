"""시그널링 릴레이 모듈.

룸 레지스트리와 연결 간 메시지 라우팅을 제공합니다.

Classes:
    SignalingRelay: 연결 관리 및 offer/answer/candidate 라우팅
    ClientConnection: 연결별 송신 큐
    RoomManager: 룸 및 참가자 관리
    Participant: 참가자 데이터 클래스

Config:
    relay_config: 포트/고정 IP 설정
"""

from .room_manager import RoomManager, Participant
from .relay import SignalingRelay, ClientConnection
from .network import get_all_ips, get_local_ip, describe_addresses
from .config import relay_config, RelayConfig

__all__ = [
    # Classes
    "SignalingRelay",
    "ClientConnection",
    "RoomManager",
    "Participant",
    # Network
    "get_all_ips",
    "get_local_ip",
    "describe_addresses",
    # Config
    "relay_config",
    "RelayConfig",
]
