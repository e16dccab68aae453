"""엔진 알림 이벤트.

엔진은 UI 협력자에게 아래 이벤트를 ``engine.events`` 큐로 전달합니다.
콜백 필드 대신 큐를 사용하므로 전달은 비동기이며 엔진을 막지 않습니다.

Examples:
    >>> event = await engine.events.get()
    >>> if isinstance(event, ConnectionStateChanged) and event.state == "failed":
    ...     await engine.cleanup()
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class LocalStreamReady:
    """로컬 마이크 스트림 준비 완료."""
    stream: Any


@dataclass(frozen=True)
class RemoteStreamReady:
    """원격 참가자의 오디오 트랙 수신."""
    peer_id: str
    track: Any


@dataclass(frozen=True)
class ConnectionStateChanged:
    """연결 상태 변경.

    peer_id가 None이면 시그널링 채널 자체의 상태입니다
    ("disconnected", "failed", "error").
    """
    state: str
    peer_id: Optional[str] = None


@dataclass(frozen=True)
class MediaUnavailable:
    """마이크를 사용할 수 없어 송신 오디오 없이 진행 중 (경고)."""
    message: str


@dataclass(frozen=True)
class RoomJoined:
    """서버가 룸 참가를 확인함."""
    room_id: str
    role: str


@dataclass(frozen=True)
class PeerLeft:
    """원격 참가자가 룸을 떠나 PeerLink가 폐기됨."""
    peer_id: str
