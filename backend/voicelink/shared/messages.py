"""시그널링 메시지 정의.

릴레이와 협상 엔진이 공유하는 와이어 포맷입니다. 모든 프레임은
``{"type": <event>, "data": <payload>}`` 형태의 JSON 텍스트입니다.

Examples:
    >>> build_message(EventType.USER_JOINED, "peer-123")
    {'type': 'user-joined', 'data': 'peer-123'}
    >>> Role.parse(None)
    <Role.CLIENT: 'client'>
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import RelayError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """채널 이벤트 이름."""

    JOIN_ROOM = "join-room"
    ROOM_JOINED = "room-joined"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    ERROR = "error"
    PEER_ID = "peer-id"


# 릴레이 이벤트 -> 본문 키
RELAY_BODY_KEYS: Dict[EventType, str] = {
    EventType.OFFER: "offer",
    EventType.ANSWER: "answer",
    EventType.ICE_CANDIDATE: "candidate",
}


class Role(str, Enum):
    """참가자가 join 시점에 선언하는 역할."""

    HOST = "host"
    CLIENT = "client"

    @classmethod
    def parse(cls, value: Optional[Union[str, "Role"]]) -> "Role":
        """문자열을 Role로 변환합니다.

        Args:
            value: "host" / "client" (대소문자 무시). None 또는 빈 값이면 client

        Returns:
            Role: 변환된 역할. 알 수 없는 값은 CLIENT로 대체됨
        """
        if isinstance(value, cls):
            return value
        if not value:
            return cls.CLIENT
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.warning(f"[Role] 알 수 없는 역할 '{value}', client로 대체")
            return cls.CLIENT


class SignalEnvelope(BaseModel):
    """채널 프레임 봉투."""

    type: str
    data: Any = None


class JoinRoomRequest(BaseModel):
    """join-room 페이로드."""

    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(default=None, alias="roomId")
    role: Optional[str] = None


def build_message(event: Union[EventType, str], data: Any = None) -> Dict[str, Any]:
    """채널로 보낼 메시지 딕셔너리를 만듭니다."""
    event_name = event.value if isinstance(event, EventType) else event
    return {"type": event_name, "data": data}


def parse_envelope(raw: Any) -> SignalEnvelope:
    """수신 프레임을 봉투로 파싱합니다.

    Raises:
        RelayError: 딕셔너리가 아니거나 type 필드가 없는 경우
    """
    if not isinstance(raw, dict):
        raise RelayError("Malformed message", {"received": type(raw).__name__})
    try:
        return SignalEnvelope.model_validate(raw)
    except ValidationError as e:
        raise RelayError("Malformed message", {"errors": e.error_count()})


def parse_join_payload(data: Any) -> JoinRoomRequest:
    """join-room 페이로드를 정규화합니다.

    딕셔너리 ``{"roomId", "role"}``, 문자열 룸 ID, 또는 위치 인자 형태의
    리스트 ``[roomId, role]`` 를 허용합니다. 룸 ID가 비어 있는지는
    호출자가 판단합니다.
    """
    if isinstance(data, dict):
        try:
            return JoinRoomRequest.model_validate(data)
        except ValidationError:
            return JoinRoomRequest()
    if isinstance(data, str):
        return JoinRoomRequest(room_id=data)
    if isinstance(data, (list, tuple)) and data:
        room_id = data[0] if isinstance(data[0], str) else None
        role = data[1] if len(data) > 1 and isinstance(data[1], str) else None
        return JoinRoomRequest(room_id=room_id, role=role)
    return JoinRoomRequest()
