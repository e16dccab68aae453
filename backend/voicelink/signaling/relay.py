"""시그널링 릴레이 모듈.

연결 관리와 메시지 라우팅만 담당합니다. offer/answer/candidate 본문은
해석하지 않고 수신자 ID(``to``)로만 전달합니다.

주요 기능:
    - 룸 참가 처리 (기존 멤버 알림 → 신규 멤버 브로드캐스트 → 참가 확인)
    - offer / answer / ice-candidate 릴레이 (발신자 ID를 ``from``으로 기록)
    - 연결 종료 시 user-left 브로드캐스트 및 룸 정리

Concurrency:
    - 룸 레지스트리 변경은 모두 하나의 asyncio.Lock 아래에서 수행
    - 송신은 연결별 큐에 넣기만 하고 응답을 기다리지 않음 (fire-and-forget)
    - 연결별 pump 코루틴이 큐를 순서대로 WebSocket에 기록

Examples:
    >>> relay = SignalingRelay()
    >>> host = ClientConnection()
    >>> await relay.connect(host)
    >>> await relay.join(host.connection_id, "ABC123", "host")
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from ..shared.errors import RelayError
from ..shared.messages import (
    EventType,
    RELAY_BODY_KEYS,
    Role,
    build_message,
    parse_envelope,
    parse_join_payload,
)
from .config import relay_config
from .room_manager import Participant, RoomManager

logger = logging.getLogger(__name__)


class ClientConnection:
    """릴레이에 연결된 하나의 참가자 연결.

    전송 큐는 ``max_pending``개까지만 쌓입니다. 클라이언트가 읽지 않아
    큐가 가득 차면 대기 중인 메시지를 버리고 연결을 닫습니다.

    Attributes:
        connection_id (str): 연결 시점에 부여되는 고유 ID (uuid4)
        role (Optional[Role]): join 시 선언한 역할
        room_id (Optional[str]): 참가한 룸 ID
        outbox (asyncio.Queue): 전송 대기 중인 메시지 큐 (크기 제한)
        connected (bool): 연결 활성 여부
        overflowed (bool): 전송 큐 초과로 닫혔는지 여부
    """

    def __init__(self, connection_id: Optional[str] = None,
                 max_pending: int = relay_config.OUTBOX_MAX_MESSAGES):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.role: Optional[Role] = None
        self.room_id: Optional[str] = None
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.connected = True
        self.overflowed = False

    def send(self, event: EventType, data: Any = None) -> bool:
        """메시지를 전송 큐에 넣습니다. 닫힌 연결이면 버립니다."""
        if not self.connected:
            logger.debug(f"[Relay] 닫힌 연결 {self.connection_id[:8]}로의 {event.value} 폐기")
            return False
        try:
            self.outbox.put_nowait(build_message(event, data))
        except asyncio.QueueFull:
            logger.warning(
                f"[Relay] 연결 {self.connection_id[:8]} 전송 큐 초과 ({self.outbox.maxsize}개), 연결 종료"
            )
            self.overflowed = True
            self.close()
            return False
        return True

    def close(self) -> None:
        """연결을 닫고 pump를 종료시킵니다.

        큐가 가득 차 있으면 대기 메시지를 버리고 종료 신호를 넣습니다.
        """
        if not self.connected:
            return
        self.connected = False
        if self.outbox.full():
            while not self.outbox.empty():
                self.outbox.get_nowait()
        self.outbox.put_nowait(None)

    async def pump(self, websocket) -> None:
        """전송 큐를 순서대로 WebSocket에 기록합니다.

        close()가 호출되거나 전송이 실패하면 종료합니다. 큐 초과로
        닫힌 경우에는 WebSocket도 닫아 수신 루프를 끝냅니다.

        Args:
            websocket: ``send_json``/``close``를 제공하는 WebSocket 객체
        """
        while True:
            message = await self.outbox.get()
            if message is None:
                break
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"[Relay] 연결 {self.connection_id[:8]} 전송 실패: {e}")
                self.connected = False
                return

        if self.overflowed:
            try:
                await websocket.close(code=1008, reason="Outbox overflow")
            except Exception as e:
                logger.warning(f"[Relay] 연결 {self.connection_id[:8]} 종료 실패: {e}")


class SignalingRelay:
    """룸 레지스트리를 소유하고 연결 간 메시지를 라우팅하는 디스패처.

    협상 로직은 전혀 없습니다. 역할은 기본값(client) 대체에만 사용됩니다.

    Attributes:
        room_manager (RoomManager): 이 릴레이가 소유하는 룸 레지스트리
        connections (Dict[str, ClientConnection]): 연결 ID → 연결
    """

    def __init__(self, room_manager: Optional[RoomManager] = None):
        self.room_manager = room_manager or RoomManager()
        self.connections: Dict[str, ClientConnection] = {}
        self._lock = asyncio.Lock()

    async def connect(self, connection: ClientConnection) -> ClientConnection:
        """새 연결을 등록하고 연결 ID를 알려줍니다."""
        async with self._lock:
            self.connections[connection.connection_id] = connection
        connection.send(EventType.PEER_ID, {"peerId": connection.connection_id})
        logger.info(f"[Relay] 연결 {connection.connection_id[:8]} 등록 "
                    f"(총 {len(self.connections)}개)")
        return connection

    def get_connection(self, connection_id: str) -> Optional[ClientConnection]:
        return self.connections.get(connection_id)

    async def join(self, connection_id: str, room_id: Optional[str], role: Optional[str] = None) -> bool:
        """연결을 룸에 참가시킵니다.

        Workflow:
            1. 룸 ID가 비어 있으면 경고 로그 + error 이벤트 후 종료 (상태 변화 없음)
            2. 역할 기록 (기본값 client)
            3. 참가 전 기존 멤버 각각에 대해 신규 참가자에게 user-joined 전송
            4. 기존 멤버 모두에게 user-joined(신규 참가자) 브로드캐스트
            5. 신규 참가자에게 room-joined 확인 전송

        Args:
            connection_id (str): 참가할 연결 ID
            room_id (Optional[str]): 룸 ID
            role (Optional[str]): "host" 또는 "client"

        Returns:
            bool: 참가 처리 여부

        Note:
            - 이미 같은 룸에 있으면 room-joined만 다시 보냄 (user-joined 중복 없음)
            - 다른 룸에 있었다면 먼저 그 룸에서 퇴장 처리 (user-left 브로드캐스트)
        """
        async with self._lock:
            connection = self.connections.get(connection_id)
            if connection is None or not connection.connected:
                logger.warning(f"[Relay] 알 수 없는 연결 {connection_id[:8]}의 join 무시")
                return False

            if not isinstance(room_id, str) or not room_id.strip():
                logger.warning(f"[Relay] 잘못된 룸 ID: {room_id!r} (연결 {connection_id[:8]})")
                connection.send(EventType.ERROR, {"message": "Invalid room ID"})
                return False

            if connection.room_id == room_id and self.room_manager.get_peer(connection_id):
                logger.info(f"[Relay] 연결 {connection_id[:8]} 이미 룸 '{room_id}'에 있음, 확인만 재전송")
                connection.send(EventType.ROOM_JOINED, {"roomId": room_id, "role": connection.role.value})
                return True

            if connection.room_id is not None:
                self._leave_room(connection)

            parsed_role = Role.parse(role)
            connection.role = parsed_role
            connection.room_id = room_id

            existing = self.room_manager.join_room(room_id, Participant(connection_id, parsed_role))

            for peer_id in existing:
                connection.send(EventType.USER_JOINED, peer_id)

            for peer_id in existing:
                member = self.connections.get(peer_id)
                if member is not None:
                    member.send(EventType.USER_JOINED, connection_id)

            connection.send(EventType.ROOM_JOINED, {"roomId": room_id, "role": parsed_role.value})

        logger.info(f"[Relay] 연결 {connection_id[:8]} 룸 '{room_id}' 참가 ({parsed_role.value}), "
                    f"기존 멤버 {len(existing)}명")
        return True

    async def relay(self, connection_id: str, kind: EventType, payload: Any) -> bool:
        """offer / answer / ice-candidate를 수신자에게 전달합니다.

        ``to``나 본문이 없으면 경고 로그를 남기고 버립니다 (재시도 없음).
        수신자가 연결되어 있지 않으면 조용히 버립니다.

        Args:
            connection_id (str): 발신 연결 ID
            kind (EventType): OFFER, ANSWER, ICE_CANDIDATE 중 하나
            payload (Any): ``{"to": ..., <body_key>: ...}``

        Returns:
            bool: 실제로 전달되었는지 여부
        """
        body_key = RELAY_BODY_KEYS.get(kind)
        if body_key is None:
            raise RelayError("Not a relayable event", {"type": getattr(kind, "value", kind)})

        async with self._lock:
            sender = self.connections.get(connection_id)
            if sender is None:
                return False

            if not isinstance(payload, dict) or not payload.get("to") or not payload.get(body_key):
                logger.warning(f"[Relay] 잘못된 {kind.value} 데이터 (연결 {connection_id[:8]}) - 폐기")
                sender.send(EventType.ERROR, {"message": f"Invalid {kind.value} data"})
                return False

            target_id = payload["to"]
            target = self.connections.get(target_id) if isinstance(target_id, str) else None
            if target is None or not target.connected:
                logger.debug(f"[Relay] 수신자 {str(target_id)[:8]} 미연결, {kind.value} 폐기")
                return False

            target.send(kind, {body_key: payload[body_key], "from": connection_id})

        logger.debug(f"[Relay] {kind.value}: {connection_id[:8]} -> {target_id[:8]}")
        return True

    async def disconnect(self, connection_id: str) -> Optional[str]:
        """연결 종료를 처리합니다.

        룸에 있었다면 남은 멤버에게 user-left를 보내고 룸에서 제거합니다.
        룸이 비면 삭제됩니다.

        Returns:
            Optional[str]: 연결이 속해 있던 룸 ID
        """
        async with self._lock:
            connection = self.connections.pop(connection_id, None)
            if connection is None:
                return None
            connection.close()
            room_id = self._leave_room(connection)

        logger.info(f"[Relay] 연결 {connection_id[:8]} 종료 (룸: {room_id})")
        return room_id

    async def dispatch(self, connection_id: str, raw: Any) -> None:
        """수신 프레임을 이벤트 종류에 따라 처리합니다.

        잘못된 프레임은 로그를 남기고 발신자에게 error 이벤트를 보냅니다.
        예외는 다른 연결이나 룸으로 전파되지 않습니다.
        """
        connection = self.connections.get(connection_id)
        if connection is None:
            return

        try:
            envelope = parse_envelope(raw)
            event_type = self._event_type(envelope.type)

            if event_type is EventType.JOIN_ROOM:
                request = parse_join_payload(envelope.data)
                await self.join(connection_id, request.room_id, request.role)
            elif event_type in RELAY_BODY_KEYS:
                await self.relay(connection_id, event_type, envelope.data)
            else:
                raise RelayError("Unknown event type", {"type": envelope.type})

        except RelayError as e:
            logger.warning(f"[Relay] 연결 {connection_id[:8]} 메시지 폐기: {e}")
            connection.send(EventType.ERROR, {"message": e.message})

    def get_room_list(self) -> list:
        return self.room_manager.get_room_list()

    def _leave_room(self, connection: ClientConnection) -> Optional[str]:
        """잠금을 잡은 상태에서 호출. 남은 멤버에게 user-left 후 레지스트리에서 제거."""
        room_id = self.room_manager.get_peer_room(connection.connection_id)
        if room_id is None:
            connection.room_id = None
            return None

        for member in self.room_manager.get_other_peers(room_id, connection.connection_id):
            other = self.connections.get(member.peer_id)
            if other is not None:
                other.send(EventType.USER_LEFT, connection.connection_id)

        self.room_manager.leave_room(connection.connection_id)
        connection.room_id = None
        return room_id

    @staticmethod
    def _event_type(name: str) -> Optional[EventType]:
        try:
            return EventType(name)
        except ValueError:
            return None
