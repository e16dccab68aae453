"""룸 레지스트리 모듈.

시그널링 릴레이가 소유하는 룸(방)과 참가자 멤버십을 관리합니다.
룸은 첫 참가 시 생성되고 마지막 참가자가 나가면 삭제되며,
서버 메모리에만 존재합니다 (영속화 없음).

Architecture:
    - rooms: Dict[str, Dict[str, Participant]] - 룸 ID → 참가자 맵
    - peer_to_room: Dict[str, str] - 참가자 ID → 룸 ID (빠른 조회용)

Thread Safety:
    - RoomManager 자체는 동기화하지 않음
    - SignalingRelay가 단일 asyncio.Lock 아래에서만 호출함

Examples:
    >>> manager = RoomManager()
    >>> manager.join_room("ABC123", Participant("peer-1", Role.HOST))
    []
    >>> manager.join_room("ABC123", Participant("peer-2", Role.CLIENT))
    ['peer-1']
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..shared.messages import Role

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    """룸에 참가한 연결을 나타내는 데이터 클래스.

    Attributes:
        peer_id (str): 릴레이가 연결 시점에 부여한 고유 ID
        role (Role): join 시 선언한 역할
    """
    peer_id: str
    role: Role = Role.CLIENT


class RoomManager:
    """룸과 참가자 멤버십을 관리하는 레지스트리.

    룸 ID는 서버가 해석하지 않는 불투명한 문자열입니다. 대소문자 구분은
    관례일 뿐 서버에서 강제하지 않습니다.

    Attributes:
        rooms (Dict[str, Dict[str, Participant]]): 룸 ID를 키로 하는 참가자 딕셔너리
        peer_to_room (Dict[str, str]): 참가자 ID → 룸 ID 역 매핑
    """

    def __init__(self):
        # room_id -> {peer_id: Participant}
        self.rooms: Dict[str, Dict[str, Participant]] = {}

        # peer_id -> room_id (for quick lookup)
        self.peer_to_room: Dict[str, str] = {}

    def create_room(self, room_id: str) -> None:
        """룸이 없으면 빈 룸을 생성합니다."""
        if room_id not in self.rooms:
            self.rooms[room_id] = {}
            logger.info(f"[Room] 룸 '{room_id}' 생성")

    def join_room(self, room_id: str, participant: Participant) -> List[str]:
        """참가자를 룸에 추가하고, 추가 전의 기존 멤버 ID 목록을 반환합니다.

        룸이 없으면 자동으로 생성합니다. 반환 목록의 순서는 룸에 들어온
        순서이며, 한 번의 호출 안에서 안정적입니다.

        Args:
            room_id (str): 참가할 룸 ID
            participant (Participant): 참가자 정보

        Returns:
            List[str]: 참가자를 추가하기 전 룸에 있던 멤버 ID 리스트
                       (참가자 자신은 포함하지 않음)

        Note:
            - 다른 룸에 있던 참가자는 먼저 그 룸에서 제거됨
            - 같은 룸에 이미 있으면 역할만 갱신하고 기존 멤버를 반환
        """
        current = self.peer_to_room.get(participant.peer_id)
        if current is not None and current != room_id:
            self.leave_room(participant.peer_id)

        self.create_room(room_id)
        members = self.rooms[room_id]
        existing = [peer_id for peer_id in members if peer_id != participant.peer_id]

        members[participant.peer_id] = participant
        self.peer_to_room[participant.peer_id] = room_id

        logger.info(f"[Room] 참가자 {participant.peer_id[:8]} ({participant.role.value}) "
                    f"룸 '{room_id}' 입장. 현재 {len(members)}명")
        return existing

    def leave_room(self, peer_id: str) -> Optional[str]:
        """참가자를 현재 룸에서 제거합니다.

        마지막 참가자가 나가면 룸을 삭제합니다.

        Args:
            peer_id (str): 퇴장할 참가자 ID

        Returns:
            Optional[str]: 참가자가 속해 있던 룸 ID. 어떤 룸에도 없었으면 None
        """
        room_id = self.peer_to_room.pop(peer_id, None)
        if room_id is None:
            return None

        members = self.rooms.get(room_id)
        if members is not None:
            members.pop(peer_id, None)
            if not members:
                del self.rooms[room_id]
                logger.info(f"[Room] 룸 '{room_id}' 삭제 (비어 있음)")
            else:
                logger.info(f"[Room] 참가자 {peer_id[:8]} 룸 '{room_id}' 퇴장. "
                            f"현재 {len(members)}명")
        return room_id

    def get_room_peers(self, room_id: str) -> List[Participant]:
        """룸의 모든 참가자 목록을 반환합니다. 룸이 없으면 빈 리스트."""
        return list(self.rooms.get(room_id, {}).values())

    def get_other_peers(self, room_id: str, exclude_peer_id: str) -> List[Participant]:
        """특정 참가자를 제외한 룸의 다른 참가자 목록을 반환합니다."""
        return [p for p in self.rooms.get(room_id, {}).values()
                if p.peer_id != exclude_peer_id]

    def get_peer_room(self, peer_id: str) -> Optional[str]:
        """참가자가 속한 룸 ID를 반환합니다."""
        return self.peer_to_room.get(peer_id)

    def get_peer(self, peer_id: str) -> Optional[Participant]:
        """참가자 ID로 Participant를 조회합니다."""
        room_id = self.peer_to_room.get(peer_id)
        if room_id and room_id in self.rooms:
            return self.rooms[room_id].get(peer_id)
        return None

    def has_room(self, room_id: str) -> bool:
        return room_id in self.rooms

    def get_room_list(self) -> List[dict]:
        """모든 룸의 요약 정보를 반환합니다.

        Returns:
            List[dict]: 각 항목은 room_id, peer_count, peers(peer_id, role) 포함
        """
        return [
            {
                "room_id": room_id,
                "peer_count": len(members),
                "peers": [{"peer_id": p.peer_id, "role": p.role.value}
                          for p in members.values()],
            }
            for room_id, members in self.rooms.items()
        ]

    def get_room_count(self, room_id: str) -> int:
        """룸의 현재 참가자 수를 반환합니다. 룸이 없으면 0."""
        return len(self.rooms.get(room_id, {}))
