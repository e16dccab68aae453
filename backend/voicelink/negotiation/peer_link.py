"""PeerLink 상태 머신 모듈.

로컬 참가자와 원격 참가자 한 명 사이의 협상 세션을 관리합니다.
aiortc RTCPeerConnection을 전송 핸들로 사용합니다.

State Machine:
    new → negotiating → connected → {disconnected | failed}
    - disconnected / failed는 종료 상태이며, 종료된 링크는 재사용하지 않음
    - 새 user-joined 이벤트가 오면 엔진이 새 링크를 생성

Transport State Mapping:
    - connecting → negotiating
    - connected → connected
    - disconnected, closed → disconnected
    - failed → failed

Examples:
    >>> link = PeerLink("peer-123", NegotiationRole.OFFERER, RTCPeerConnection())
    >>> offer = await link.create_offer()
    >>> print(link.state)
    LinkState.NEGOTIATING
"""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..shared.errors import NegotiationError
from ..shared.messages import Role

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    """PeerLink 상태."""

    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class NegotiationRole(str, Enum):
    """협상 극성. 로컬 역할에서 결정됩니다."""

    OFFERER = "offerer"
    ANSWERER = "answerer"

    @classmethod
    def for_role(cls, role: Role) -> "NegotiationRole":
        """host는 offer를 기다리고, client는 먼저 offer를 보냅니다."""
        match role:
            case Role.HOST:
                return cls.ANSWERER
            case Role.CLIENT:
                return cls.OFFERER
            case _:
                raise ValueError(f"Unknown role: {role!r}")


TERMINAL_STATES = frozenset({LinkState.DISCONNECTED, LinkState.FAILED})

_TRANSITIONS: Dict[LinkState, frozenset] = {
    LinkState.NEW: frozenset({LinkState.NEGOTIATING, LinkState.CONNECTED,
                              LinkState.DISCONNECTED, LinkState.FAILED}),
    LinkState.NEGOTIATING: frozenset({LinkState.CONNECTED, LinkState.DISCONNECTED, LinkState.FAILED}),
    LinkState.CONNECTED: frozenset({LinkState.DISCONNECTED, LinkState.FAILED}),
    LinkState.DISCONNECTED: frozenset(),
    LinkState.FAILED: frozenset(),
}

_TRANSPORT_STATES: Dict[str, LinkState] = {
    "connecting": LinkState.NEGOTIATING,
    "connected": LinkState.CONNECTED,
    "disconnected": LinkState.DISCONNECTED,
    "closed": LinkState.DISCONNECTED,
    "failed": LinkState.FAILED,
}

StateCallback = Callable[["PeerLink", str], Awaitable[None]]
TrackCallback = Callable[["PeerLink", MediaStreamTrack], Awaitable[None]]
CandidateCallback = Callable[["PeerLink", RTCIceCandidate], Awaitable[None]]


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def _to_description(payload: Any, expected_type: str) -> RTCSessionDescription:
    """릴레이된 SDP 객체를 RTCSessionDescription으로 변환합니다."""
    if not isinstance(payload, dict) or not isinstance(payload.get("sdp"), str):
        raise NegotiationError(f"Malformed {expected_type}", {"received": type(payload).__name__})
    if payload.get("type", expected_type) != expected_type:
        raise NegotiationError("Unexpected description type", {
            "expected": expected_type,
            "received": payload.get("type"),
        })
    return RTCSessionDescription(sdp=payload["sdp"], type=expected_type)


def parse_candidate(payload: Any) -> Optional[RTCIceCandidate]:
    """릴레이된 ICE candidate를 파싱합니다.

    Args:
        payload: ``{"candidate": "candidate:...", "sdpMid", "sdpMLineIndex"}``
                 또는 candidate 문자열

    Returns:
        Optional[RTCIceCandidate]: 파싱된 후보. end-of-candidates(빈 문자열)면 None

    Raises:
        NegotiationError: 형식이 잘못된 경우
    """
    if isinstance(payload, dict):
        candidate_str = payload.get("candidate") or ""
        sdp_mid = payload.get("sdpMid")
        sdp_mline_index = payload.get("sdpMLineIndex")
    elif isinstance(payload, str):
        candidate_str, sdp_mid, sdp_mline_index = payload, None, None
    else:
        raise NegotiationError("Malformed ICE candidate", {"received": type(payload).__name__})

    if not isinstance(candidate_str, str):
        raise NegotiationError("Malformed ICE candidate", {"candidate": repr(candidate_str)})
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]
    if not candidate_str.strip():
        return None
    if len(candidate_str.split()) < 8:
        raise NegotiationError("Malformed ICE candidate", {"candidate": candidate_str})

    try:
        candidate = candidate_from_sdp(candidate_str)
    except (ValueError, IndexError) as e:
        raise NegotiationError("Malformed ICE candidate", {"candidate": candidate_str, "error": str(e)}) from e
    candidate.sdpMid = sdp_mid
    candidate.sdpMLineIndex = sdp_mline_index
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """로컬 ICE candidate를 릴레이용 딕셔너리로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class PeerLink:
    """원격 참가자 한 명과의 협상 세션.

    링크는 자신을 만든 엔진이 독점 소유하며, 로컬 미디어 스트림은
    트랙을 붙이기만 할 뿐 소유하지 않습니다.

    Attributes:
        remote_id (str): 원격 참가자 ID
        polarity (NegotiationRole): offerer 또는 answerer
        pc (RTCPeerConnection): 전송 핸들
        state (LinkState): 현재 상태
    """

    def __init__(
        self,
        remote_id: str,
        polarity: NegotiationRole,
        pc: RTCPeerConnection,
        on_state_change: Optional[StateCallback] = None,
        on_track: Optional[TrackCallback] = None,
        on_ice_candidate: Optional[CandidateCallback] = None,
    ):
        self.remote_id = remote_id
        self.polarity = polarity
        self.pc = pc
        self.state = LinkState.NEW
        self._attached_tracks: List[MediaStreamTrack] = []
        self._outbound_tracks: List[MediaStreamTrack] = []
        self._recv_transceiver_added = False
        self._closed = False

        self._on_state_change = on_state_change
        self._on_track = on_track
        self._on_ice_candidate = on_ice_candidate

        self._register_handlers()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def attached_tracks(self) -> List[MediaStreamTrack]:
        return list(self._attached_tracks)

    @property
    def outbound_tracks(self) -> List[MediaStreamTrack]:
        """송신자에 붙은 구독 트랙 (attached_tracks와 같은 순서)."""
        return list(self._outbound_tracks)

    def _register_handlers(self) -> None:
        pc = self.pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            await self.handle_transport_state(pc.connectionState)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            logger.info(f"[PeerLink] {self.remote_id[:8]} {track.kind} 트랙 수신")
            if self._on_track and not self._closed:
                await self._on_track(self, track)

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate and self._on_ice_candidate and not self._closed:
                await self._on_ice_candidate(self, candidate)

    def _transition(self, new_state: LinkState) -> bool:
        """허용된 전이만 수행합니다. 종료 상태 이후의 전이는 무시됩니다."""
        if new_state == self.state:
            return False
        if new_state not in _TRANSITIONS[self.state]:
            logger.debug(f"[PeerLink] {self.remote_id[:8]} 전이 무시: {self.state.value} -> {new_state.value}")
            return False
        logger.info(f"[PeerLink] {self.remote_id[:8]} 상태: {self.state.value} -> {new_state.value}")
        self.state = new_state
        return True

    def _ensure_open(self) -> None:
        if self._closed or self.is_terminal:
            raise NegotiationError("Peer link is closed", {"remote_id": self.remote_id, "state": self.state.value})

    def attach_stream(self, stream) -> int:
        """로컬 스트림의 트랙 중 아직 붙지 않은 트랙을 추가합니다.

        원본 트랙 대신 ``stream.subscribe()``로 만든 구독 트랙을 송신자에
        붙입니다. 중복 여부는 원본 트랙 기준으로 판단합니다.

        Returns:
            int: 새로 추가된 트랙 수
        """
        added = 0
        for track in stream.get_tracks():
            if track in self._attached_tracks:
                continue
            outbound = stream.subscribe(track)
            try:
                self.pc.addTrack(outbound)
            except Exception as e:
                logger.warning(f"[PeerLink] {self.remote_id[:8]} 트랙 추가 실패: {e}")
                outbound.stop()
                continue
            self._attached_tracks.append(track)
            self._outbound_tracks.append(outbound)
            added += 1
        if added:
            logger.info(f"[PeerLink] {self.remote_id[:8]}에 로컬 트랙 {added}개 추가")
        return added

    async def create_offer(self) -> Dict[str, str]:
        """로컬 offer를 만들고 local description으로 설정합니다.

        송신 트랙이 없어도 원격 오디오를 받을 수 있도록 recvonly
        오디오 transceiver를 추가합니다.

        Returns:
            dict: ``{"type": "offer", "sdp": ...}``

        Raises:
            NegotiationError: 링크가 닫혔거나 offer 생성에 실패한 경우
        """
        self._ensure_open()
        self._transition(LinkState.NEGOTIATING)

        if not self._attached_tracks and not self._recv_transceiver_added:
            self.pc.addTransceiver("audio", direction="recvonly")
            self._recv_transceiver_added = True

        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError("Failed to create offer", {"remote_id": self.remote_id, "error": str(e)}) from e

        logger.info(f"[PeerLink] {self.remote_id[:8]} offer 생성 (송신 트랙 {len(self._attached_tracks)}개)")
        return description_to_dict(self.pc.localDescription)

    async def accept_offer(self, offer: Any) -> Dict[str, str]:
        """원격 offer를 적용하고 answer를 만들어 반환합니다.

        Returns:
            dict: ``{"type": "answer", "sdp": ...}``

        Raises:
            NegotiationError: 형식 오류 또는 SDP 적용 실패
        """
        self._ensure_open()
        description = _to_description(offer, "offer")
        self._transition(LinkState.NEGOTIATING)

        try:
            await self.pc.setRemoteDescription(description)
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError("Failed to apply offer", {"remote_id": self.remote_id, "error": str(e)}) from e

        logger.info(f"[PeerLink] {self.remote_id[:8]} answer 생성")
        return description_to_dict(self.pc.localDescription)

    async def accept_answer(self, answer: Any) -> None:
        """원격 answer를 적용합니다."""
        self._ensure_open()
        description = _to_description(answer, "answer")
        try:
            await self.pc.setRemoteDescription(description)
        except Exception as e:
            raise NegotiationError("Failed to apply answer", {"remote_id": self.remote_id, "error": str(e)}) from e
        logger.info(f"[PeerLink] {self.remote_id[:8]} answer 적용")

    async def add_candidate(self, payload: Any) -> bool:
        """원격 ICE candidate를 전송 계층에 추가합니다.

        Returns:
            bool: 추가 여부 (end-of-candidates면 False)
        """
        self._ensure_open()
        candidate = parse_candidate(payload)
        if candidate is None:
            return False
        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            raise NegotiationError("Failed to add ICE candidate", {"remote_id": self.remote_id, "error": str(e)}) from e
        logger.debug(f"[PeerLink] {self.remote_id[:8]} ICE candidate 추가")
        return True

    async def handle_transport_state(self, raw_state: str) -> None:
        """전송 계층 상태 변경을 반영하고 원래 문자열 그대로 상위에 알립니다."""
        if self._closed:
            return
        mapped = _TRANSPORT_STATES.get(raw_state)
        if mapped is not None:
            self._transition(mapped)
        if self._on_state_change:
            await self._on_state_change(self, raw_state)

    async def close(self, final_state: LinkState = LinkState.DISCONNECTED) -> None:
        """링크를 종료합니다. 여러 번 호출해도 안전합니다."""
        if self._closed:
            return
        self._closed = True
        self._transition(final_state)
        try:
            await self.pc.close()
        except Exception as e:
            logger.warning(f"[PeerLink] {self.remote_id[:8]} 연결 종료 중 오류: {e}")
        self._attached_tracks.clear()
        self._outbound_tracks.clear()
        logger.info(f"[PeerLink] {self.remote_id[:8]} 종료 ({self.state.value})")
