"""협상 엔진 모듈.

참가자 한 명을 위한 로컬 미디어, 릴레이 연결, 원격 참가자별 PeerLink
상태 머신을 조율합니다. 룸 멤버십 이벤트를 offer/answer/ICE 교환으로
바꿔 실제 음성 세션을 만듭니다.

주요 기능:
    - 세션 부트스트랩 (채널 연결 → join-room → 마이크 획득)
    - user-joined 시 PeerLink 생성 (client는 즉시 offer, host는 대기)
    - offer / answer / ice-candidate 처리
    - 음소거/스피커 토글, 전체 정리

WebRTC Flow (scenario):
    1. host H가 룸 참가, client C가 같은 룸 참가
    2. H는 user-joined(C) 수신 → 링크 생성 후 대기
    3. C는 user-joined(H) 수신 → 링크 생성 후 offer 전송 (마이크 없어도 전송)
    4. H가 offer 적용 → answer 전송
    5. C가 answer 적용 → 양쪽 링크 connected

Examples:
    >>> engine = NegotiationEngine(signaling_url="ws://192.168.43.1:3000/ws")
    >>> await engine.join_session("ABC123")
    >>> event = await engine.events.get()
    >>> await engine.cleanup()
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from aiortc import RTCPeerConnection

from ..shared.errors import ConnectionError, MediaError, NegotiationError
from ..shared.messages import EventType, Role
from .channel import SignalingChannel
from .config import ConnectionConfig, ICEServerConfig, connection_config, ice_config
from .events import (
    ConnectionStateChanged,
    LocalStreamReady,
    MediaUnavailable,
    PeerLeft,
    RemoteStreamReady,
    RoomJoined,
)
from .media import LocalMediaStream, acquire_local_stream
from .peer_link import LinkState, NegotiationRole, PeerLink, candidate_to_payload

logger = logging.getLogger(__name__)


class NegotiationEngine:
    """참가자별 협상 오케스트레이터.

    전송(RTCPeerConnection), 마이크, 시그널링 채널은 팩토리로 주입할 수
    있습니다. 기본값은 aiortc와 websockets 구현입니다.

    Attributes:
        role (Role): join 시 선언할 역할
        room_id (Optional[str]): 참가 중인 룸 ID
        local_id (Optional[str]): 릴레이가 부여한 자신의 연결 ID
        links (Dict[str, PeerLink]): 원격 참가자 ID → PeerLink
        local_stream (Optional[LocalMediaStream]): 로컬 마이크 스트림 (엔진당 최대 1개)
        events (asyncio.Queue): UI 협력자에게 전달할 알림 이벤트 큐
        is_muted (bool): 음소거 여부
        is_speaker_on (bool): 스피커 표시 플래그 (출력 라우팅은 관여하지 않음)
    """

    def __init__(
        self,
        role: Any = Role.CLIENT,
        signaling_url: Optional[str] = None,
        *,
        peer_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        media_factory: Optional[Callable[[], Awaitable[LocalMediaStream]]] = None,
        channel_factory: Optional[Callable[[str], SignalingChannel]] = None,
        config: ConnectionConfig = connection_config,
        ice: ICEServerConfig = ice_config,
    ):
        self.role = Role.parse(role)
        self.signaling_url = signaling_url or config.SIGNALING_URL
        self.config = config

        self._peer_factory = peer_factory or (
            lambda: RTCPeerConnection(configuration=ice.build_rtc_configuration())
        )
        self._media_factory = media_factory or acquire_local_stream
        self._channel_factory = channel_factory or (
            lambda url: SignalingChannel(url, config.RECONNECTION_ATTEMPTS, config.RECONNECTION_DELAY)
        )

        self.events: asyncio.Queue = asyncio.Queue()

        self.room_id: Optional[str] = None
        self.local_id: Optional[str] = None
        self.channel: Optional[SignalingChannel] = None
        self.local_stream: Optional[LocalMediaStream] = None
        self.links: Dict[str, PeerLink] = {}
        self.is_muted = False
        self.is_speaker_on = True

    # ============================================================
    # 세션 부트스트랩
    # ============================================================

    async def start_hosting(self, room_id: str) -> bool:
        """host 역할로 룸을 엽니다."""
        self.role = Role.HOST
        return await self._bootstrap(room_id)

    async def join_session(self, room_id: str) -> bool:
        """client 역할로 룸에 참가합니다."""
        self.role = Role.CLIENT
        return await self._bootstrap(room_id)

    async def _bootstrap(self, room_id: str) -> bool:
        """채널 연결 → join-room 전송 → 마이크 획득.

        Returns:
            bool: 채널 연결과 join 전송이 끝나면 True (마이크 결과와 무관)

        Raises:
            ConnectionError: 연결 실패 또는 타임아웃. 채널은 정리된 상태로 남음

        Note:
            - 마이크 실패는 치명적이지 않음: MediaUnavailable 알림 후 수신 전용으로 진행
            - 진행 중 cleanup()이 호출되면 ConnectionError로 중단됨
        """
        if self.channel is not None:
            logger.info("[Engine] 기존 시그널링 채널 정리 후 재연결")
            channel, self.channel = self.channel, None
            await channel.close()

        self.room_id = room_id
        channel = self._channel_factory(self.signaling_url)
        self.channel = channel
        self._register_channel_handlers(channel)

        logger.info(f"[Engine] 시그널링 서버 연결 중: {self.signaling_url} (룸 '{room_id}', {self.role.value})")
        try:
            await asyncio.wait_for(channel.connect(), timeout=self.config.CONNECT_TIMEOUT)
        except asyncio.TimeoutError as e:
            await self._abort_bootstrap(channel)
            raise ConnectionError("Connection timeout: Could not connect to server", {
                "url": self.signaling_url,
                "timeout": self.config.CONNECT_TIMEOUT,
            }) from e
        except ConnectionError:
            await self._abort_bootstrap(channel)
            raise

        await self._send_join()

        try:
            stream = await self._media_factory()
        except MediaError as e:
            logger.warning(f"[Engine] 마이크 사용 불가, 송신 오디오 없이 계속: {e}")
            self._notify(MediaUnavailable(str(e)))
        else:
            if self.channel is not channel:
                stream.stop()
            else:
                stream.set_enabled(not self.is_muted)
                self.local_stream = stream
                self._notify(LocalStreamReady(stream))

        return True

    async def _abort_bootstrap(self, channel: SignalingChannel) -> None:
        if self.channel is channel:
            self.channel = None
            self.room_id = None
        await channel.close()

    async def _send_join(self) -> bool:
        logger.info(f"[Engine] 룸 '{self.room_id}' 참가 요청 ({self.role.value})")
        return await self._send(EventType.JOIN_ROOM, {"roomId": self.room_id, "role": self.role.value})

    async def _send(self, event: EventType, data: Any) -> bool:
        if self.channel is None:
            logger.warning(f"[Engine] 채널 없음, {event.value} 전송 생략")
            return False
        return await self.channel.send(event, data)

    def _register_channel_handlers(self, channel: SignalingChannel) -> None:
        channel.on(EventType.PEER_ID.value, self._on_peer_id)
        channel.on(EventType.ROOM_JOINED.value, self._on_room_joined)
        channel.on(EventType.USER_JOINED.value, self._on_user_joined)
        channel.on(EventType.USER_LEFT.value, self._on_user_left)
        channel.on(EventType.OFFER.value, self._on_offer)
        channel.on(EventType.ANSWER.value, self._on_answer)
        channel.on(EventType.ICE_CANDIDATE.value, self._on_ice_candidate)
        channel.on(EventType.ERROR.value, self._on_server_error)
        channel.on("disconnect", self._on_channel_disconnect)
        channel.on("reconnect", self._on_channel_reconnect)
        channel.on("reconnect_failed", self._on_reconnect_failed)

    # ============================================================
    # PeerLink 관리
    # ============================================================

    def get_peer_link(self, remote_id: str) -> Optional[PeerLink]:
        return self.links.get(remote_id)

    def _get_or_create_link(self, remote_id: str) -> Tuple[PeerLink, bool]:
        """조회와 삽입을 한 번에 수행합니다 (중간에 await 없음)."""
        link = self.links.get(remote_id)
        if link is not None:
            return link, False

        link = PeerLink(
            remote_id,
            NegotiationRole.for_role(self.role),
            self._peer_factory(),
            on_state_change=self._on_link_state,
            on_track=self._on_link_track,
            on_ice_candidate=self._on_link_candidate,
        )
        if self.local_stream is not None:
            link.attach_stream(self.local_stream)
        self.links[remote_id] = link
        logger.info(f"[Engine] PeerLink 생성: {remote_id[:8]} ({link.polarity.value})")
        return link, True

    async def create_peer_link(self, remote_id: str) -> PeerLink:
        """원격 참가자용 PeerLink를 가져오거나 만듭니다.

        새로 만든 경우에만 역할에 따라 동작합니다:
            - offerer(client): 로컬 미디어가 없어도 즉시 offer 전송
            - answerer(host): offer가 올 때까지 대기

        같은 ID로 다시 호출하면 기존 링크를 그대로 반환하며 offer를
        다시 보내지 않습니다.
        """
        link, created = self._get_or_create_link(remote_id)
        if not created:
            return link

        match link.polarity:
            case NegotiationRole.OFFERER:
                await self._send_offer(link)
            case NegotiationRole.ANSWERER:
                logger.info(f"[Engine] host: {remote_id[:8]}의 offer 대기")
        return link

    async def _send_offer(self, link: PeerLink) -> bool:
        logger.info(f"[Engine] offer 생성 (로컬 스트림: {self.local_stream is not None})")
        try:
            offer = await link.create_offer()
        except NegotiationError as e:
            logger.error(f"[Engine] offer 생성 실패: {e}")
            await self._fail_link(link)
            return False

        if self.links.get(link.remote_id) is not link:
            return False
        sent = await self._send(EventType.OFFER, {"offer": offer, "to": link.remote_id})
        if sent:
            logger.info(f"[Engine] offer 전송: {link.remote_id[:8]}")
        return sent

    async def handle_offer(self, offer: Any, from_id: str) -> PeerLink:
        """원격 offer를 처리하고 answer를 돌려보냅니다.

        Raises:
            NegotiationError: 발신자 없음 또는 offer 적용 실패 (해당 링크만 실패 처리)
        """
        if not isinstance(from_id, str) or not from_id:
            raise NegotiationError("Offer without sender")

        link, _ = self._get_or_create_link(from_id)
        if self.local_stream is not None:
            link.attach_stream(self.local_stream)

        try:
            answer = await link.accept_offer(offer)
        except NegotiationError:
            await self._fail_link(link)
            raise

        await self._send(EventType.ANSWER, {"answer": answer, "to": from_id})
        logger.info(f"[Engine] answer 전송: {from_id[:8]}")
        return link

    async def handle_answer(self, answer: Any, from_id: str) -> PeerLink:
        """원격 answer를 기존 링크에 적용합니다.

        Raises:
            NegotiationError: 해당 링크가 없거나 적용 실패 (재시도 없음)
        """
        link = self.links.get(from_id) if isinstance(from_id, str) else None
        if link is None:
            raise NegotiationError("No peer link for answer", {"from": from_id})

        try:
            await link.accept_answer(answer)
        except NegotiationError:
            await self._fail_link(link)
            raise
        return link

    async def handle_ice_candidate(self, candidate: Any, from_id: str) -> bool:
        """원격 ICE candidate를 추가합니다. 링크가 아직 없으면 조용히 무시합니다."""
        link = self.links.get(from_id) if isinstance(from_id, str) else None
        if link is None:
            logger.debug(f"[Engine] 링크 없는 피어 {str(from_id)[:8]}의 ICE candidate 무시")
            return False

        try:
            return await link.add_candidate(candidate)
        except NegotiationError:
            await self._fail_link(link)
            raise

    async def handle_user_left(self, remote_id: str) -> bool:
        """원격 참가자 퇴장 시 링크를 종료하고 폐기합니다."""
        link = self.links.pop(remote_id, None)
        if link is None:
            return False
        await link.close()
        self._notify(PeerLeft(remote_id))
        logger.info(f"[Engine] 참가자 {remote_id[:8]} 퇴장, 링크 폐기")
        return True

    async def _fail_link(self, link: PeerLink) -> None:
        if self.links.get(link.remote_id) is link:
            del self.links[link.remote_id]
        await link.close(LinkState.FAILED)
        self._notify(ConnectionStateChanged("failed", link.remote_id))

    async def _discard_all_links(self) -> None:
        links = list(self.links.values())
        self.links.clear()
        for link in links:
            await link.close()

    # ============================================================
    # PeerLink 콜백
    # ============================================================

    async def _on_link_state(self, link: PeerLink, raw_state: str) -> None:
        self._notify(ConnectionStateChanged(raw_state, link.remote_id))
        if link.is_terminal and self.links.get(link.remote_id) is link:
            del self.links[link.remote_id]
            await link.close(link.state)

    async def _on_link_track(self, link: PeerLink, track) -> None:
        self._notify(RemoteStreamReady(link.remote_id, track))

    async def _on_link_candidate(self, link: PeerLink, candidate) -> None:
        await self._send(EventType.ICE_CANDIDATE, {
            "candidate": candidate_to_payload(candidate),
            "to": link.remote_id,
        })

    # ============================================================
    # 채널 이벤트 핸들러
    # ============================================================

    def _on_peer_id(self, data: Any) -> None:
        if isinstance(data, dict):
            self.local_id = data.get("peerId")

    def _on_room_joined(self, data: Any) -> None:
        data = data if isinstance(data, dict) else {}
        logger.info(f"[Engine] 룸 참가 완료: {data}")
        self._notify(RoomJoined(data.get("roomId") or self.room_id or "", data.get("role") or self.role.value))

    async def _on_user_joined(self, remote_id: Any) -> None:
        if not isinstance(remote_id, str) or not remote_id:
            logger.warning(f"[Engine] 잘못된 user-joined: {remote_id!r}")
            return
        logger.info(f"[Engine] 참가자 입장: {remote_id[:8]}")
        await self.create_peer_link(remote_id)

    async def _on_user_left(self, remote_id: Any) -> None:
        if isinstance(remote_id, str):
            await self.handle_user_left(remote_id)

    async def _on_offer(self, data: Any) -> None:
        if not isinstance(data, dict):
            logger.warning("[Engine] 잘못된 offer 메시지 무시")
            return
        try:
            await self.handle_offer(data.get("offer"), data.get("from"))
        except NegotiationError as e:
            logger.error(f"[Engine] offer 처리 실패: {e}")

    async def _on_answer(self, data: Any) -> None:
        if not isinstance(data, dict):
            logger.warning("[Engine] 잘못된 answer 메시지 무시")
            return
        try:
            await self.handle_answer(data.get("answer"), data.get("from"))
        except NegotiationError as e:
            logger.error(f"[Engine] answer 처리 실패: {e}")

    async def _on_ice_candidate(self, data: Any) -> None:
        if not isinstance(data, dict):
            return
        try:
            await self.handle_ice_candidate(data.get("candidate"), data.get("from"))
        except NegotiationError as e:
            logger.error(f"[Engine] ICE candidate 처리 실패: {e}")

    def _on_server_error(self, data: Any) -> None:
        message = data.get("message") if isinstance(data, dict) else data
        logger.error(f"[Engine] 서버 오류: {message}")
        self._notify(ConnectionStateChanged("error"))

    def _on_channel_disconnect(self, reason: Any) -> None:
        logger.warning(f"[Engine] 시그널링 연결 끊김: {reason}")
        self._notify(ConnectionStateChanged("disconnected"))

    async def _on_channel_reconnect(self, attempt: Any) -> None:
        # 이전 링크는 재사용하지 않음. 새 user-joined 순서로 다시 협상
        logger.info(f"[Engine] 재연결됨, 링크 {len(self.links)}개 폐기 후 룸 재참가")
        await self._discard_all_links()
        await self._send_join()

    def _on_reconnect_failed(self, _: Any) -> None:
        self._notify(ConnectionStateChanged("failed"))

    def _notify(self, event: Any) -> None:
        self.events.put_nowait(event)

    # ============================================================
    # 보조 동작
    # ============================================================

    def toggle_mute(self) -> bool:
        """음소거를 토글하고 새 음소거 상태를 반환합니다."""
        self.is_muted = not self.is_muted
        if self.local_stream is not None:
            self.local_stream.set_enabled(not self.is_muted)
        return self.is_muted

    def toggle_speaker(self) -> bool:
        """스피커 플래그를 토글합니다 (UI 표시용)."""
        self.is_speaker_on = not self.is_speaker_on
        return self.is_speaker_on

    async def cleanup(self) -> None:
        """마이크 중지, 모든 링크 종료, 채널 종료 후 초기 상태로 되돌립니다.

        여러 번 호출하거나 시작하지 않은 엔진에서 호출해도 안전합니다.
        """
        channel, self.channel = self.channel, None

        stream, self.local_stream = self.local_stream, None
        if stream is not None:
            stream.stop()

        await self._discard_all_links()

        if channel is not None:
            await channel.close()

        self.room_id = None
        self.local_id = None
        self.is_muted = False
        self.is_speaker_on = True
        logger.info("[Engine] 정리 완료")
