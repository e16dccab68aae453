"""NegotiationEngine 테스트.

전송, 마이크, 채널은 fakes 모듈의 대역을 팩토리로 주입합니다.
시나리오 테스트는 실제 SignalingRelay를 통해 두 엔진을 연결합니다.
"""

import asyncio

import pytest
from aiortc import RTCIceCandidate
from aiortc.mediastreams import MediaStreamError

from fakes import FakeChannel, FakePeerConnection, FakeStream, ToneTrack, no_microphone
from voicelink.negotiation import (
    ConnectionConfig,
    ConnectionStateChanged,
    LinkState,
    LocalMediaStream,
    LocalStreamReady,
    MediaUnavailable,
    MutableAudioTrack,
    NegotiationEngine,
    PeerLeft,
    RoomJoined,
)
from voicelink.shared import ConnectionError, NegotiationError, Role, build_message
from voicelink.signaling import ClientConnection, SignalingRelay

CANDIDATE = {"candidate": "candidate:1 1 udp 2130706431 192.168.43.2 54321 typ host",
             "sdpMid": "0", "sdpMLineIndex": 0}


class Harness:
    """엔진과 그 엔진이 만든 대역들을 함께 보관합니다."""

    def __init__(self, media=True, pc_failures=(), config=None, channel_cls=FakeChannel,
                 stream_factory=FakeStream, **channel_kwargs):
        self.channels = []
        self.pcs = []
        self.streams = []
        self.pc_failures = pc_failures

        def channel_factory(url):
            channel = channel_cls(url, **channel_kwargs)
            self.channels.append(channel)
            return channel

        def peer_factory():
            pc = FakePeerConnection(fail_on=self.pc_failures)
            self.pcs.append(pc)
            return pc

        async def media_factory():
            stream = stream_factory()
            self.streams.append(stream)
            return stream

        kwargs = {"config": config} if config else {}
        self.engine = NegotiationEngine(
            signaling_url="ws://relay/ws",
            peer_factory=peer_factory,
            media_factory=media_factory if media else no_microphone,
            channel_factory=channel_factory,
            **kwargs,
        )

    @property
    def channel(self):
        return self.channels[-1]

    def events(self):
        events = []
        while not self.engine.events.empty():
            events.append(self.engine.events.get_nowait())
        return events


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ============================================================
# 부트스트랩
# ============================================================

async def test_join_session_sends_join_and_acquires_media():
    h = Harness()
    assert await h.engine.join_session("ABC123")

    assert h.engine.role is Role.CLIENT
    assert h.channel.sent == [("join-room", {"roomId": "ABC123", "role": "client"})]
    assert h.engine.local_stream is h.streams[0]
    assert [type(e) for e in h.events()] == [LocalStreamReady]

    await h.channel.receive("peer-id", {"peerId": "me"})
    await h.channel.receive("room-joined", {"roomId": "ABC123", "role": "client"})
    assert h.engine.local_id == "me"
    assert h.events() == [RoomJoined("ABC123", "client")]


async def test_start_hosting_declares_host():
    h = Harness()
    await h.engine.start_hosting("ABC123")
    assert h.channel.sent == [("join-room", {"roomId": "ABC123", "role": "host"})]


async def test_media_failure_is_not_fatal():
    h = Harness(media=False)
    assert await h.engine.join_session("ABC123")

    assert h.engine.local_stream is None
    events = h.events()
    assert len(events) == 1
    assert isinstance(events[0], MediaUnavailable)
    assert "Permission denied" in events[0].message


async def test_bootstrap_timeout_leaves_no_partial_state():
    h = Harness(config=ConnectionConfig(CONNECT_TIMEOUT=0.05), connect_delay=1.0)
    with pytest.raises(ConnectionError):
        await h.engine.join_session("ABC123")

    assert h.engine.channel is None
    assert h.engine.room_id is None
    assert h.channel.closed
    assert h.channel.sent == []
    assert h.streams == []


async def test_bootstrap_connect_error_propagates():
    h = Harness(connect_error=ConnectionError("Could not connect to server"))
    with pytest.raises(ConnectionError):
        await h.engine.start_hosting("ABC123")
    assert h.engine.channel is None
    assert h.channel.closed


async def test_second_bootstrap_closes_previous_channel():
    h = Harness()
    await h.engine.join_session("R1")
    first = h.channel
    await h.engine.join_session("R2")

    assert first.closed
    assert h.engine.channel is h.channel
    assert h.channel is not first
    assert h.engine.room_id == "R2"


# ============================================================
# PeerLink 생성과 협상
# ============================================================

async def test_client_offers_even_without_media():
    h = Harness(media=False)
    await h.engine.join_session("ABC123")
    await h.channel.receive("user-joined", "host-1")

    link = h.engine.get_peer_link("host-1")
    assert link.state is LinkState.NEGOTIATING
    assert h.pcs[0].transceivers == [("audio", "recvonly")]
    assert h.channel.sent[-1] == ("offer", {"offer": {"type": "offer", "sdp": "v=0 offer"}, "to": "host-1"})


async def test_create_peer_link_is_idempotent():
    h = Harness()
    await h.engine.join_session("ABC123")

    first = await h.engine.create_peer_link("host-1")
    second = await h.engine.create_peer_link("host-1")

    assert first is second
    assert len(h.pcs) == 1
    assert h.channel.sent_types().count("offer") == 1
    assert first.attached_tracks == h.streams[0].tracks


async def test_concurrent_create_peer_link_creates_one_link():
    h = Harness()
    await h.engine.join_session("ABC123")

    links = await asyncio.gather(*(h.engine.create_peer_link("host-1") for _ in range(5)))
    assert all(link is links[0] for link in links)
    assert len(h.pcs) == 1
    assert h.channel.sent_types().count("offer") == 1


async def test_host_waits_then_answers():
    h = Harness()
    await h.engine.start_hosting("ABC123")
    await h.channel.receive("user-joined", "client-1")

    assert "offer" not in h.channel.sent_types()
    assert h.engine.get_peer_link("client-1").state is LinkState.NEW

    await h.channel.receive("offer", {"offer": {"type": "offer", "sdp": "v=0 remote"}, "from": "client-1"})

    assert h.channel.sent[-1] == ("answer", {"answer": {"type": "answer", "sdp": "v=0 answer"}, "to": "client-1"})
    assert h.pcs[0].remoteDescription.sdp == "v=0 remote"
    assert [t.source for t in h.pcs[0].tracks] == h.streams[0].tracks


async def test_offer_before_user_joined_creates_link():
    h = Harness()
    await h.engine.start_hosting("ABC123")
    link = await h.engine.handle_offer({"type": "offer", "sdp": "v=0"}, "client-1")
    assert h.engine.get_peer_link("client-1") is link
    assert h.channel.sent_types()[-1] == "answer"


async def test_answer_for_unknown_peer_raises():
    h = Harness()
    await h.engine.join_session("ABC123")
    with pytest.raises(NegotiationError):
        await h.engine.handle_answer({"type": "answer", "sdp": "v=0"}, "ghost")

    # 채널 경유 시 로그만 남고 엔진은 계속 동작
    await h.channel.receive("answer", {"answer": {"type": "answer", "sdp": "v=0"}, "from": "ghost"})
    assert h.engine.links == {}


async def test_answer_completes_offer():
    h = Harness()
    await h.engine.join_session("ABC123")
    await h.channel.receive("user-joined", "host-1")
    await h.channel.receive("answer", {"answer": {"type": "answer", "sdp": "v=0 remote"}, "from": "host-1"})
    assert h.pcs[0].remoteDescription.sdp == "v=0 remote"


async def test_failed_offer_application_fails_only_that_link():
    h = Harness(pc_failures={"setRemoteDescription"})
    await h.engine.start_hosting("ABC123")
    await h.engine.create_peer_link("other")
    h.events()

    with pytest.raises(NegotiationError):
        await h.engine.handle_offer({"type": "offer", "sdp": "v=0"}, "client-1")

    assert "client-1" not in h.engine.links
    assert "other" in h.engine.links
    assert h.events() == [ConnectionStateChanged("failed", "client-1")]


async def test_remote_candidates():
    h = Harness()
    await h.engine.join_session("ABC123")
    assert not await h.engine.handle_ice_candidate(CANDIDATE, "ghost")

    await h.channel.receive("user-joined", "host-1")
    assert await h.engine.handle_ice_candidate(CANDIDATE, "host-1")
    assert h.pcs[0].candidates[0].ip == "192.168.43.2"


async def test_malformed_candidate_fails_link():
    h = Harness()
    await h.engine.join_session("ABC123")
    await h.channel.receive("user-joined", "host-1")
    h.events()

    await h.channel.receive("ice-candidate", {"candidate": {"candidate": "candidate:bad"}, "from": "host-1"})
    assert "host-1" not in h.engine.links
    assert h.events() == [ConnectionStateChanged("failed", "host-1")]


async def test_local_candidates_are_relayed():
    h = Harness()
    await h.engine.join_session("ABC123")
    await h.channel.receive("user-joined", "host-1")

    candidate = RTCIceCandidate(component=1, foundation="1", ip="192.168.43.5", port=5000,
                                priority=2130706431, protocol="udp", type="host",
                                sdpMid="0", sdpMLineIndex=0)
    await h.pcs[0].emit("icecandidate", candidate)

    event, data = h.channel.sent[-1]
    assert event == "ice-candidate"
    assert data["to"] == "host-1"
    assert data["candidate"]["candidate"].startswith("candidate:1 1 udp")
    assert data["candidate"]["sdpMid"] == "0"


async def test_terminal_transport_state_discards_link():
    h = Harness()
    await h.engine.join_session("ABC123")
    await h.channel.receive("user-joined", "host-1")
    h.events()

    await h.pcs[0].set_connection_state("connected")
    await h.pcs[0].set_connection_state("failed")

    assert h.events() == [
        ConnectionStateChanged("connected", "host-1"),
        ConnectionStateChanged("failed", "host-1"),
    ]
    assert "host-1" not in h.engine.links
    assert h.pcs[0].close_count == 1

    # 새 user-joined는 새 링크를 만듦
    await h.channel.receive("user-joined", "host-1")
    assert len(h.pcs) == 2
    assert h.engine.get_peer_link("host-1").pc is h.pcs[1]


async def test_remote_track_is_reported():
    h = Harness()
    await h.engine.start_hosting("ABC123")
    await h.channel.receive("user-joined", "client-1")
    h.events()

    track = object()
    await h.pcs[0].emit("track", track)
    event = h.events()[0]
    assert event.peer_id == "client-1"
    assert event.track is track


async def test_user_left_closes_link():
    h = Harness()
    await h.engine.start_hosting("ABC123")
    await h.channel.receive("user-joined", "client-1")
    h.events()

    await h.channel.receive("user-left", "client-1")
    assert h.engine.links == {}
    assert h.pcs[0].close_count == 1
    assert h.events() == [PeerLeft("client-1")]

    assert not await h.engine.handle_user_left("client-1")


# ============================================================
# 채널 수명 이벤트
# ============================================================

async def test_channel_lifecycle_events():
    h = Harness()
    await h.engine.join_session("ABC123")
    h.events()

    await h.channel.receive("error", {"message": "Invalid room ID"})
    await h.channel.receive("disconnect", "connection closed")
    await h.channel.receive("reconnect_failed")

    assert h.events() == [
        ConnectionStateChanged("error"),
        ConnectionStateChanged("disconnected"),
        ConnectionStateChanged("failed"),
    ]


async def test_reconnect_discards_links_and_rejoins():
    h = Harness()
    await h.engine.join_session("ABC123")
    await h.channel.receive("user-joined", "host-1")

    await h.channel.receive("reconnect", 1)

    assert h.engine.links == {}
    assert h.pcs[0].close_count == 1
    assert h.channel.sent[-1] == ("join-room", {"roomId": "ABC123", "role": "client"})


# ============================================================
# 음소거 / 스피커 / 정리
# ============================================================

async def test_toggle_mute_flips_and_applies_to_stream():
    h = Harness()
    assert h.engine.toggle_mute() is True
    await h.engine.join_session("ABC123")

    track = h.streams[0].tracks[0]
    assert track.enabled is False

    assert h.engine.toggle_mute() is False
    assert track.enabled is True


async def test_toggle_speaker_flips_flag():
    h = Harness()
    assert h.engine.toggle_speaker() is False
    assert h.engine.toggle_speaker() is True


async def test_cleanup_is_idempotent():
    h = Harness()
    await h.engine.cleanup()
    await h.engine.cleanup()

    await h.engine.join_session("ABC123")
    await h.channel.receive("user-joined", "host-1")
    h.engine.toggle_mute()

    await h.engine.cleanup()
    await h.engine.cleanup()

    assert h.streams[0].stopped
    assert h.pcs[0].close_count == 1
    assert h.channel.closed
    assert h.engine.links == {}
    assert h.engine.channel is None
    assert h.engine.local_stream is None
    assert h.engine.room_id is None
    assert h.engine.is_muted is False
    assert h.engine.is_speaker_on is True


# ============================================================
# 여러 링크에 같은 로컬 오디오 송신
# ============================================================

def tone_stream():
    return LocalMediaStream([MutableAudioTrack(ToneTrack())])


async def pull_pts(track, count):
    return [(await track.recv()).pts for _ in range(count)]


async def first_silent_pts(track, limit=50):
    for _ in range(limit):
        frame = await track.recv()
        if not any(bytes(frame.planes[0])):
            return frame.pts
    raise AssertionError("no silent frame")


async def test_host_sends_every_frame_to_each_client():
    h = Harness(stream_factory=tone_stream)
    await h.engine.start_hosting("ABC123")
    await h.channel.receive("user-joined", "client-1")
    await h.channel.receive("user-joined", "client-2")

    source = h.streams[0].get_tracks()[0]
    assert h.engine.get_peer_link("client-1").attached_tracks == [source]
    assert h.engine.get_peer_link("client-2").attached_tracks == [source]

    first, second = h.pcs[0].tracks[0], h.pcs[1].tracks[0]
    assert first is not second
    assert source not in (first, second)

    frames = await asyncio.gather(pull_pts(first, 10), pull_pts(second, 10))
    assert frames[0] == frames[1] == [960 * i for i in range(10)]

    # 음소거는 원본 트랙 하나에 적용되어 두 링크가 같은 프레임부터 무음
    assert h.engine.toggle_mute() is True
    muted_at = await asyncio.gather(first_silent_pts(first), first_silent_pts(second))
    assert muted_at[0] == muted_at[1]

    await h.engine.cleanup()
    with pytest.raises(MediaStreamError):
        await first.recv()


async def test_reattaching_stream_keeps_one_sender_per_track():
    h = Harness(stream_factory=tone_stream)
    await h.engine.start_hosting("ABC123")
    await h.channel.receive("user-joined", "client-1")
    await h.channel.receive("offer", {"offer": {"type": "offer", "sdp": "v=0 remote"}, "from": "client-1"})

    link = h.engine.get_peer_link("client-1")
    assert len(h.pcs[0].tracks) == 1
    assert link.outbound_tracks == h.pcs[0].tracks
    await h.engine.cleanup()


# ============================================================
# 릴레이를 거친 시나리오
# ============================================================

class RelayChannel(FakeChannel):
    """SignalingRelay에 직접 붙는 채널 대역."""

    relay: SignalingRelay = None

    async def connect(self):
        self.connection = ClientConnection()
        await self.relay.connect(self.connection)
        self.task = asyncio.create_task(self._deliver())
        self.connected = True

    async def _deliver(self):
        while True:
            message = await self.connection.outbox.get()
            if message is None:
                break
            await self.receive(message["type"], message["data"])

    async def send(self, event, data=None):
        if self.closed:
            return False
        self.sent.append((event.value, data))
        await self.relay.dispatch(self.connection.connection_id, build_message(event, data))
        return True

    async def close(self):
        if self.closed:
            return
        await super().close()
        await self.relay.disconnect(self.connection.connection_id)
        self.task.cancel()


@pytest.fixture
def relay():
    RelayChannel.relay = SignalingRelay()
    yield RelayChannel.relay
    RelayChannel.relay = None


async def test_host_and_client_negotiate_through_relay(relay):
    host = Harness(channel_cls=RelayChannel)
    client = Harness(media=False, channel_cls=RelayChannel)

    await host.engine.start_hosting("ABC123")
    await client.engine.join_session("ABC123")
    await eventually(lambda: host.engine.local_id and client.engine.local_id)

    host_id, client_id = host.engine.local_id, client.engine.local_id
    await eventually(lambda: client.pcs and client.pcs[0].remoteDescription is not None)

    host_link = host.engine.get_peer_link(client_id)
    client_link = client.engine.get_peer_link(host_id)
    assert host_link.pc.remoteDescription.sdp == "v=0 offer"
    assert client_link.pc.remoteDescription.sdp == "v=0 answer"
    assert client_link.pc.transceivers == [("audio", "recvonly")]
    assert [t.source for t in host_link.pc.tracks] == host.streams[0].tracks
    assert len(host.pcs) == 1 and len(client.pcs) == 1

    await host_link.pc.set_connection_state("connected")
    await client_link.pc.set_connection_state("connected")
    assert host_link.state is LinkState.CONNECTED
    assert client_link.state is LinkState.CONNECTED
    assert ConnectionStateChanged("connected", client_id) in host.events()
    assert ConnectionStateChanged("connected", host_id) in client.events()

    # client 퇴장 → host는 링크 폐기 후 PeerLeft
    await client.engine.cleanup()
    await eventually(lambda: client_id not in host.engine.links)
    assert PeerLeft(client_id) in host.events()
    assert relay.room_manager.get_room_count("ABC123") == 1

    await host.engine.cleanup()
    assert relay.get_room_list() == []
