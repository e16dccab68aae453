"""Voice Link 명령줄 통화 클라이언트.

협상 엔진을 구동해 룸을 열거나 참가합니다. 원격 오디오는 파일로
녹음하거나 (``--record``) 버립니다.

사용법:
    python call_client.py host ABC123 --server ws://192.168.43.1:3000/ws
    python call_client.py join ABC123 --server ws://192.168.43.1:3000/ws --record call.wav
    python call_client.py join ABC123 --no-mic

명령 (Enter로 입력):
    m  음소거 토글
    s  스피커 토글
    q  종료
"""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from voicelink.negotiation import (
    ConnectionStateChanged,
    LocalStreamReady,
    MediaUnavailable,
    NegotiationEngine,
    PeerLeft,
    RemoteStreamReady,
    RoomJoined,
    connection_config,
)
from voicelink.shared import ConnectionError, MediaError

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def _no_microphone():
    raise MediaError("Microphone disabled by --no-mic")


def _record_path(base: str, peer_id: str) -> str:
    path = Path(base)
    return str(path.with_name(f"{path.stem}_{peer_id[:8]}{path.suffix or '.wav'}"))


class CallClient:
    """엔진 이벤트를 받아 원격 오디오 싱크를 관리합니다."""

    def __init__(self, engine: NegotiationEngine, record: Optional[str] = None):
        self.engine = engine
        self.record = record
        self.sinks: Dict[str, object] = {}

    async def _start_sink(self, peer_id: str, track) -> None:
        await self._stop_sink(peer_id)
        if self.record:
            path = _record_path(self.record, peer_id)
            sink = MediaRecorder(path)
            print(f"  {peer_id[:8]} 오디오 녹음: {path}")
        else:
            sink = MediaBlackhole()
        sink.addTrack(track)
        await sink.start()
        self.sinks[peer_id] = sink

    async def _stop_sink(self, peer_id: str) -> None:
        sink = self.sinks.pop(peer_id, None)
        if sink is not None:
            await sink.stop()

    async def pump_events(self) -> None:
        while True:
            event = await self.engine.events.get()
            if isinstance(event, RoomJoined):
                print(f"룸 '{event.room_id}' 참가 ({event.role})")
            elif isinstance(event, LocalStreamReady):
                print("마이크 준비 완료")
            elif isinstance(event, MediaUnavailable):
                print(f"경고: 마이크 없이 수신만 합니다 ({event.message})")
            elif isinstance(event, RemoteStreamReady):
                print(f"{event.peer_id[:8]} 오디오 수신 시작")
                await self._start_sink(event.peer_id, event.track)
            elif isinstance(event, PeerLeft):
                print(f"{event.peer_id[:8]} 퇴장")
                await self._stop_sink(event.peer_id)
            elif isinstance(event, ConnectionStateChanged):
                target = event.peer_id[:8] if event.peer_id else "server"
                print(f"[{target}] {event.state}")

    async def read_commands(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                line = await loop.run_in_executor(None, input)
            except EOFError:
                await asyncio.Event().wait()
            command = line.strip().lower()
            if command == "m":
                print("음소거" if self.engine.toggle_mute() else "음소거 해제")
            elif command == "s":
                print("스피커 켜짐" if self.engine.toggle_speaker() else "스피커 꺼짐")
            elif command == "q":
                return

    async def close(self) -> None:
        for peer_id in list(self.sinks):
            await self._stop_sink(peer_id)
        await self.engine.cleanup()


async def main():
    parser = argparse.ArgumentParser(description="Voice Link 통화 클라이언트")
    parser.add_argument("mode", choices=["host", "join"], help="host: 룸 열기, join: 룸 참가")
    parser.add_argument("room", type=str, help="룸 ID")
    parser.add_argument("--server", type=str, default=connection_config.SIGNALING_URL,
                        help=f"시그널링 서버 URL (기본: {connection_config.SIGNALING_URL})")
    parser.add_argument("--record", type=str, help="원격 오디오 녹음 파일 경로 (피어별로 분리 저장)")
    parser.add_argument("--no-mic", action="store_true", help="마이크 없이 수신만")
    args = parser.parse_args()

    engine = NegotiationEngine(
        signaling_url=args.server,
        media_factory=_no_microphone if args.no_mic else None,
    )
    client = CallClient(engine, record=args.record)
    events_task = asyncio.create_task(client.pump_events())

    try:
        if args.mode == "host":
            await engine.start_hosting(args.room)
        else:
            await engine.join_session(args.room)
    except ConnectionError as e:
        print(f"연결 실패: {e}")
        events_task.cancel()
        await client.close()
        return

    print("명령: m(음소거) s(스피커) q(종료)")
    try:
        await client.read_commands()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n종료합니다.")
    finally:
        events_task.cancel()
        await client.close()


if __name__ == "__main__":
    asyncio.run(main())
