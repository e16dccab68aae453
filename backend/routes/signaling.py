"""시그널링 WebSocket 라우터.

참가자 연결을 받아 릴레이에 등록하고, 수신 프레임을 릴레이에
넘깁니다. 룸 참가/퇴장, offer/answer/ice-candidate 전달은 모두
``SignalingRelay``가 처리합니다.
"""

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from voicelink.shared import EventType
from voicelink.signaling import ClientConnection
from .deps import get_ws_relay

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """시그널링을 위한 WebSocket 엔드포인트.

    처리하는 메시지 타입:
        - join-room: 룸 참가 (``{"roomId", "role"}``)
        - offer / answer / ice-candidate: ``to``로 지정된 연결에 전달

    연결 직후 서버는 ``peer-id``로 이 연결의 ID를 알려줍니다.
    송신은 연결별 큐를 거치므로 수신 루프를 막지 않습니다.

    Args:
        websocket: FastAPI WebSocket 연결 객체
    """
    relay = get_ws_relay(websocket)
    if relay is None:
        logger.error("릴레이가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()

    connection = ClientConnection()
    peer_id = connection.connection_id
    await relay.connect(connection)
    pump_task = asyncio.create_task(connection.pump(websocket))

    logger.info(f"피어 {peer_id[:8]} 연결됨")

    try:
        while True:
            text = await websocket.receive_text()
            try:
                message = json.loads(text)
            except ValueError:
                logger.warning(f"피어 {peer_id[:8]}의 JSON 파싱 실패, 프레임 폐기")
                connection.send(EventType.ERROR, {"message": "Malformed message"})
                continue
            await relay.dispatch(peer_id, message)

    except WebSocketDisconnect:
        logger.info(f"피어 {peer_id[:8]} 연결 끊김")
    except Exception as e:
        logger.error(f"피어 {peer_id[:8]}의 WebSocket 연결 중 오류: {e}")
    finally:
        room_id = await relay.disconnect(peer_id)
        connection.close()
        try:
            await asyncio.wait_for(pump_task, timeout=1.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            pump_task.cancel()
        logger.info(f"피어 {peer_id[:8]} 정리 완료 (룸: {room_id})")
