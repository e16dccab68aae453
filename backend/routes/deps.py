"""공유 의존성 모듈.

라우터들이 공통으로 사용하는 의존성을 정의합니다. 릴레이 인스턴스는
모듈 전역이 아니라 ``app.state.relay``가 소유합니다.
"""

from fastapi import HTTPException, Request, WebSocket

from voicelink.signaling import SignalingRelay


def get_relay(request: Request) -> SignalingRelay:
    """HTTP 요청에서 앱 소유 릴레이를 꺼냅니다.

    Raises:
        HTTPException: 릴레이가 아직 준비되지 않은 경우 (503)
    """
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        raise HTTPException(status_code=503, detail="Relay not ready")
    return relay


def get_ws_relay(websocket: WebSocket) -> SignalingRelay:
    """WebSocket 연결에서 앱 소유 릴레이를 꺼냅니다. 없으면 None."""
    return getattr(websocket.app.state, "relay", None)
