"""상태 확인 및 네트워크 정보 API 라우터.

서버 상태, 접속 가능한 IP, 룸 목록, ICE 서버 목록을 제공합니다.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header

from voicelink.negotiation import ice_config
from voicelink.signaling import SignalingRelay, describe_addresses, relay_config
from .deps import get_relay

router = APIRouter(tags=["health"])


@router.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: ``{"status": "ok", "service": ...}``
    """
    return {"status": "ok", "service": relay_config.SERVICE_NAME}


@router.get("/api/ip")
async def get_ip_info(host: Optional[str] = Header(None)):
    """이 서버에 접속할 수 있는 IP 주소들을 반환합니다.

    모바일 핫스팟 대역(192.168.x, 172.20.x, 10.0.x)을 우선 정렬하고
    Docker 브리지 대역(172.17~19.x)은 제외합니다.

    Returns:
        dict: primary, all, port, url, urls, accessedVia, networkIPs

    Examples:
        >>> GET /api/ip
        {"primary": "192.168.43.1", "all": ["192.168.43.1"], "port": 3000,
         "url": "http://192.168.43.1:3000", ...}
    """
    return describe_addresses(relay_config.PORT, host_header=host, static_ip=relay_config.STATIC_IP)


@router.get("/api/rooms")
async def get_rooms(relay: SignalingRelay = Depends(get_relay)):
    """활성화된 모든 룸의 목록을 조회합니다."""
    return {"rooms": relay.get_room_list()}


@router.get("/api/ice-servers")
async def get_ice_servers():
    """클라이언트가 사용할 ICE 서버 목록 (STUN만, TURN 없음)."""
    return ice_config.as_ice_server_list()
