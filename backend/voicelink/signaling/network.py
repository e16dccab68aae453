"""LAN 주소 탐색.

참가자들이 같은 로컬 네트워크(핫스팟 등)에서 서버에 접속할 수 있도록
서버의 IPv4 주소 목록을 찾습니다.
"""
import logging
import socket
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

# 컨테이너 브리지 대역
_SKIPPED_PREFIXES = ("172.17.", "172.18.", "172.19.")

# 일반적인 핫스팟 대역 (우선)
_HOTSPOT_PREFIXES = ("192.168.", "172.20.", "10.0.")


def _candidate_addresses() -> List[str]:
    """호스트의 IPv4 주소 후보를 수집합니다."""
    addresses: List[str] = []

    # 기본 경로 인터페이스 (패킷은 실제로 전송되지 않음)
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            addresses.append(s.getsockname()[0])
        finally:
            s.close()
    except OSError as e:
        logger.debug(f"[Network] 기본 경로 주소 확인 실패: {e}")

    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
        addresses.extend(info[4][0] for info in infos)
    except OSError as e:
        logger.debug(f"[Network] 호스트 주소 조회 실패: {e}")

    return addresses


def order_addresses(addresses: Iterable[str]) -> List[str]:
    """루프백/컨테이너 주소를 제외하고 핫스팟 대역을 앞에 둡니다.

    Examples:
        >>> order_addresses(["8.8.4.4", "127.0.0.1", "192.168.43.1", "172.17.0.2"])
        ['192.168.43.1', '8.8.4.4']
    """
    hotspot: List[str] = []
    others: List[str] = []
    for addr in addresses:
        if addr.startswith("127.") or addr.startswith(_SKIPPED_PREFIXES):
            continue
        if addr in hotspot or addr in others:
            continue
        if addr.startswith(_HOTSPOT_PREFIXES):
            hotspot.append(addr)
        else:
            others.append(addr)
    return hotspot + others


def get_all_ips() -> List[str]:
    """사용 가능한 모든 네트워크 IPv4 주소를 반환합니다."""
    return order_addresses(_candidate_addresses())


def get_local_ip(static_ip: Optional[str] = None, all_ips: Optional[List[str]] = None) -> str:
    """대표 IP를 반환합니다.

    고정 IP가 설정되어 있으면 그대로 사용하고, 네트워크 주소가 하나도
    없을 때만 ``localhost``를 반환합니다.
    """
    if static_ip:
        return static_ip
    ips = get_all_ips() if all_ips is None else all_ips
    if ips:
        return ips[0]
    return "localhost"


def describe_addresses(port: int, host_header: Optional[str] = None,
                       static_ip: Optional[str] = None) -> dict:
    """/api/ip 응답 본문을 만듭니다."""
    all_ips = get_all_ips()
    primary = get_local_ip(static_ip, all_ips)
    is_localhost = bool(host_header) and ("localhost" in host_header or "127.0.0.1" in host_header)

    return {
        "primary": primary,
        "all": all_ips,
        "port": port,
        "url": f"http://{primary}:{port}",
        "urls": [f"http://{ip}:{port}" for ip in all_ips],
        "accessedVia": "localhost" if is_localhost else "network",
        "networkIPs": [ip for ip in all_ips if ip not in ("localhost", "127.0.0.1")],
    }
