"""시그널링 서버 설정.

포트, 고정 IP 등 릴레이 프로세스 관련 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# 릴레이 서버 설정
# ============================================================

@dataclass(frozen=True)
class RelayConfig:
    """릴레이 서버 설정."""

    # 바인드 주소
    HOST: str = os.getenv("HOST", "0.0.0.0")

    # 서버 포트
    PORT: int = int(os.getenv("PORT", "3000"))

    # 고정 IP (핫스팟 IP 등). None이면 자동 감지
    STATIC_IP: Optional[str] = os.getenv("STATIC_IP") or None

    # 연결별 전송 대기 메시지 상한. 넘으면 느린 연결로 보고 닫음
    OUTBOX_MAX_MESSAGES: int = int(os.getenv("OUTBOX_MAX_MESSAGES") or "256")

    # 서비스 이름
    SERVICE_NAME: str = "Voice Link Signaling Relay"


# ============================================================
# 싱글톤 인스턴스
# ============================================================

relay_config = RelayConfig()


logger.info(f"[Relay Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[Relay Config] 포트: {relay_config.PORT}, 고정 IP: {relay_config.STATIC_IP or '자동 감지'}")
