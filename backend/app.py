"""FastAPI Voice Link Signaling Relay.

이 모듈은 룸 기반 P2P 음성 통화를 위한 시그널링 서버를 제공합니다.
미디어는 서버를 거치지 않으며, 서버는 참가자 간 협상 메시지만
전달합니다.

주요 기능:
    - 룸 기반 참가자 관리 (host / client 역할)
    - offer / answer / ice-candidate 릴레이
    - 실시간 참가자 입/퇴장 알림
    - 핫스팟 환경용 접속 IP 안내 (/api/ip)
    - CORS 전체 허용

Architecture:
    - Mesh 패턴: 참가자끼리 직접 오디오 연결
    - SignalingRelay: 연결/룸 레지스트리 소유, 메시지 라우팅
    - WebSocket: 실시간 시그널링 메시지 전송
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load 환경변수 로드 variables from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")

from routes import health_router, signaling_router  # noqa: E402
from voicelink.signaling import SignalingRelay, get_all_ips, relay_config  # noqa: E402


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{__import__('datetime').datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 60일 (2개월)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    import glob
    from datetime import datetime, timedelta

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file).replace("server_", "").replace(".log", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")

            if file_date < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


def create_app(relay: Optional[SignalingRelay] = None) -> FastAPI:
    """릴레이를 소유하는 FastAPI 앱을 만듭니다.

    Args:
        relay: 사용할 릴레이. None이면 새로 생성 (테스트에서 주입 가능)

    Returns:
        FastAPI: 라우터와 CORS가 설정된 앱
    """
    relay = relay or SignalingRelay()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """서버 시작 시 로그 정리와 접속 주소 안내, 종료 시 연결 정리."""
        logger.info("시그널링 릴레이 서버 시작 중...")

        deleted_logs = cleanup_old_logs()
        if deleted_logs > 0:
            logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

        ips = [relay_config.STATIC_IP] if relay_config.STATIC_IP else get_all_ips()
        for ip in ips:
            logger.info(f"접속 주소: http://{ip}:{relay_config.PORT}")
        if not ips:
            logger.warning(f"네트워크 주소 없음, http://localhost:{relay_config.PORT} 에서만 접속 가능")

        yield

        logger.info("서버 종료 중...")
        for connection_id in list(relay.connections):
            await relay.disconnect(connection_id)

    app = FastAPI(title=relay_config.SERVICE_NAME, lifespan=lifespan)
    app.state.relay = relay

    # CORS - 모든 출처 허용 (로컬 네트워크 전용 서비스)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 라우터 등록
    app.include_router(health_router)
    app.include_router(signaling_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=relay_config.HOST, port=relay_config.PORT, log_level="info")
