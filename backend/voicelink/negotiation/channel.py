"""시그널링 채널 클라이언트.

릴레이와의 양방향 메시지 채널입니다 (WebSocket). 이벤트 이름별
핸들러를 등록하고, 연결 끊김 시 고정 간격으로 제한된 횟수만큼
재연결을 시도합니다.

Lifecycle Events:
    - connect: 최초 연결 성공
    - disconnect(reason): 예기치 않은 연결 끊김
    - reconnect_attempt(n): n번째 재연결 시도
    - reconnect(n): 재연결 성공
    - reconnect_failed: 재연결 시도 소진
"""
import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..shared.errors import ConnectionError
from ..shared.messages import EventType, build_message
from .config import connection_config

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class SignalingChannel:
    """릴레이 서버와의 WebSocket 채널.

    Attributes:
        url (str): 시그널링 서버 URL
        reconnection_attempts (int): 재연결 최대 시도 횟수
        reconnection_delay (float): 재연결 시도 간격 (초)
    """

    def __init__(
        self,
        url: str,
        reconnection_attempts: int = connection_config.RECONNECTION_ATTEMPTS,
        reconnection_delay: float = connection_config.RECONNECTION_DELAY,
        connector: Optional[Callable[[str], Any]] = None,
    ):
        self.url = url
        self.reconnection_attempts = reconnection_attempts
        self.reconnection_delay = reconnection_delay
        self._connector = connector or websockets.connect

        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._ws = None
        self._connect_task: Optional[asyncio.Future] = None
        self._supervisor: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, event: str, handler: Handler) -> None:
        """이벤트 핸들러를 등록합니다. 핸들러는 동기/비동기 모두 가능."""
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def connect(self) -> None:
        """서버에 한 번 연결합니다.

        타임아웃은 호출자가 ``asyncio.wait_for``로 정합니다.

        Raises:
            ConnectionError: 연결 실패, 또는 연결 중 close()가 호출된 경우
        """
        if self._ws is not None:
            return
        self._closing = False
        self._ws = await self._open()
        self._supervisor = asyncio.create_task(self._run())
        logger.info(f"[Channel] 시그널링 서버 연결: {self.url}")
        await self._emit("connect")

    async def send(self, event: EventType, data: Any = None) -> bool:
        """메시지를 보냅니다. 응답을 기다리지 않습니다.

        Returns:
            bool: 전송 여부 (연결이 없으면 False)
        """
        ws = self._ws
        if ws is None:
            logger.warning(f"[Channel] 연결 없음, {event.value} 전송 불가")
            return False
        try:
            await ws.send(json.dumps(build_message(event, data)))
        except ConnectionClosed as e:
            logger.warning(f"[Channel] {event.value} 전송 실패 (연결 종료): {e}")
            return False
        return True

    async def close(self) -> None:
        """채널을 닫습니다. 진행 중인 연결 시도와 재연결을 중단합니다."""
        self._closing = True

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()

        supervisor = self._supervisor
        self._supervisor = None
        if supervisor is not None and supervisor is not asyncio.current_task():
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"[Channel] WebSocket 종료 중 오류: {e}")

        self._handlers.clear()
        logger.info("[Channel] 시그널링 채널 종료")

    async def _open(self):
        self._connect_task = asyncio.ensure_future(self._connector(self.url))
        try:
            return await self._connect_task
        except asyncio.CancelledError:
            if self._closing:
                raise ConnectionError("Channel closed while connecting", {"url": self.url})
            raise
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise ConnectionError("Could not connect to server", {"url": self.url, "error": str(e) or type(e).__name__}) from e
        finally:
            self._connect_task = None

    async def _run(self) -> None:
        """수신 루프를 돌리고, 끊기면 재연결 정책을 적용합니다."""
        while True:
            reason = await self._read_loop()
            self._ws = None
            if self._closing:
                return

            logger.warning(f"[Channel] 서버 연결 끊김: {reason}")
            await self._emit("disconnect", reason)

            if not await self._reconnect():
                if self._closing:
                    return
                logger.error(f"[Channel] 재연결 {self.reconnection_attempts}회 모두 실패")
                await self._emit("reconnect_failed")
                return

    async def _read_loop(self) -> str:
        ws = self._ws
        try:
            async for raw in ws:
                await self._dispatch(raw)
        except ConnectionClosed as e:
            return str(e) or "connection closed"
        return "connection closed"

    async def _reconnect(self) -> bool:
        for attempt in range(1, self.reconnection_attempts + 1):
            if self._closing:
                return False
            logger.info(f"[Channel] 재연결 시도 {attempt}/{self.reconnection_attempts}")
            await self._emit("reconnect_attempt", attempt)
            await asyncio.sleep(self.reconnection_delay)
            if self._closing:
                return False
            try:
                self._ws = await self._open()
            except ConnectionError as e:
                logger.warning(f"[Channel] 재연결 실패: {e}")
                continue
            logger.info(f"[Channel] 재연결 성공 ({attempt}번째 시도)")
            await self._emit("reconnect", attempt)
            return True
        return False

    async def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[Channel] JSON이 아닌 프레임 무시")
            return
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            logger.warning("[Channel] type 없는 프레임 무시")
            return
        await self._emit(message["type"], message.get("data"))

    async def _emit(self, event: str, data: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[Channel] '{event}' 핸들러 오류: {e}", exc_info=True)
