"""Voice Link 예외 계층.

모든 실패는 하나의 연결, 하나의 룸, 또는 하나의 PeerLink 범위로 한정됩니다.
어떤 예외도 프로세스 전체를 중단시키지 않습니다.

Classes:
    VoiceLinkError: 모든 예외의 기반 클래스
    ConnectionError: 시그널링 서버 연결 실패/타임아웃 (부트스트랩에 치명적)
    MediaError: 로컬 마이크 캡처 실패 (치명적이지 않음, 송신 오디오 없이 진행)
    NegotiationError: 특정 PeerLink의 offer/answer/candidate 처리 실패
    RelayError: 서버에서 수신한 잘못된 시그널링 메시지
"""


class VoiceLinkError(Exception):
    """Voice Link 기반 예외."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConnectionError(VoiceLinkError):
    """시그널링 채널이 서버에 도달하지 못했거나 타임아웃된 경우."""
    pass


class MediaError(VoiceLinkError):
    """로컬 오디오 캡처를 사용할 수 없거나 거부된 경우."""
    pass


class NegotiationError(VoiceLinkError):
    """PeerLink 협상 실패 (알 수 없는 피어, 잘못된 페이로드, SDP 적용 실패)."""
    pass


class RelayError(VoiceLinkError):
    """릴레이가 처리할 수 없는 잘못된 메시지."""
    pass
