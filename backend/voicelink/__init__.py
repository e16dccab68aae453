"""Voice Link: 룸 기반 P2P 음성 통화 시그널링."""

__version__ = "1.0.0"
