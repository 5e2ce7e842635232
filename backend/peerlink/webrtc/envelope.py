"""시그널링 메시지 봉투(envelope) 모델.

릴레이와 주고받는 모든 메시지는 JSON 객체 하나로 직렬화되며 스키마는
다음과 같습니다::

    {type, roomId?, peerId?, targetPeerId?, payload?, timestamp}

payload는 type에 따라 형태가 다르며 이 모듈은 내용을 해석하지 않습니다.
(offer/answer의 SDP, ice-candidate의 candidate 모두 그대로 전달)
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..errors import MalformedEnvelopeError


class EnvelopeType(str, Enum):
    """시그널링 메시지 종류 (닫힌 집합)."""

    JOIN = "join"
    LEAVE = "leave"
    ROOM_INFO = "room-info"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    ERROR = "error"


NEGOTIATION_TYPES = frozenset({
    EnvelopeType.OFFER,
    EnvelopeType.ANSWER,
    EnvelopeType.ICE_CANDIDATE,
})


def utc_timestamp() -> str:
    """ISO 8601 UTC 타임스탬프 문자열."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SignalingEnvelope(BaseModel):
    """릴레이 메시지 하나.

    Attributes:
        type (EnvelopeType): 메시지 종류
        room_id (Optional[str]): 룸 ID (wire: roomId)
        peer_id (Optional[str]): 발신 피어 ID (wire: peerId)
        target_peer_id (Optional[str]): 수신 피어 ID (wire: targetPeerId)
        payload (Any): type별 불투명 데이터
        timestamp (str): ISO 8601 생성 시각

    Note:
        - offer/answer/ice-candidate는 peerId 또는 targetPeerId 중 하나가
          반드시 있어야 함 (상대 피어를 정확히 하나 지정)
        - 알 수 없는 필드는 무시됨
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: EnvelopeType
    room_id: Optional[str] = Field(default=None, alias="roomId")
    peer_id: Optional[str] = Field(default=None, alias="peerId")
    target_peer_id: Optional[str] = Field(default=None, alias="targetPeerId")
    payload: Any = None
    timestamp: str = Field(default_factory=utc_timestamp)

    @model_validator(mode="after")
    def _require_counterpart(self) -> "SignalingEnvelope":
        if self.type in NEGOTIATION_TYPES and not (self.peer_id or self.target_peer_id):
            raise ValueError(f"{self.type.value} envelope must name a peerId or targetPeerId")
        return self

    @property
    def counterpart(self) -> Optional[str]:
        """협상 메시지의 상대 피어 ID (수신 시 peerId, 송신 시 targetPeerId)."""
        return self.peer_id or self.target_peer_id

    def payload_field(self, key: str, default: Any = None) -> Any:
        """dict payload에서 값을 안전하게 꺼냅니다."""
        if isinstance(self.payload, dict):
            return self.payload.get(key, default)
        return default

    def to_json(self) -> str:
        """wire 형식(camelCase, None 필드 생략)으로 직렬화합니다."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


def make_envelope(type: EnvelopeType, **fields: Any) -> SignalingEnvelope:
    """송신용 봉투를 생성합니다.

    Examples:
        >>> env = make_envelope(EnvelopeType.OFFER, target_peer_id="v1",
        ...                     payload={"type": "offer", "sdp": "v=0..."})
        >>> env.to_json()
        '{"type":"offer","targetPeerId":"v1","payload":{...},"timestamp":"..."}'
    """
    return SignalingEnvelope(type=type, **fields)


def parse_envelope(raw: Union[str, bytes]) -> SignalingEnvelope:
    """수신한 텍스트 프레임을 봉투로 변환합니다.

    Raises:
        MalformedEnvelopeError: JSON이 아니거나, type이 알 수 없거나,
            협상 메시지에 상대 피어가 없는 경우
    """
    try:
        return SignalingEnvelope.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedEnvelopeError(f"Invalid signaling envelope: {e.errors()[0].get('msg', e)}") from e
