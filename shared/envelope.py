from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict
import json

# Fields every actionable datagram must carry at the top level
REQUIRED_FIELDS = frozenset({"op", "topic", "msg", "type"})

PUBLISH_OP = "publish"
DEFAULT_TYPE_TAG = "std_msgs/String"


class MalformedJSONError(Exception):
    """Raised when a datagram is not valid UTF-8 JSON."""
    pass
class IncompleteEnvelopeError(Exception):
    """Raised when a parsed envelope lacks a usable msg.data payload."""
    pass


@dataclass(frozen=True)
class Route:
    """The single (topic, type) pair accepted from the wire."""
    topic: str
    type: str = DEFAULT_TYPE_TAG


@dataclass
class Envelope:
    """
    One JSON document per UDP datagram:
    {
    "op":    "publish",
    "topic": "/channel-name",
    "msg":   {"data": "STRING"},
    "type":  "std_msgs/String"
    }
    """
    op: str
    topic: str
    type: str
    msg: Dict[str, Any]

    @property
    def data(self) -> str:
        return extract_data(self.to_dict())

    @classmethod
    def from_json(cls, raw: bytes | str) -> 'Envelope':
        """Parse a datagram into an Envelope, requiring all top-level fields"""
        return cls.from_dict(decode(raw))

    @classmethod
    def from_dict(cls, data: Any) -> 'Envelope':
        if not isinstance(data, dict):
            raise IncompleteEnvelopeError("Envelope must be a JSON object")
        missing = REQUIRED_FIELDS - set(data.keys())
        if missing:
            raise IncompleteEnvelopeError(f"Missing required fields: {sorted(missing)}")
        if not isinstance(data['msg'], dict):
            raise IncompleteEnvelopeError("'msg' must be an object")
        return cls(
            op=str(data['op']),
            topic=str(data['topic']),
            type=str(data['type']),
            msg=data['msg'],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'op': self.op,
            'topic': self.topic,
            'msg': self.msg,
            'type': self.type,
        }

    def to_json(self) -> str:
        """Compact JSON with sorted keys"""
        return json.dumps(self.to_dict(), separators=(',', ':'), sort_keys=True, ensure_ascii=False)

    def to_bytes(self) -> bytes:
        """UTF-8 wire form. Lone surrogates have no UTF-8 encoding, so they fall back to \\u escapes."""
        try:
            return self.to_json().encode('utf-8')
        except UnicodeEncodeError:
            return json.dumps(self.to_dict(), separators=(',', ':'), sort_keys=True).encode('ascii')


def create_envelope(topic: str, data: str, type_tag: str = DEFAULT_TYPE_TAG) -> Envelope:
    """Helper to build a publish envelope carrying a string payload"""
    return Envelope(op=PUBLISH_OP, topic=topic, type=type_tag, msg={'data': data})


def encode(channel: str, payload: str, type_tag: str = DEFAULT_TYPE_TAG) -> bytes:
    """Serialize a bus payload into the wire envelope."""
    return create_envelope(channel, payload, type_tag).to_bytes()


def decode(raw: bytes | str) -> Any:
    """
    Parse a datagram as JSON.

    Only the JSON syntax is checked here; field presence and route matching are
    left to is_actionable() so that partial packets never abort the receive loop.

    Raises:
        MalformedJSONError: bytes are not UTF-8 or not a JSON document
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedJSONError(f"Invalid UTF-8: {e}") from e
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedJSONError(f"Invalid JSON: {e}") from e
    except RecursionError as e:
        raise MalformedJSONError("Invalid JSON: nesting too deep") from e


def is_actionable(envelope: Any, route: Route) -> bool:
    """True iff all required fields are present and op/topic/type match the route"""
    if not isinstance(envelope, dict):
        return False
    if not REQUIRED_FIELDS.issubset(envelope.keys()):
        return False
    return (
        envelope['op'] == PUBLISH_OP
        and envelope['topic'] == route.topic
        and envelope['type'] == route.type
    )


def extract_data(envelope: Dict[str, Any]) -> str:
    """
    Return msg.data from an actionable envelope.

    Raises:
        IncompleteEnvelopeError: msg is not an object or data is not a string
    """
    msg = envelope.get('msg')
    if not isinstance(msg, dict):
        raise IncompleteEnvelopeError("'msg' must be an object")
    if 'data' not in msg:
        raise IncompleteEnvelopeError("'msg.data' is missing")
    data = msg['data']
    if not isinstance(data, str):
        raise IncompleteEnvelopeError(f"'msg.data' must be a string, got {type(data).__name__}")
    return data
