"""Text codec for the inline tag notation.

Grammar::

    text   := (plain | token)*
    token  := "[" [prefix] kind ("," key "=" value)* "]"

``&``, ``[`` and ``]`` are escaped everywhere as ``&amp;``, ``&#91;`` and
``&#93;``; inside attribute values ``,`` is escaped as ``&#44;`` as well.
Parsing is a single left-to-right pass. Tokens that cannot be understood are
kept as literal text instead of failing the whole message.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .tags import KIND_PATTERN, KNOWN_KINDS, PlainText, Segment, Tag

logger = logging.getLogger(__name__)

WIRE_PREFIX = "CQ:"

_UNESCAPES = {"&amp;": "&", "&#91;": "[", "&#93;": "]", "&#44;": ","}
_UNESCAPE_RE = re.compile(r"&(?:amp|#91|#93|#44);")

MessageLike = Union[str, Segment, Iterable[Union[str, Segment]]]


def escape(value: str, *, in_value: bool = True) -> str:
    """Escape reserved characters; commas only matter inside attribute values."""
    out = value.replace("&", "&amp;").replace("[", "&#91;").replace("]", "&#93;")
    if in_value:
        out = out.replace(",", "&#44;")
    return out


def unescape(value: str) -> str:
    # single pass so "&amp;#91;" decodes to "&#91;" rather than "["
    return _UNESCAPE_RE.sub(lambda match: _UNESCAPES[match.group(0)], value)


class TagCodec:
    """Parse and serialize segment sequences.

    ``prefix`` is emitted in front of every kind on serialization (go-cqhttp
    expects ``"CQ:"``); the parser strips either ``prefix`` or ``"CQ:"``.
    With ``strict`` set, kinds outside ``known_kinds`` are degraded to text
    instead of being passed through as generic tags.
    """

    def __init__(
        self,
        *,
        prefix: str = "",
        strict: bool = False,
        known_kinds: Iterable[str] = KNOWN_KINDS,
    ) -> None:
        self.prefix = prefix
        self.strict = strict
        self.known_kinds = frozenset(known_kinds)

    #
    # Parsing
    #
    def parse(self, raw: str) -> List[Segment]:
        segments: List[Segment] = []
        pending: List[str] = []
        pos = 0
        length = len(raw)
        close = -1

        def flush() -> None:
            if pending:
                content = "".join(pending)
                pending.clear()
                if content:
                    segments.append(PlainText(content))

        while pos < length:
            start = raw.find("[", pos)
            if start < 0:
                pending.append(unescape(raw[pos:]))
                break
            if start > pos:
                pending.append(unescape(raw[pos:start]))
            if close <= start:
                close = raw.find("]", start + 1)
            if close < 0:
                # no token can close any more; the rest is literal text
                pending.append("[" + unescape(raw[start + 1 :]))
                break
            nested = raw.find("[", start + 1, close)
            if nested >= 0:
                pending.append("[" + unescape(raw[start + 1 : nested]))
                pos = nested
                continue
            tag = self._parse_body(raw[start + 1 : close])
            if tag is None:
                logger.debug("degrading malformed token %r to text", raw[start : close + 1])
                pending.append(raw[start : close + 1])
            else:
                flush()
                segments.append(tag)
            pos = close + 1
        flush()
        return segments

    def _parse_body(self, body: str) -> Optional[Tag]:
        fields = body.split(",")
        kind = self._strip_prefix(fields[0])
        if not KIND_PATTERN.match(kind):
            return None
        if self.strict and kind not in self.known_kinds:
            return None
        attributes: Dict[str, str] = {}
        for item in fields[1:]:
            key, sep, value = item.partition("=")
            if not sep or not key or "&" in key:
                return None
            attributes[key] = unescape(value)
        return Tag(kind, attributes)

    def _strip_prefix(self, kind: str) -> str:
        for prefix in (self.prefix, WIRE_PREFIX):
            if prefix and kind.startswith(prefix):
                return kind[len(prefix) :]
        return kind

    #
    # Serialization
    #
    def serialize_tag(self, tag: Tag) -> str:
        parts = ["[", self.prefix, tag.kind]
        for key, value in tag.attributes.items():
            parts.append(f",{key}={escape(value)}")
        parts.append("]")
        return "".join(parts)

    def serialize(self, segments: MessageLike) -> str:
        out: List[str] = []
        for segment in normalize(segments):
            if isinstance(segment, Tag):
                out.append(self.serialize_tag(segment))
            else:
                out.append(escape(segment.text, in_value=False))
        return "".join(out)


def normalize(message: MessageLike) -> List[Segment]:
    """Coerce a string, a segment or an iterable of either into segments.

    Bare strings are treated as literal text. Adjacent text runs are merged
    and empty runs are dropped.
    """
    if isinstance(message, (str, PlainText, Tag)):
        items: Iterable[Any] = [message]
    else:
        items = message
    segments: List[Segment] = []
    for item in items:
        if isinstance(item, str):
            item = PlainText(item)
        if isinstance(item, PlainText):
            if not item.text:
                continue
            if segments and isinstance(segments[-1], PlainText):
                segments[-1] = PlainText(segments[-1].text + item.text)
                continue
            segments.append(item)
        elif isinstance(item, Tag):
            segments.append(item)
        else:
            raise TypeError(f"cannot use {type(item).__name__} as a message segment")
    return segments


#
# Array message form ({"type": ..., "data": {...}})
#
def to_array(segments: MessageLike) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for segment in normalize(segments):
        if isinstance(segment, Tag):
            items.append({"type": segment.kind, "data": dict(segment.attributes)})
        else:
            items.append({"type": "text", "data": {"text": segment.text}})
    return items


def from_array(items: Sequence[Mapping[str, Any]]) -> List[Segment]:
    segments: List[Union[str, Segment]] = []
    for item in items:
        kind = str(item.get("type") or "")
        data = item.get("data") or {}
        if kind == "text":
            segments.append(str(data.get("text") or ""))
            continue
        attributes = {key: value for key, value in data.items() if value is not None}
        try:
            segments.append(Tag(kind, {key: _array_value(value) for key, value in attributes.items()}))
        except ValueError:
            logger.debug("dropping malformed array segment %r", item)
    return normalize(segments)


def _array_value(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        # nested payloads (forward node content) have no flat attribute form
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return value


_default_codec = TagCodec()


def parse(raw: str) -> List[Segment]:
    return _default_codec.parse(raw)


def serialize(segments: MessageLike) -> str:
    return _default_codec.serialize(segments)
