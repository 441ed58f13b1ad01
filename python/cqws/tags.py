"""Object model for rich chat content.

A message is a sequence of segments: :class:`PlainText` runs and :class:`Tag`
tokens. Tags are immutable; every builder in this module validates its
attributes and returns a fresh :class:`Tag` whose attribute values are all
strings, ready for the codec.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from .errors import ValidationError

KIND_PATTERN = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.\-]*\Z")
_RESERVED_KEY_CHARS = frozenset(",=[]&")


@dataclass(frozen=True)
class PlainText:
    text: str

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True, eq=False)
class Tag:
    """One typed markup token: a kind plus ordered string attributes."""

    kind: str
    attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or not KIND_PATTERN.match(self.kind):
            raise ValidationError("kind", f"invalid tag kind {self.kind!r}")
        items: Iterable[Tuple[str, Any]]
        if isinstance(self.attributes, Mapping):
            items = self.attributes.items()
        else:
            items = self.attributes
        attrs: Dict[str, str] = {}
        for key, value in items:
            if not isinstance(key, str) or not key or _RESERVED_KEY_CHARS.intersection(key):
                raise ValidationError("attributes", f"invalid attribute key {key!r}")
            attrs[key] = _stringify(value)
        object.__setattr__(self, "attributes", MappingProxyType(attrs))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tag):
            return NotImplemented
        return self.kind == other.kind and dict(self.attributes) == dict(other.attributes)

    def __hash__(self) -> int:
        return hash((self.kind, frozenset(self.attributes.items())))

    def __repr__(self) -> str:
        return f"Tag({self.kind!r}, {dict(self.attributes)!r})"

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(key, default)

    def replace(self, **changes: Any) -> "Tag":
        """Return a copy with ``changes`` applied (``None`` drops a key)."""
        attrs = dict(self.attributes)
        for key, value in changes.items():
            if value is None:
                attrs.pop(key, None)
            else:
                attrs[key] = value
        return Tag(self.kind, attrs)

    def without(self, *keys: str) -> "Tag":
        return Tag(self.kind, {k: v for k, v in self.attributes.items() if k not in keys})


Segment = Union[PlainText, Tag]


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        return str(value)
    raise ValidationError("attributes", f"unsupported attribute value {value!r}")


#
# Validators
#
def _required(name: str, value: Any) -> Any:
    if value is None or value == "":
        raise ValidationError(name, "is required")
    return value


def _numeric_id(name: str, value: Any) -> str:
    _required(name, value)
    if isinstance(value, bool):
        raise ValidationError(name, "must be a numeric id, got boolean")
    if isinstance(value, int):
        if value < 0:
            raise ValidationError(name, "must be a non-negative numeric id")
        return str(value)
    if isinstance(value, str) and value.isdigit():
        return value
    raise ValidationError(name, f"must be a numeric id (got {value!r})")


def _signed_id(name: str, value: Any) -> str:
    _required(name, value)
    text = str(value) if isinstance(value, int) and not isinstance(value, bool) else value
    if isinstance(text, str) and (text.isdigit() or (text[:1] == "-" and text[1:].isdigit())):
        return text
    raise ValidationError(name, f"must be an integer id (got {value!r})")


def _non_negative(name: str, value: Any) -> str:
    if isinstance(value, bool):
        raise ValidationError(name, "must be a non-negative integer, got boolean")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(name, f"must be a non-negative integer (got {value!r})") from None
    if number < 0 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(name, f"must be a non-negative integer (got {value!r})")
    return str(number)


def _number(name: str, value: Any) -> str:
    if isinstance(value, bool):
        raise ValidationError(name, "must be numeric, got boolean")
    try:
        float(value)
    except (TypeError, ValueError):
        raise ValidationError(name, f"must be numeric (got {value!r})") from None
    return str(value)


def _choice(name: str, value: Any, choices: Sequence[str]) -> str:
    if value not in choices:
        raise ValidationError(name, f"must be one of {', '.join(choices)} (got {value!r})")
    return value


def _build(kind: str, *pairs: Tuple[str, Optional[str]]) -> Tag:
    return Tag(kind, [(key, value) for key, value in pairs if value is not None])


#
# Builders (one per known kind)
#
def text(content: str) -> PlainText:
    if not isinstance(content, str):
        raise ValidationError("text", f"must be a string (got {content!r})")
    return PlainText(content)


def face(id: Any) -> Tag:
    return _build("face", ("id", _non_negative("id", id)))


def image(
    file: str,
    *,
    type: Optional[str] = None,
    sub_type: Optional[int] = None,
    url: Optional[str] = None,
    cache: bool = True,
    id: Optional[int] = None,
    c: Optional[int] = None,
) -> Tag:
    return _build(
        "image",
        ("file", _required("file", file)),
        ("type", _choice("type", type, ("flash", "show")) if type is not None else None),
        ("subType", _non_negative("sub_type", sub_type) if sub_type is not None else None),
        ("url", url),
        ("cache", None if cache else "0"),
        ("id", _non_negative("id", id) if id is not None else None),
        ("c", _choice("c", str(c), ("1", "2", "3")) if c is not None else None),
    )


def record(
    file: str,
    *,
    magic: bool = False,
    url: Optional[str] = None,
    cache: bool = True,
    proxy: bool = True,
    timeout: Optional[int] = None,
) -> Tag:
    return _build(
        "record",
        ("file", _required("file", file)),
        ("magic", "1" if magic else None),
        ("url", url),
        ("cache", None if cache else "0"),
        ("proxy", None if proxy else "0"),
        ("timeout", _non_negative("timeout", timeout) if timeout is not None else None),
    )


def video(file: str, *, cover: Optional[str] = None, c: Optional[int] = None) -> Tag:
    return _build(
        "video",
        ("file", _required("file", file)),
        ("cover", cover),
        ("c", _choice("c", str(c), ("2", "3")) if c is not None else None),
    )


def at(qq: Any, *, name: Optional[str] = None) -> Tag:
    target = "all" if qq == "all" else _numeric_id("qq", qq)
    return _build("at", ("qq", target), ("name", name))


def at_all() -> Tag:
    return at("all")


def rps() -> Tag:
    return Tag("rps")


def dice() -> Tag:
    return Tag("dice")


def shake() -> Tag:
    return Tag("shake")


def poke(qq: Any) -> Tag:
    return _build("poke", ("qq", _numeric_id("qq", qq)))


def gift(qq: Any, id: Any) -> Tag:
    return _build("gift", ("qq", _numeric_id("qq", qq)), ("id", _non_negative("id", id)))


def anonymous(*, ignore: bool = False) -> Tag:
    return _build("anonymous", ("ignore", "1" if ignore else None))


def share(url: str, title: str, *, content: Optional[str] = None, image: Optional[str] = None) -> Tag:
    return _build(
        "share",
        ("url", _required("url", url)),
        ("title", _required("title", title)),
        ("content", content),
        ("image", image),
    )


def contact(type: str, id: Any) -> Tag:
    return _build("contact", ("type", _choice("type", type, ("qq", "group"))), ("id", _numeric_id("id", id)))


def location(lat: Any, lon: Any, *, title: Optional[str] = None, content: Optional[str] = None) -> Tag:
    return _build(
        "location",
        ("lat", _number("lat", lat)),
        ("lon", _number("lon", lon)),
        ("title", title),
        ("content", content),
    )


def music(type: str, id: Any) -> Tag:
    return _build("music", ("type", _choice("type", type, ("qq", "163", "xm"))), ("id", _numeric_id("id", id)))


def custom_music(
    url: str,
    audio: str,
    title: str,
    *,
    content: Optional[str] = None,
    image: Optional[str] = None,
) -> Tag:
    return _build(
        "music",
        ("type", "custom"),
        ("url", _required("url", url)),
        ("audio", _required("audio", audio)),
        ("title", _required("title", title)),
        ("content", content),
        ("image", image),
    )


def reply(id: Any, *, text: Optional[str] = None, qq: Any = None, time: Any = None, seq: Any = None) -> Tag:
    return _build(
        "reply",
        ("id", _signed_id("id", id)),
        ("text", text),
        ("qq", _numeric_id("qq", qq) if qq is not None else None),
        ("time", _non_negative("time", time) if time is not None else None),
        ("seq", _non_negative("seq", seq) if seq is not None else None),
    )


def forward(id: str) -> Tag:
    return _build("forward", ("id", _required("id", id)))


def node(id: Any) -> Tag:
    """Reference an existing message inside a merged forward."""
    return _build("node", ("id", _signed_id("id", id)))


def custom_node(name: str, uin: Any, content: str, *, seq: Optional[str] = None) -> Tag:
    return _build(
        "node",
        ("name", _required("name", name)),
        ("uin", _numeric_id("uin", uin)),
        ("content", _required("content", content)),
        ("seq", seq),
    )


def xml(data: str, *, resid: Optional[int] = None) -> Tag:
    return _build("xml", ("data", _required("data", data)), ("resid", _non_negative("resid", resid) if resid is not None else None))


def json(data: str, *, resid: Optional[int] = None) -> Tag:
    return _build("json", ("data", _required("data", data)), ("resid", _non_negative("resid", resid) if resid is not None else None))


def cardimage(
    file: str,
    *,
    minwidth: Optional[int] = None,
    minheight: Optional[int] = None,
    maxwidth: Optional[int] = None,
    maxheight: Optional[int] = None,
    source: Optional[str] = None,
    icon: Optional[str] = None,
) -> Tag:
    return _build(
        "cardimage",
        ("file", _required("file", file)),
        ("minwidth", _non_negative("minwidth", minwidth) if minwidth is not None else None),
        ("minheight", _non_negative("minheight", minheight) if minheight is not None else None),
        ("maxwidth", _non_negative("maxwidth", maxwidth) if maxwidth is not None else None),
        ("maxheight", _non_negative("maxheight", maxheight) if maxheight is not None else None),
        ("source", source),
        ("icon", icon),
    )


def tts(text: str) -> Tag:
    return _build("tts", ("text", _required("text", text)))


def redbag(title: str) -> Tag:
    return _build("redbag", ("title", _required("title", title)))


def tag(kind: str, attributes: Optional[Mapping[str, Any]] = None, **extra: Any) -> Tag:
    """Generic constructor for kinds this module has no dedicated builder for."""
    attrs: Dict[str, Any] = dict(attributes or {})
    attrs.update(extra)
    return Tag(kind, attrs)


KNOWN_KINDS = frozenset(
    {
        "face",
        "image",
        "record",
        "video",
        "at",
        "rps",
        "dice",
        "shake",
        "poke",
        "gift",
        "anonymous",
        "share",
        "contact",
        "location",
        "music",
        "reply",
        "forward",
        "node",
        "xml",
        "json",
        "cardimage",
        "tts",
        "redbag",
    }
)
