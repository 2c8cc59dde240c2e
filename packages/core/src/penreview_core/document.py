"""Design document parsing, frame extraction and content fingerprints.

A ``.pen`` file is JSON: a root object whose ``children`` are nodes, each
node carrying an ``id``, a ``type`` tag, optional geometry and optional
``children`` of its own. Frames are the nodes tagged ``"frame"``; top-level
frames are the screens/artboards reviewers care about.

The loosely-typed JSON is converted into frozen dataclasses here, at the
boundary, so the diff and render code never handles raw dicts.
"""

from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from penreview_core.errors import ParseError

FRAME_TYPE = "frame"

# Keys the parser lifts into typed Node fields. Everything else is kept
# verbatim in Node.attributes.
_NODE_FIELDS = {"id", "type", "name", "x", "y", "width", "height", "reusable", "children"}

# Layer names are never rendered.
_NON_SEMANTIC_KEYS = frozenset({"name"})

# Canvas position of the frame itself, not of its content.
_ROOT_POSITION_KEYS = frozenset({"x", "y"})

# Style properties whose string spelling of a number ("0.5") means the number.
# Strings under any other key (text content, font names, colors) hash verbatim.
_NUMERIC_KEYS = frozenset(
    {
        "x",
        "y",
        "width",
        "height",
        "opacity",
        "rotation",
        "cornerRadius",
        "fontSize",
        "fontWeight",
        "letterSpacing",
        "lineHeight",
        "strokeWidth",
        "gap",
        "padding",
    }
)


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    name: str | None = None
    x: float | None = None
    y: float | None = None
    width: float | str | None = None  # number or sizing keyword, e.g. "fill_container"
    height: float | str | None = None
    reusable: bool = False
    children: tuple[Node, ...] = ()
    attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class Document:
    children: tuple[Node, ...] = ()
    version: str | None = None
    variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class Frame:
    """A top-level addressable region of a document."""

    id: str
    name: str
    fingerprint: str
    node: Node
    x: float | None = None
    y: float | None = None
    width: float | None = None
    height: float | None = None
    reusable: bool = False


@dataclass
class FrameIndex:
    """Frames of one document revision, keyed by id, in traversal order."""

    frames: dict[str, Frame] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def __contains__(self, frame_id: object) -> bool:
        return frame_id in self.frames

    def __len__(self) -> int:
        return len(self.order)

    def __iter__(self):
        return (self.frames[frame_id] for frame_id in self.order)

    def get(self, frame_id: str) -> Frame | None:
        return self.frames.get(frame_id)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_document(raw: str | bytes) -> Document:
    """Parse raw ``.pen`` content into a Document.

    Raises ParseError for invalid JSON, a non-object root, or any node that
    does not carry a string ``id`` and ``type``.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Document is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ParseError(f"Document root must be an object, got {type(data).__name__}")

    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise ParseError("Document 'variables' must be an object")
    version = data.get("version")

    return Document(
        children=_parse_children(data.get("children"), "root"),
        version=str(version) if version is not None else None,
        variables=MappingProxyType(dict(variables)),
    )


def _parse_children(raw_children: Any, parent: str) -> tuple[Node, ...]:
    if raw_children is None:
        return ()
    if not isinstance(raw_children, list):
        raise ParseError(f"'children' of {parent} must be a list")
    return tuple(_parse_node(child, parent) for child in raw_children)


def _parse_node(raw: Any, parent: str) -> Node:
    if not isinstance(raw, dict):
        raise ParseError(f"Child of {parent} must be an object, got {type(raw).__name__}")

    node_id = raw.get("id")
    node_type = raw.get("type")
    if not isinstance(node_id, str) or not node_id:
        raise ParseError(f"Node under {parent} is missing a string 'id'")
    if not isinstance(node_type, str) or not node_type:
        raise ParseError(f"Node {node_id!r} is missing a string 'type'")

    name = raw.get("name")
    return Node(
        id=node_id,
        type=node_type,
        name=name if isinstance(name, str) else None,
        x=_coordinate(raw.get("x"), node_id, "x"),
        y=_coordinate(raw.get("y"), node_id, "y"),
        width=_dimension(raw.get("width")),
        height=_dimension(raw.get("height")),
        reusable=bool(raw.get("reusable", False)),
        children=_parse_children(raw.get("children"), f"node {node_id!r}"),
        attributes=MappingProxyType({k: v for k, v in raw.items() if k not in _NODE_FIELDS}),
    )


def _coordinate(value: Any, node_id: str, key: str) -> float | None:
    if value is None:
        return None
    number = _as_number(value)
    if number is None:
        raise ParseError(f"Node {node_id!r} has a non-numeric {key!r}: {value!r}")
    return number


def _dimension(value: Any) -> float | str | None:
    """Width/height are numbers or sizing keywords ("fill_container", "fit_content")."""
    if value is None:
        return None
    number = _as_number(value)
    if number is not None:
        return number
    return str(value)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        # float() also accepts "1_000", "inf" and "nan"; none of those is a design value.
        if "_" in value:
            return None
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


# ---------------------------------------------------------------------------
# Fingerprinting
# ---------------------------------------------------------------------------


def fingerprint(node: Node) -> str:
    """Return a SHA-256 over the canonical form of ``node``'s subtree.

    Object key order, sibling order, layer names and the node's own canvas
    position do not affect the result. Numbers compare by value (120 vs 120.0),
    and so do numeric strings under geometry and style keys ("120" vs 120).
    Any other string, text content included, is hashed verbatim.
    """
    canonical = _canonical_node(node, root=True)
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _canonical_node(node: Node, root: bool = False) -> dict:
    fields: dict[str, Any] = {
        "id": node.id,
        "type": node.type,
        "x": node.x,
        "y": node.y,
        "width": node.width,
        "height": node.height,
        "reusable": node.reusable,
    }
    fields.update(node.attributes)
    skip = _NON_SEMANTIC_KEYS | _ROOT_POSITION_KEYS if root else _NON_SEMANTIC_KEYS
    out = {k: _canonical_value(v, k) for k, v in fields.items() if k not in skip and v is not None}
    out["children"] = sorted((_canonical_node(c) for c in node.children), key=lambda c: c["id"])
    return out


def _canonical_value(value: Any, key: str | None = None) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return _normalize_number(float(value))
    if isinstance(value, str):
        number = _as_number(value) if key in _NUMERIC_KEYS else None
        return _normalize_number(number) if number is not None else value
    if isinstance(value, Mapping):
        return {str(k): _canonical_value(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        # List items inherit their key: padding: ["8", 8] is two numbers.
        return [_canonical_value(v, key) for v in value]
    return str(value)


def _normalize_number(number: float) -> int | float | str:
    if number != number or number in (float("inf"), float("-inf")):
        return repr(number)
    if number.is_integer():
        return int(number)
    return number


# ---------------------------------------------------------------------------
# Frame extraction
# ---------------------------------------------------------------------------


def index_frames(document: Document, depth: int | None = 1) -> FrameIndex:
    """Collect frames in traversal order and index them by id.

    ``depth=1`` (the default) returns only direct children of the root that
    are frames. ``depth=None`` walks the whole tree, nested frames included.
    """
    index = FrameIndex()

    def visit(nodes: tuple[Node, ...], level: int) -> None:
        for node in nodes:
            if node.type == FRAME_TYPE:
                if node.id in index.frames:
                    raise ParseError(f"Duplicate frame id {node.id!r}")
                index.frames[node.id] = _to_frame(node)
                index.order.append(node.id)
            if depth is None or level < depth:
                visit(node.children, level + 1)

    visit(document.children, 1)
    return index


def _to_frame(node: Node) -> Frame:
    return Frame(
        id=node.id,
        name=node.name or f"Frame {node.id}",
        fingerprint=fingerprint(node),
        node=node,
        x=node.x,
        y=node.y,
        width=node.width if isinstance(node.width, float) else None,
        height=node.height if isinstance(node.height, float) else None,
        reusable=node.reusable,
    )


def load_frame_index(raw: str | bytes, depth: int | None = 1) -> FrameIndex:
    return index_frames(parse_document(raw), depth=depth)
