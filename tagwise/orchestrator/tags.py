"""Directive extraction for model output.

The model interleaves bracketed control directives with its prose, e.g.

    [TOPIC_ID: Shadow Realm][CONFIDENCE: high]Welcome, traveler.

This module scans a text buffer against a closed grammar table, returns
the parsed directive payloads and the display text with every directive
removed. It is a pure function of the buffer: callers re-run it over the
whole accumulated buffer on every chunk.

Scanning rules:
- Only names in GRAMMAR are directives; any other bracketed text is prose.
- JSON payloads are scanned with string and nesting awareness, so a ']'
  inside a JSON string does not end the directive.
- A directive whose closing bracket (or whose name) has not arrived yet
  is left pending and hidden from the display text until a later call
  completes it.
- A payload that fails to parse is dropped (and logged); scanning
  continues with the rest of the buffer.

Does NOT:
- Apply directive side effects (the reconciler's job)
- Remember what earlier calls returned
"""

import json
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar


LOGGER = logging.getLogger(__name__)

MAX_SUGGESTIONS = 3


# ==================== Directive payloads ====================

@dataclass(frozen=True)
class TopicIdentified:
    """The model identified the topic of the conversation."""

    name: str
    confidence: Optional[str] = None  # "high", "low" or None if not stated

    def is_confident(self, has_images: bool = False) -> bool:
        """Whether the identification is strong enough to act on.

        An explicit "high" always counts. With no confidence stated, a
        text-only question counts; a screenshot guess does not.
        """
        if self.confidence is None:
            return not has_images
        return self.confidence == "high"


@dataclass(frozen=True)
class Confidence:
    """Confidence attached to the topic identification."""

    level: str


@dataclass(frozen=True)
class Category:
    """Topic category, selects the panel template set."""

    name: str


@dataclass(frozen=True)
class ProgressEstimate:
    """Estimated completion of the topic, 0-100."""

    value: int


@dataclass(frozen=True)
class UnreleasedFlag:
    """The topic refers to something not yet released."""


@dataclass(frozen=True)
class Milestone:
    """A notable achievement worth celebrating in the UI."""

    type: str
    name: str


@dataclass(frozen=True)
class InventorySnapshot:
    """Full replacement of the tracked inventory."""

    items: Tuple[str, ...]


@dataclass(frozen=True)
class PanelUpdate:
    """Content to append to an existing panel."""

    panel_id: str
    content: str


@dataclass(frozen=True)
class PanelModifyRequest:
    """Proposal to overwrite a panel or create a new one."""

    panel_id: str
    title: str
    content: str


@dataclass(frozen=True)
class PanelDeleteRequest:
    """Request to remove a panel."""

    panel_id: str


@dataclass(frozen=True)
class GoalSet:
    """A new active goal."""

    description: str


@dataclass(frozen=True)
class GoalComplete:
    """The active goal was completed."""


@dataclass(frozen=True)
class SuggestedFollowUps:
    """Follow-up prompts offered to the user."""

    items: Tuple[str, ...]


# ==================== Grammar ====================

class PayloadKind(Enum):
    """How a directive payload is decoded."""

    TEXT = "text"
    INTEGER = "integer"
    FLAG = "flag"
    JSON_OBJECT = "json_object"
    JSON_ARRAY = "json_array"


class MalformedDirective(ValueError):
    """A directive payload could not be decoded."""


def _field(obj: Dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedDirective(f"missing or empty '{key}'")
    return value.strip()


def _string_items(values: List[Any]) -> Tuple[str, ...]:
    return tuple(str(v).strip() for v in values if str(v).strip())


def _build_confidence(value: str) -> Confidence:
    level = value.lower()
    if level not in ("high", "low"):
        raise MalformedDirective(f"unknown confidence {value!r}")
    return Confidence(level)


def _build_inventory(obj: Dict[str, Any]) -> InventorySnapshot:
    items = obj.get("items")
    if not isinstance(items, list):
        raise MalformedDirective("'items' must be a list")
    return InventorySnapshot(_string_items(items))


def _build_suggestions(values: List[Any]) -> SuggestedFollowUps:
    return SuggestedFollowUps(_string_items(values)[:MAX_SUGGESTIONS])


@dataclass(frozen=True)
class TagRule:
    """Decoding rule for one directive name."""

    kind: PayloadKind
    build: Callable[[Any], Any]


GRAMMAR: Dict[str, TagRule] = {
    "TOPIC_ID": TagRule(PayloadKind.TEXT, lambda v: TopicIdentified(name=v)),
    "CONFIDENCE": TagRule(PayloadKind.TEXT, _build_confidence),
    "CATEGORY": TagRule(PayloadKind.TEXT, lambda v: Category(name=v)),
    "PROGRESS": TagRule(PayloadKind.INTEGER, lambda v: ProgressEstimate(min(100, v))),
    "UNRELEASED": TagRule(PayloadKind.FLAG, lambda v: UnreleasedFlag()),
    "MILESTONE": TagRule(
        PayloadKind.JSON_OBJECT,
        lambda o: Milestone(type=_field(o, "type"), name=_field(o, "name")),
    ),
    "INVENTORY": TagRule(PayloadKind.JSON_OBJECT, _build_inventory),
    "PANEL_UPDATE": TagRule(
        PayloadKind.JSON_OBJECT,
        lambda o: PanelUpdate(panel_id=_field(o, "id"), content=_field(o, "content")),
    ),
    "PANEL_MODIFY_PENDING": TagRule(
        PayloadKind.JSON_OBJECT,
        lambda o: PanelModifyRequest(
            panel_id=_field(o, "id"),
            title=_field(o, "title"),
            content=_field(o, "content"),
        ),
    ),
    "PANEL_DELETE_REQUEST": TagRule(
        PayloadKind.JSON_OBJECT,
        lambda o: PanelDeleteRequest(panel_id=_field(o, "id")),
    ),
    "GOAL_SET": TagRule(
        PayloadKind.JSON_OBJECT,
        lambda o: GoalSet(description=_field(o, "description")),
    ),
    "GOAL_COMPLETE": TagRule(PayloadKind.FLAG, lambda v: GoalComplete()),
    "SUGGESTIONS": TagRule(PayloadKind.JSON_ARRAY, _build_suggestions),
}


def _decode(kind: PayloadKind, payload: str) -> Any:
    """Decode a raw payload according to its kind.

    Returns:
        The decoded value, or None when the payload is a valid "off"
        value (e.g. a flag set to false) that yields no directive

    Raises:
        MalformedDirective: If the payload cannot be decoded
    """
    if kind is PayloadKind.TEXT:
        if not payload:
            raise MalformedDirective("empty payload")
        return payload

    if kind is PayloadKind.INTEGER:
        match = re.fullmatch(r"(\d+)\s*%?", payload)
        if not match:
            raise MalformedDirective(f"not an integer: {payload!r}")
        return int(match.group(1))

    if kind is PayloadKind.FLAG:
        lowered = payload.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return None
        raise MalformedDirective(f"not a boolean: {payload!r}")

    try:
        value = json.loads(payload)
    except json.JSONDecodeError as e:
        if kind is not PayloadKind.JSON_ARRAY:
            raise MalformedDirective(str(e)) from e
        # Models sometimes emit Python-style single-quoted lists
        try:
            value = json.loads(payload.replace("'", '"'))
        except json.JSONDecodeError:
            raise MalformedDirective(str(e)) from e

    expected = dict if kind is PayloadKind.JSON_OBJECT else list
    if not isinstance(value, expected):
        raise MalformedDirective(f"expected a JSON {expected.__name__}")
    return value


def parse_directive(name: str, payload: str) -> Optional[Any]:
    """Parse a single directive.

    Args:
        name: Directive name (must be in GRAMMAR)
        payload: Raw text between the colon and the closing bracket

    Returns:
        Directive payload object, or None if the directive is malformed
        or switched off
    """
    rule = GRAMMAR[name]
    try:
        value = _decode(rule.kind, payload.strip())
        if value is None:
            return None
        return rule.build(value)
    except MalformedDirective as e:
        LOGGER.warning("Dropping malformed %s directive (%s): %.200s", name, e, payload)
        return None


# ==================== Scanner ====================

_HEAD_RE = re.compile(r"\[([A-Z][A-Z_]*):\s*")
_PARTIAL_HEAD_RE = re.compile(r"\[([A-Z_]*)")
_LEADING_STRAY_RE = re.compile(r"^[\s`\"\]}]*")
_TRAILING_STRAY_RE = re.compile(r"[\s`\"\]}]*$")

D = TypeVar("D")


@dataclass
class ExtractionResult:
    """Directives found in a buffer and the text left for display."""

    directives: List[Any] = field(default_factory=list)
    display_text: str = ""
    pending: str = ""
    removed: int = 0

    def first(self, kind: Type[D]) -> Optional[D]:
        """Get the first directive of a type."""
        for directive in self.directives:
            if isinstance(directive, kind):
                return directive
        return None

    def all(self, kind: Type[D]) -> List[D]:
        """Get every directive of a type, in buffer order."""
        return [d for d in self.directives if isinstance(d, kind)]

    def has(self, kind: type) -> bool:
        """Check whether a directive of a type was found."""
        return self.first(kind) is not None

    @property
    def topic(self) -> Optional[TopicIdentified]:
        """The topic identification, if any."""
        return self.first(TopicIdentified)


def _is_partial_head(tail: str) -> bool:
    """Check whether a buffer tail could still grow into a directive head."""
    match = _PARTIAL_HEAD_RE.fullmatch(tail)
    if not match:
        return False
    prefix = match.group(1)
    return any(name.startswith(prefix) for name in GRAMMAR)


def _find_close(text: str, start: int, structured: bool) -> int:
    """Find the bracket that closes a directive opened before start.

    For structured (JSON) payloads, brackets and braces are matched and
    double-quoted strings are skipped. A ']' that does not match the
    innermost open JSON container closes the directive, so malformed JSON
    cannot swallow the rest of the buffer.

    Returns:
        Index of the closing bracket, or -1 if it has not arrived yet
    """
    stack: List[str] = []
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if structured and ch == '"':
            in_string = True
        elif structured and ch == "{":
            stack.append("}")
        elif structured and ch == "[":
            stack.append("]")
        elif ch == "]":
            if stack and stack[-1] == "]":
                stack.pop()
            else:
                return i
        elif structured and ch == "}" and stack and stack[-1] == "}":
            stack.pop()

    return -1


def extract_directives(buffer: str, final: bool = False) -> ExtractionResult:
    """Extract directives from a (possibly still growing) buffer.

    Args:
        buffer: All raw model text received so far
        final: True once the stream has ended. An unterminated directive
            is then scanned leniently instead of being held back.

    Returns:
        ExtractionResult with parsed directives and display text
    """
    result = ExtractionResult()
    pieces: List[str] = []
    pos = 0

    while True:
        start = buffer.find("[", pos)
        if start == -1:
            pieces.append(buffer[pos:])
            break

        head = _HEAD_RE.match(buffer, start)
        if not head or head.group(1) not in GRAMMAR:
            if not final and _is_partial_head(buffer[start:]):
                pieces.append(buffer[pos:start])
                result.pending = buffer[start:]
                break
            pieces.append(buffer[pos:start + 1])
            pos = start + 1
            continue

        name = head.group(1)
        payload_start = head.end()
        structured = buffer[payload_start:payload_start + 1] in ("{", "[")
        end = _find_close(buffer, payload_start, structured)

        if end == -1 and final and structured:
            # An unterminated JSON string; fall back to the first ']'
            end = _find_close(buffer, payload_start, False)

        if end == -1:
            pieces.append(buffer[pos:start])
            if final:
                # Never completed: show it rather than lose the text
                pieces.append(buffer[start:])
            else:
                result.pending = buffer[start:]
            break

        pieces.append(buffer[pos:start])
        directive = parse_directive(name, buffer[payload_start:end])
        if directive is not None:
            result.directives.append(directive)
        result.removed += 1
        pos = end + 1

    display = "".join(pieces)
    if result.removed:
        display = _LEADING_STRAY_RE.sub("", display)
        display = _TRAILING_STRAY_RE.sub("", display)
    result.display_text = display
    result.directives = _merge_confidence(result.directives)
    return result


def _merge_confidence(directives: List[Any]) -> List[Any]:
    """Fold a CONFIDENCE directive into the topic identification."""
    confidence = next((d for d in directives if isinstance(d, Confidence)), None)
    merged = []
    for directive in directives:
        if isinstance(directive, Confidence):
            continue
        if isinstance(directive, TopicIdentified) and confidence is not None:
            directive = replace(directive, confidence=confidence.level)
        merged.append(directive)
    return merged


def strip_directives(buffer: str) -> str:
    """Get the display text of a buffer, discarding directives."""
    return extract_directives(buffer).display_text
