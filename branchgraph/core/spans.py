"""Quoted context spans: drafts, serialization and re-location in source text.

A draft is an ordered list of segments. Plain strings are text the user
typed; `PendingContext` entries are spans quoted from earlier nodes. When the
draft is serialized each quoted span is recorded as a `ContextRange` into the
outgoing text, together with where it came from in the source node.
"""

import json
import logging
import re
from dataclasses import dataclass, field

from .exceptions import DraftNotFoundError, ValidationError
from .types import ContextRange, Graph, Message
from .utils import clean_ids, new_id

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_OPTIONAL_RANGE_KEYS = ("sourceStartPos", "sourceEndPos")


@dataclass
class PendingContext:
    """A quoted span waiting in a draft."""
    id: str
    text: str
    source_node_id: str
    source_start_pos: int | None = None
    source_end_pos: int | None = None


@dataclass
class DraftNode:
    id: str
    anchor_node_id: str | None
    from_node_ids: list[str]
    segments: list = field(default_factory=list)

    @property
    def pending_contexts(self) -> list[PendingContext]:
        return [s for s in self.segments if isinstance(s, PendingContext)]


@dataclass(frozen=True)
class SerializedDraft:
    text: str
    context_ranges: list[ContextRange]


@dataclass(frozen=True)
class ExchangeRequest:
    """Arguments for creating an exchange from a promoted draft."""
    draft_node_id: str
    from_node_ids: list[str]
    content: str
    context_ranges: list[ContextRange]


# ============================================================================
# Locating text
# ============================================================================

def locate(text: str, highlight: str) -> tuple[int, int] | None:
    """
    Find `highlight` in `text` and return its [start, end) span.

    Exact match first, then a whitespace-insensitive match mapped back to
    offsets in the original text. Returns None when neither matches.
    """
    if not text or not highlight:
        return None

    start = text.find(highlight)
    if start >= 0:
        return start, start + len(highlight)

    return _locate_normalized(text, highlight)


def _locate_normalized(text: str, highlight: str) -> tuple[int, int] | None:
    needle = _WHITESPACE.sub(" ", highlight).strip()
    if not needle:
        return None

    haystack = _WHITESPACE.sub(" ", text)
    index = haystack.find(needle)
    if index < 0:
        return None

    # Non-whitespace characters survive normalization one-to-one
    skip = _count_visible(haystack[:index])
    wanted = _count_visible(needle)

    start = None
    seen = 0
    for i, ch in enumerate(text):
        if ch.isspace():
            continue
        if seen == skip:
            start = i
        seen += 1
        if start is not None and seen == skip + wanted:
            return start, i + 1
    return None


def _count_visible(value: str) -> int:
    return sum(1 for ch in value if not ch.isspace())


def locate_in_node(graph: Graph, node_id: str, highlight: str) -> tuple[int, int] | None:
    """Locate text inside a node's label; unknown nodes simply don't match."""
    node = graph["nodes"].get(node_id)
    if node is None:
        return None
    return locate(node["label"], highlight)


def quoted_text(text: str, context_range: ContextRange) -> str:
    return text[context_range["startPos"]:context_range["endPos"]]


def resolve_source_span(
    source_text: str,
    context_range: ContextRange,
    quoted: str,
) -> tuple[int, int] | None:
    """
    Where a quotation currently sits in its source text.

    The recorded source offsets win while they still hold the quoted text
    verbatim; otherwise the quote is searched for again.
    """
    start = context_range.get("sourceStartPos")
    end = context_range.get("sourceEndPos")
    if start is not None and end is not None and 0 <= start <= end <= len(source_text):
        if source_text[start:end] == quoted:
            return start, end
    return locate(source_text, quoted)


def backlinks(graph: Graph, messages: dict[str, Message], node_id: str) -> list[dict]:
    """
    Spans of `node_id`'s text that later nodes quoted.

    Each entry is {"start", "end", "fromNodeId"}. Quotes that can no longer be
    found (the source was edited) are left out.
    """
    target = graph["nodes"].get(node_id)
    if target is None:
        return []

    links = []
    for node in graph["nodes"].values():
        message = messages.get(node["message_id"]) if node["message_id"] else None
        if not message or not message.get("context_ranges"):
            continue
        for context_range in message["context_ranges"]:
            if context_range["sourceNodeId"] != node_id:
                continue
            span = resolve_source_span(
                target["label"], context_range, quoted_text(message["content"], context_range)
            )
            if span:
                links.append({"start": span[0], "end": span[1], "fromNodeId": node["id"]})

    links.sort(key=lambda link: (link["start"], link["end"], link["fromNodeId"]))
    return links


# ============================================================================
# Context range (de)serialization
# ============================================================================

def _is_offset(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def normalize_context_range(raw) -> ContextRange:
    """Validate a context range and drop unknown keys. Raises ValidationError."""
    if not isinstance(raw, dict):
        raise ValidationError("context range must be an object")

    source_node_id = raw.get("sourceNodeId")
    if not isinstance(source_node_id, str) or not source_node_id.strip():
        raise ValidationError("context range requires sourceNodeId")

    start, end = raw.get("startPos"), raw.get("endPos")
    if not _is_offset(start) or not _is_offset(end) or start > end:
        raise ValidationError(f"invalid context range offsets: {start}..{end}")

    result: ContextRange = {"sourceNodeId": source_node_id.strip(), "startPos": start, "endPos": end}
    for key in _OPTIONAL_RANGE_KEYS:
        value = raw.get(key)
        if value is None:
            continue
        if not _is_offset(value):
            raise ValidationError(f"invalid {key}: {value!r}")
        result[key] = value
    return result


def dump_context_ranges(ranges) -> str | None:
    """Encode ranges for the messages.context_ranges column."""
    if not ranges:
        return None
    return json.dumps([normalize_context_range(r) for r in ranges])


def load_context_ranges(raw: str | None) -> list[ContextRange] | None:
    """Decode the messages.context_ranges column."""
    if not raw:
        return None
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValidationError("context_ranges must be a JSON array")
    return [normalize_context_range(r) for r in data]


def trim_with_ranges(text: str, ranges) -> tuple[str, list[ContextRange]]:
    """
    Strip surrounding whitespace and shift ranges to match.

    A range cut by the strip loses the same characters from its source span.
    Ranges left empty are dropped.
    """
    stripped = text.strip()
    lead = len(text) - len(text.lstrip())
    shifted = []
    for r in ranges or []:
        start, end = r["startPos"] - lead, r["endPos"] - lead
        cut_front = max(0, -start)
        cut_back = max(0, end - len(stripped))
        start, end = start + cut_front, end - cut_back
        if start >= end:
            continue
        moved = dict(r)
        moved["startPos"], moved["endPos"] = start, end
        if "sourceStartPos" in r and "sourceEndPos" in r:
            moved["sourceStartPos"] = r["sourceStartPos"] + cut_front
            moved["sourceEndPos"] = max(r["sourceEndPos"] - cut_back, moved["sourceStartPos"])
        shifted.append(moved)
    return stripped, shifted


# ============================================================================
# Drafts
# ============================================================================

class ContextSpanTracker:
    """Working state for drafts and the spans quoted into them."""

    def __init__(self):
        self.drafts: dict[str, DraftNode] = {}

    def create_draft(
        self,
        anchor_node_id: str | None,
        from_node_ids=None,
        draft_id: str | None = None,
    ) -> DraftNode:
        """Open a draft below an anchor; the anchor is the default context."""
        from_ids = clean_ids(from_node_ids)
        if not from_ids and anchor_node_id:
            from_ids = [anchor_node_id]
        draft = DraftNode(id=draft_id or new_id(), anchor_node_id=anchor_node_id, from_node_ids=from_ids)
        self.drafts[draft.id] = draft
        logger.debug(f"Created draft '{draft.id}' anchored at {anchor_node_id}")
        return draft

    def get_draft(self, draft_id: str) -> DraftNode:
        draft = self.drafts.get(draft_id)
        if draft is None:
            raise DraftNotFoundError(draft_id)
        return draft

    def append_text(self, draft_id: str, text: str):
        """Append typed text, merging with a preceding text segment."""
        if not text:
            return
        draft = self.get_draft(draft_id)
        if draft.segments and isinstance(draft.segments[-1], str):
            draft.segments[-1] += text
        else:
            draft.segments.append(text)

    def attach(
        self,
        draft_id: str,
        quoted_text: str,
        source_node_id: str,
        source_start_pos: int | None = None,
        source_end_pos: int | None = None,
        *,
        source_text: str | None = None,
        entry_id: str | None = None,
    ) -> PendingContext:
        """
        Quote a span of another node into a draft.

        Repeating an attach with the same entry id returns the existing entry.
        Missing source offsets are looked up in `source_text` when given.
        """
        draft = self.get_draft(draft_id)
        if entry_id:
            for existing in draft.pending_contexts:
                if existing.id == entry_id:
                    return existing

        if not quoted_text:
            raise ValidationError("quoted text is required")

        if (source_start_pos is None or source_end_pos is None) and source_text is not None:
            span = locate(source_text, quoted_text)
            if span:
                source_start_pos, source_end_pos = span

        entry = PendingContext(
            id=entry_id or new_id(),
            text=quoted_text,
            source_node_id=source_node_id,
            source_start_pos=source_start_pos,
            source_end_pos=source_end_pos,
        )
        draft.segments.append(entry)
        if source_node_id not in draft.from_node_ids:
            draft.from_node_ids.append(source_node_id)
        return entry

    def serialize(self, draft_id: str) -> SerializedDraft:
        """Flatten a draft into outgoing text plus the ranges of its quotes."""
        draft = self.get_draft(draft_id)
        parts = []
        ranges: list[ContextRange] = []
        length = 0

        for segment in draft.segments:
            if isinstance(segment, PendingContext):
                context_range: ContextRange = {
                    "sourceNodeId": segment.source_node_id,
                    "startPos": length,
                    "endPos": length + len(segment.text),
                }
                if segment.source_start_pos is not None and segment.source_end_pos is not None:
                    context_range["sourceStartPos"] = segment.source_start_pos
                    context_range["sourceEndPos"] = segment.source_end_pos
                ranges.append(context_range)
                text = segment.text
            else:
                text = segment
            parts.append(text)
            length += len(text)

        return SerializedDraft(text="".join(parts), context_ranges=ranges)

    def promote(self, draft_id: str, *, keep: bool = False) -> ExchangeRequest:
        """
        Serialize a draft for sending.

        The draft leaves working state unless `keep` is set, in which case the
        caller removes it once the exchange has been recorded.
        """
        serialized = self.serialize(draft_id)
        content, ranges = trim_with_ranges(serialized.text, serialized.context_ranges)
        if not content:
            raise ValidationError("content is required")
        draft = self.drafts[draft_id] if keep else self.drafts.pop(draft_id)
        return ExchangeRequest(
            draft_node_id=draft.id,
            from_node_ids=list(draft.from_node_ids),
            content=content,
            context_ranges=ranges,
        )

    def remove_draft(self, draft_id: str) -> bool:
        return self.drafts.pop(draft_id, None) is not None

    def remove_drafts_for_anchors(self, anchor_ids) -> list[str]:
        """Discard drafts anchored on nodes that no longer exist."""
        anchors = set(anchor_ids)
        removed = [d.id for d in self.drafts.values() if (d.anchor_node_id or d.id) in anchors]
        for draft_id in removed:
            del self.drafts[draft_id]
        return removed
