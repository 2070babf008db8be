"""Structure-aware semantic chunking."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from itertools import combinations

from kb_search.config import ChunkingConfig
from kb_search.errors import ProviderError
from kb_search.ingest.embedder import EmbeddingProvider, cosine_similarity, mean_vector
from kb_search.obs.observability import get_logger
from kb_search.obs.tracing import estimate_token_count
from kb_search.types import BoundaryType, Chunk, StructureType

logger = get_logger(__name__)

_SENTENCE_BREAK = re.compile(r"(?<=[.!?。！？])\s+|\n\s*\n|\n(?=#{1,6}\s)")
_FENCE = re.compile(r"^\s{0,3}(```|~~~)")
_LIST_ITEM = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\S")
_TABLE_ROW = re.compile(r"^\s*\|.*\|\s*$")

# Similarity this far below the threshold is reported as a topic shift rather
# than an ordinary semantic break.
_TOPIC_SHIFT_MARGIN = 0.15


@dataclass(slots=True)
class _Span:
    start: int
    end: int
    kind: StructureType


@dataclass(slots=True)
class _Sentence:
    start: int
    end: int
    vector: list[float] = field(default_factory=list)


@dataclass(slots=True)
class _Group:
    sentences: list[_Sentence]
    boundary: BoundaryType

    @property
    def start(self) -> int:
        return self.sentences[0].start

    @property
    def end(self) -> int:
        return self.sentences[-1].end


class SemanticChunker:
    """Splits documents into coherent, non-overlapping chunks.

    Design notes:
    1. Structures first.
       Fenced code blocks, list blocks and markdown tables are located with a
       line scan. With `preserve_structures` each one becomes a single atomic
       chunk, whatever its size, and is never merged with neighbours.

    2. Semantic boundaries in prose.
       Prose between structures is split into sentences. Every sentence is
       embedded and the similarity between the mean embeddings of the
       `window_size` sentences on either side of each gap decides whether the
       gap becomes a chunk boundary. A chunk is also closed when the next
       sentence would push it past `max_size`.

    3. Small-chunk merging.
       A prose chunk shorter than `min_size` is merged with the prose chunk
       that follows it, as long as the merged span stays within `max_size`.

    Offsets are `str` indices into the input and every chunk's text is the
    exact source slice, so chunks are ordered and never overlap.
    """

    def __init__(self, embedder: EmbeddingProvider, config: ChunkingConfig | None = None) -> None:
        self.embedder = embedder
        self.config = config or ChunkingConfig()

    async def chunk(
        self,
        text: str,
        *,
        document_id: str = "doc",
        config: ChunkingConfig | None = None,
    ) -> list[Chunk]:
        """Chunk `text` and return the chunks in document order.

        Empty or whitespace-only input yields an empty list.
        """

        cfg = config or self.config
        if len(text) > cfg.max_input_chars:
            logger.warning(
                "chunker.input_truncated",
                document_id=document_id,
                length=len(text),
                max_input_chars=cfg.max_input_chars,
            )
            text = text[: cfg.max_input_chars]
        if not text.strip():
            return []

        structures = _scan_structures(text) if cfg.preserve_structures else []
        regions = _prose_regions(text, structures)

        sentences_by_region = [
            self._split_sentences(text, start, end, cfg) for start, end, _ in regions
        ]
        await self._embed_sentences(
            text,
            [sentence for region in sentences_by_region for sentence in region],
            document_id,
        )

        pieces: list[tuple[int, int, StructureType, float, BoundaryType]] = []
        for span in structures:
            pieces.append((span.start, span.end, span.kind, 1.0, "structure_boundary"))

        for (_, _, followed_by_structure), sentences in zip(regions, sentences_by_region, strict=True):
            if not sentences:
                continue
            closing: BoundaryType = "structure_boundary" if followed_by_structure else "semantic_break"
            groups = self._group_sentences(sentences, closing, cfg)
            for group in self._merge_small(groups, cfg):
                pieces.append(
                    (group.start, group.end, "prose", _coherence(group.sentences), group.boundary)
                )

        pieces.sort(key=lambda piece: piece[0])
        return [
            Chunk(
                id=f"{document_id}-chunk-{index:04d}",
                source_document_id=document_id,
                text=text[start:end],
                start_offset=start,
                end_offset=end,
                structure_type=kind,
                semantic_score=score,
                token_count=estimate_token_count(text[start:end]),
                boundary_type=boundary,
            )
            for index, (start, end, kind, score, boundary) in enumerate(pieces)
        ]

    async def _embed_sentences(
        self, text: str, sentences: list[_Sentence], document_id: str
    ) -> None:
        if len(sentences) < 2:
            return
        try:
            vectors = await self.embedder.embed_many(
                [text[sentence.start : sentence.end] for sentence in sentences]
            )
        except ProviderError as exc:
            # Without vectors every gap looks coherent and only size limits apply.
            logger.warning("chunker.embedding_failed", document_id=document_id, error=str(exc))
            return
        for sentence, vector in zip(sentences, vectors, strict=True):
            sentence.vector = vector

    def _split_sentences(
        self, text: str, start: int, end: int, cfg: ChunkingConfig
    ) -> list[_Sentence]:
        sentences: list[_Sentence] = []
        cursor = start
        for match in _SENTENCE_BREAK.finditer(text, start, end):
            sentences.extend(self._bounded(text, cursor, match.start(), cfg))
            cursor = match.end()
        sentences.extend(self._bounded(text, cursor, end, cfg))
        return sentences

    @staticmethod
    def _bounded(text: str, start: int, end: int, cfg: ChunkingConfig) -> list[_Sentence]:
        """Trim a sentence span and cut it at whitespace if it exceeds `max_size`."""

        span = _trim(text, start, end)
        if span is None:
            return []
        start, end = span
        pieces: list[_Sentence] = []
        while end - start > cfg.max_size:
            limit = start + cfg.target_size
            cut = max(text.rfind(" ", start + 1, limit + 1), text.rfind("\n", start + 1, limit + 1))
            if cut <= start:
                cut = limit
            head = _trim(text, start, cut)
            if head is not None:
                pieces.append(_Sentence(*head))
            tail = _trim(text, cut, end)
            if tail is None:
                return pieces
            start, end = tail
        pieces.append(_Sentence(start, end))
        return pieces

    def _group_sentences(
        self, sentences: list[_Sentence], closing: BoundaryType, cfg: ChunkingConfig
    ) -> list[_Group]:
        similarities = _window_similarities(sentences, cfg.window_size)
        groups: list[_Group] = []
        current = [sentences[0]]

        for index in range(1, len(sentences)):
            sentence = sentences[index]
            similarity = similarities[index - 1]
            boundary: BoundaryType | None = None
            if sentence.end - current[0].start > cfg.max_size:
                boundary = "size_limit"
            elif similarity < cfg.similarity_threshold - _TOPIC_SHIFT_MARGIN:
                boundary = "topic_shift"
            elif similarity < cfg.similarity_threshold:
                boundary = "semantic_break"

            if boundary is None:
                current.append(sentence)
                continue
            groups.append(_Group(sentences=current, boundary=boundary))
            current = [sentence]

        groups.append(_Group(sentences=current, boundary=closing))
        return groups

    @staticmethod
    def _merge_small(groups: list[_Group], cfg: ChunkingConfig) -> list[_Group]:
        merged: list[_Group] = []
        for group in groups:
            if merged:
                previous = merged[-1]
                if (
                    previous.end - previous.start < cfg.min_size
                    and group.end - previous.start <= cfg.max_size
                ):
                    previous.sentences.extend(group.sentences)
                    previous.boundary = group.boundary
                    continue
            merged.append(group)
        return merged


def _trim(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return start, end


def _lines(text: str) -> list[tuple[int, int, str]]:
    lines: list[tuple[int, int, str]] = []
    offset = 0
    for raw in text.splitlines(keepends=True):
        content = raw.rstrip("\r\n")
        lines.append((offset, offset + len(content), content))
        offset += len(raw)
    return lines


def _scan_structures(text: str) -> list[_Span]:
    """Locate fenced code, list and table blocks with a single line scan."""

    lines = _lines(text)
    spans: list[_Span] = []
    i = 0
    while i < len(lines):
        start, _, content = lines[i]

        fence = _FENCE.match(content)
        if fence:
            marker = fence.group(1)
            j = i + 1
            while j < len(lines) and not lines[j][2].strip().startswith(marker):
                j += 1
            last = min(j, len(lines) - 1)
            _append_span(spans, text, start, lines[last][1], "code")
            i = last + 1
            continue

        if _TABLE_ROW.match(content):
            j = i
            while j + 1 < len(lines) and _TABLE_ROW.match(lines[j + 1][2]):
                j += 1
            if j > i:
                _append_span(spans, text, start, lines[j][1], "table")
                i = j + 1
                continue

        if _LIST_ITEM.match(content):
            j = i
            while j + 1 < len(lines):
                following = lines[j + 1][2]
                if _LIST_ITEM.match(following) or (
                    following[:1] in (" ", "\t") and following.strip()
                ):
                    j += 1
                else:
                    break
            _append_span(spans, text, start, lines[j][1], "list")
            i = j + 1
            continue

        i += 1
    return spans


def _append_span(spans: list[_Span], text: str, start: int, end: int, kind: StructureType) -> None:
    trimmed = _trim(text, start, end)
    if trimmed is not None:
        spans.append(_Span(trimmed[0], trimmed[1], kind))


def _prose_regions(text: str, structures: list[_Span]) -> list[tuple[int, int, bool]]:
    """Gaps between structures as `(start, end, followed_by_structure)`."""

    regions: list[tuple[int, int, bool]] = []
    cursor = 0
    for span in structures:
        if span.start > cursor:
            regions.append((cursor, span.start, True))
        cursor = span.end
    if cursor < len(text):
        regions.append((cursor, len(text), False))
    return regions


def _window_similarities(sentences: list[_Sentence], window: int) -> list[float]:
    similarities: list[float] = []
    for i in range(len(sentences) - 1):
        left = [s.vector for s in sentences[max(0, i - window + 1) : i + 1] if s.vector]
        right = [s.vector for s in sentences[i + 1 : i + 1 + window] if s.vector]
        if not left or not right:
            similarities.append(1.0)
            continue
        similarities.append(cosine_similarity(mean_vector(left), mean_vector(right)))
    return similarities


def _coherence(sentences: list[_Sentence]) -> float:
    vectors = [sentence.vector for sentence in sentences if sentence.vector]
    if len(vectors) < 2:
        return 1.0
    scores = [cosine_similarity(a, b) for a, b in combinations(vectors, 2)]
    return min(1.0, max(0.0, sum(scores) / len(scores)))
