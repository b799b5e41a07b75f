"""Extract citation URLs from Gemini grounding metadata.

URLs in ``response.text`` are generated and frequently invented. The only
trustworthy URLs are the ones the search tool attached to the candidate under
``grounding_metadata.grounding_chunks``. SDK objects and raw REST payloads
disagree on casing and nesting, so everything goes through
``normalize_grounding`` first.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from tangotales.models.enrichment import GroundingSource, GroundingSupport
from tangotales.tools.web_utils import categorize_url, extract_domain, is_valid_url


@dataclass(slots=True)
class GroundingChunk:
    uri: str | None
    title: str | None


@dataclass(slots=True)
class NormalizedGrounding:
    chunks: list[GroundingChunk] = field(default_factory=list)
    search_queries: list[str] = field(default_factory=list)
    supports: list[GroundingSupport] = field(default_factory=list)
    present: bool = False


def _pick(node: Any, *names: str) -> Any:
    """First non-empty attribute or key among ``names``."""
    if node is None:
        return None
    for name in names:
        if isinstance(node, dict):
            value = node.get(name)
        else:
            value = getattr(node, name, None)
        if value is not None:
            return value
    return None


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _first_candidate(response: Any) -> Any:
    candidates = _as_list(_pick(response, "candidates"))
    return candidates[0] if candidates else None


def normalize_grounding(response: Any) -> NormalizedGrounding:
    candidate = _first_candidate(response)
    metadata = _pick(candidate, "grounding_metadata", "groundingMetadata")
    if metadata is None:
        return NormalizedGrounding()

    chunks: list[GroundingChunk] = []
    for chunk in _as_list(_pick(metadata, "grounding_chunks", "groundingChunks")):
        if chunk is None:
            continue
        web = _pick(chunk, "web")
        uri = _pick(web, "uri") or _pick(chunk, "uri")
        title = _pick(web, "title") or _pick(chunk, "title")
        chunks.append(GroundingChunk(uri=uri, title=title))

    queries = [
        str(q) for q in _as_list(_pick(metadata, "web_search_queries", "webSearchQueries")) if q
    ]

    supports: list[GroundingSupport] = []
    for support in _as_list(_pick(metadata, "grounding_supports", "groundingSupports")):
        segment = _pick(support, "segment")
        if segment is None:
            continue
        indices = _pick(support, "grounding_chunk_indices", "groundingChunkIndices")
        supports.append(
            GroundingSupport(
                text=_pick(segment, "text") or "",
                start_index=int(_pick(segment, "start_index", "startIndex") or 0),
                end_index=int(_pick(segment, "end_index", "endIndex") or 0),
                source_indices=[int(i) for i in _as_list(indices)],
            )
        )

    return NormalizedGrounding(chunks=chunks, search_queries=queries, supports=supports, present=True)


def has_grounding_metadata(response: Any) -> bool:
    return bool(normalize_grounding(response).chunks)


def extract_grounding_sources(response: Any) -> list[GroundingSource]:
    grounding = normalize_grounding(response)
    if not grounding.present:
        logger.debug("No grounding metadata on response")
        return []
    if grounding.search_queries:
        logger.info(f"Grounding search queries: {', '.join(grounding.search_queries)}")
    if grounding.supports:
        cited = sorted({index for support in grounding.supports for index in support.source_indices})
        logger.info(f"Grounding supports: {len(grounding.supports)} segments citing chunks {cited}")

    sources: list[GroundingSource] = []
    for chunk in grounding.chunks:
        if not chunk.uri:
            continue
        if not is_valid_url(chunk.uri):
            logger.debug(f"Skipping malformed grounding URL: {chunk.uri}")
            continue
        sources.append(
            GroundingSource(
                url=chunk.uri,
                title=chunk.title or None,
                domain=extract_domain(chunk.uri) or "unknown",
                category=categorize_url(chunk.uri),
            )
        )

    if sources:
        by_type = Counter(source.category.value for source in sources)
        logger.info(f"Extracted {len(sources)} grounding sources: {dict(by_type)}")
    return sources


def extract_grounding_supports(response: Any) -> list[GroundingSupport]:
    return normalize_grounding(response).supports
