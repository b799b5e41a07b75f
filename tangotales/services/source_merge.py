"""Shaping of outgoing partial updates and the aggregated source list."""
from __future__ import annotations

from typing import Any, Iterable, Mapping

from loguru import logger

from tangotales.models.enrichment import AggregatedSource, GroundingSource, ValidationResult
from tangotales.tools.web_utils import categorize_url, is_ephemeral_redirect, is_valid_url


def prune_absent(value: Any) -> Any:
    """Recursively drop ``None`` values from dicts (and dicts inside lists)."""
    if isinstance(value, Mapping):
        return {key: prune_absent(item) for key, item in value.items() if item is not None}
    if isinstance(value, list):
        return [prune_absent(item) for item in value if item is not None]
    return value


def source_from_grounding(source: GroundingSource, validation: ValidationResult | None = None) -> AggregatedSource:
    content = f"Search grounding citation from {source.domain}"
    if validation is not None and validation.extracted_snippet:
        content = validation.extracted_snippet
    elif validation is not None and validation.skipped_reason:
        content = f"{content} (unverified redirect)"
    return AggregatedSource(
        title=source.title or (validation.extracted_title if validation else None) or source.domain,
        url=source.url,
        type=source.category.value,
        content=content,
    )


def sources_from_recordings(recordings: Iterable[Mapping[str, Any]]) -> list[AggregatedSource]:
    collected: list[AggregatedSource] = []
    for recording in recordings:
        artist = recording.get("artist") or recording.get("orchestra") or "Unknown artist"
        for link in recording.get("links") or []:
            url = link.get("url")
            if not url:
                continue
            collected.append(
                AggregatedSource(
                    title=link.get("title") or f"{artist} recording",
                    url=url,
                    type=link.get("type") or categorize_url(url).value,
                    content=f"Recording by {artist}",
                )
            )
    return collected


def sources_from_recovered(urls: Iterable[str]) -> list[AggregatedSource]:
    return [
        AggregatedSource(
            title=url,
            url=url,
            type=categorize_url(url).value,
            content="Recovered from model answer text",
        )
        for url in urls
    ]


def merge_sources(
    existing: Iterable[Mapping[str, Any] | AggregatedSource],
    incoming: Iterable[Mapping[str, Any] | AggregatedSource],
    validations: Mapping[str, ValidationResult] | None = None,
) -> list[dict[str, Any]]:
    """URL-keyed union; earlier entries win. Returns JSON-ready dicts.

    Non-http(s) URLs are always rejected, and so are redirect tokens that the
    validator flagged invalid.
    """
    validations = validations or {}
    merged: dict[str, dict[str, Any]] = {}
    for item in [*existing, *incoming]:
        source = item.model_dump(mode="json") if isinstance(item, AggregatedSource) else dict(item)
        url = source.get("url")
        if not url or not is_valid_url(url):
            continue
        result = validations.get(url)
        if is_ephemeral_redirect(url) and result is not None and not result.is_valid:
            logger.warning(f"Dropping invalid grounding redirect from sources: {url}")
            continue
        if url in merged:
            continue
        merged[url] = source
    return list(merged.values())


def merge_phase_list(existing: Iterable[str] | None, phase: str) -> list[str]:
    phases = list(dict.fromkeys(existing or []))
    if phase not in phases:
        phases.append(phase)
    return phases
