"""Turn a references-phase answer into verified recordings and sources.

Grounding citations come first. Links the model wrote itself are kept on a
recording only when they resolve and the landing page mentions the recording
or the song. Raw-text recovery runs only when the answer could not be parsed,
whether or not grounding citations came back.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Mapping

from loguru import logger

from tangotales.models.enrichment import (
    AggregatedSource,
    GroundingSource,
    LinkVerification,
    ReferencesPayload,
    ValidationResult,
)
from tangotales.services.source_merge import (
    source_from_grounding,
    sources_from_recordings,
    sources_from_recovered,
)
from tangotales.tools.grounding_extractor import extract_grounding_sources
from tangotales.tools.link_recovery import recover_links
from tangotales.tools.link_validator import LinkValidator
from tangotales.tools.metadata_matcher import create_metadata_tokens, match_page
from tangotales.tools.response_parser import normalize_recording_links
from tangotales.tools.url_builder import replace_redirect_urls
from tangotales.tools.web_utils import is_ephemeral_redirect


@dataclass(slots=True)
class ReferenceBundle:
    fields: dict[str, Any]
    sources: list[AggregatedSource] = field(default_factory=list)
    validations: dict[str, ValidationResult] = field(default_factory=dict)
    grounding: list[GroundingSource] = field(default_factory=list)
    recovered: bool = False


class ReferenceVerifier:
    def __init__(self, validator: LinkValidator, *, rewrite_redirect_urls: bool = False):
        self.validator = validator
        self.rewrite_redirect_urls = rewrite_redirect_urls

    async def build(
        self,
        *,
        raw_text: str,
        response: Any,
        data: dict[str, Any] | None,
        subject_title: str,
        subject: Mapping[str, Any],
    ) -> ReferenceBundle:
        """``data`` is the parsed camelCase answer, or None when parsing failed."""
        answer = normalize_recording_links(copy.deepcopy(data) if data is not None else {})

        grounding = extract_grounding_sources(response)
        if self.rewrite_redirect_urls:
            grounding = replace_redirect_urls(grounding, subject_title)

        recovered_urls: list[str] = []
        recovered = False
        if data is None:
            recovery = recover_links(raw_text, answer)
            answer = normalize_recording_links(recovery.data)
            recovered_urls = recovery.unattached
            recovered = bool(recovery.urls)

        payload = ReferencesPayload.model_validate(answer)

        candidate_urls = [source.url for source in grounding]
        candidate_urls += [link.url for recording in payload.notable_recordings for link in recording.links]
        candidate_urls += recovered_urls
        if payload.current_availability and payload.current_availability.recording_sources:
            candidate_urls += [s.url for s in payload.current_availability.recording_sources]
        validations = await self.validator.validate_many(candidate_urls) if candidate_urls else {}

        def is_valid(url: str) -> bool:
            result = validations.get(url)
            return result is not None and result.is_valid

        demoted = self._verify_recording_links(payload, validations, subject_title, subject)

        if payload.current_availability and payload.current_availability.recording_sources:
            payload.current_availability.recording_sources = [
                s for s in payload.current_availability.recording_sources if is_valid(s.url)
            ]

        sources: list[AggregatedSource] = [
            source_from_grounding(source, validations.get(source.url))
            for source in grounding
            if is_valid(source.url)
        ]
        sources += sources_from_recordings(
            recording.model_dump(mode="json") for recording in payload.notable_recordings
        )
        sources += demoted
        sources += sources_from_recovered(url for url in recovered_urls if is_valid(url))

        dropped = sum(1 for result in validations.values() if not result.is_valid)
        logger.info(
            f"References for '{subject_title}': {len(grounding)} grounding, "
            f"{len(validations)} probed, {dropped} invalid, {len(sources)} kept"
        )
        return ReferenceBundle(
            fields=payload.record_fields(),
            sources=sources,
            validations=validations,
            grounding=grounding,
            recovered=recovered,
        )

    def _verify_recording_links(
        self,
        payload: ReferencesPayload,
        validations: Mapping[str, ValidationResult],
        subject_title: str,
        subject: Mapping[str, Any],
    ) -> list[AggregatedSource]:
        """Keep verified links on recordings; return valid-but-unverified ones."""
        demoted: list[AggregatedSource] = []
        for recording in payload.notable_recordings:
            tokens = create_metadata_tokens(
                song_title=subject_title,
                artist=recording.artist,
                orchestra=recording.orchestra,
                composer=subject.get("composer"),
                lyricist=subject.get("lyricist"),
                album=recording.album,
                year=recording.year,
            )
            kept = []
            for link in recording.links:
                result = validations.get(link.url)
                if result is None or not result.is_valid:
                    continue
                if is_ephemeral_redirect(link.url) and result.skipped_reason:
                    kept.append(link)
                    continue
                match = match_page(result.extracted_title, result.extracted_snippet, tokens)
                if match.is_verified:
                    link.verification = LinkVerification(
                        is_verified=True,
                        confidence=match.confidence.value,
                        matched_tokens=match.matched_tokens,
                        reason=match.reason,
                    )
                    if not link.title and result.extracted_title:
                        link.title = result.extracted_title
                    kept.append(link)
                else:
                    demoted.append(
                        AggregatedSource(
                            title=result.extracted_title or link.title or link.url,
                            url=link.url,
                            type=link.type,
                            content=f"Unverified link for {recording.artist or 'a recording'}: {match.reason}",
                        )
                    )
            recording.links = kept
        return demoted
