from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class SourceCategory(str, Enum):
    STREAMING_PLATFORM = "streaming_platform"
    DISCOGRAPHY = "discography"
    ARCHIVE = "archive"
    ENCYCLOPEDIA = "encyclopedia"
    MUSIC_DATABASE = "music_database"
    OTHER = "other"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# --- Grounding / validation (internal, never persisted as-is) ---


@dataclass(slots=True)
class GroundingSource:
    url: str
    domain: str
    category: SourceCategory
    title: str | None = None


@dataclass(slots=True)
class GroundingSupport:
    text: str
    start_index: int
    end_index: int
    source_indices: list[int] = field(default_factory=list)


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    http_status: int | None = None
    final_url: str | None = None
    extracted_title: str | None = None
    extracted_snippet: str | None = None
    content_type: str | None = None
    error: str | None = None
    skipped_reason: str | None = None


@dataclass(slots=True)
class MetadataTokens:
    artist: str | None = None
    orchestra: str | None = None
    title: str | None = None
    composer: str | None = None
    lyricist: str | None = None
    album: str | None = None
    year: str | None = None


@dataclass(slots=True)
class MatchResult:
    is_verified: bool
    confidence: Confidence
    matched_tokens: list[str] = field(default_factory=list)
    reason: str | None = None


# --- Phase outcomes ---


@dataclass(slots=True)
class PhaseOk:
    phase: str
    data: dict[str, Any]
    missing_fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PhaseFallback:
    phase: str
    data: dict[str, Any]
    reason: str


@dataclass(slots=True)
class PhaseAbort:
    phase: str
    reason: str


PhaseOutcome = Union[PhaseOk, PhaseFallback, PhaseAbort]


# --- Persisted shapes ---


class CamelModel(BaseModel):
    """Accepts the camelCase keys the model answers with, dumps snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )


def _coerce_year(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = re.search(r"\b(1[89]\d{2}|20\d{2})\b", str(value))
    return int(match.group(1)) if match else None


def _coerce_str_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return None


class AggregatedSource(CamelModel):
    title: str
    url: str
    type: str = SourceCategory.OTHER.value
    content: str = ""


class LinkVerification(CamelModel):
    is_verified: bool
    confidence: str
    matched_tokens: list[str] = []
    reason: str | None = None


class RecordingLink(CamelModel):
    url: str
    type: str = SourceCategory.OTHER.value
    title: str | None = None
    verification: LinkVerification | None = None


class Recording(CamelModel):
    artist: str | None = None
    orchestra: str | None = None
    year: int | None = None
    album: str | None = None
    style: str | None = None
    availability: str | None = None
    links: list[RecordingLink] = []

    coerce_year = field_validator("year", mode="before")(_coerce_year)


class Performer(CamelModel):
    name: str | None = None
    role: str | None = None
    period: str | None = None
    recent_activity: str | None = None


class CurrentAvailability(CamelModel):
    streaming_platforms: list[str] | None = None
    recent_performances: list[str] | None = None
    recording_sources: list[AggregatedSource] | None = None

    coerce_lists = field_validator("streaming_platforms", "recent_performances", mode="before")(
        _coerce_str_list
    )


# --- Phase payloads: what each model turn is asked to return ---


class PhasePayload(CamelModel):
    persisted: ClassVar[tuple[str, ...]] = ()

    def record_fields(self) -> dict[str, Any]:
        return self.model_dump(include=set(self.persisted), mode="json")


class TitleValidationPayload(PhasePayload):
    corrected_title: str | None = None
    confidence: str | None = None
    alternative_spellings: list[str] | None = None
    is_known_tango: bool | None = None
    search_verified: bool | None = None
    found_in_sources: list[str] | None = None

    coerce_lists = field_validator("alternative_spellings", "found_in_sources", mode="before")(
        _coerce_str_list
    )

    def record_fields(self) -> dict[str, Any]:
        return {
            "corrected_title": self.corrected_title,
            "title_correction_confidence": self.confidence,
            "alternative_spellings": self.alternative_spellings,
        }


class FactsPayload(PhasePayload):
    persisted = ("composer", "lyricist", "year_composed", "period", "musical_form")

    composer: str | None = None
    lyricist: str | None = None
    year_composed: int | None = None
    period: str | None = None
    musical_form: str | None = None
    search_verified: bool | None = None
    sources: list[str] | None = None

    coerce_year = field_validator("year_composed", mode="before")(_coerce_year)
    coerce_lists = field_validator("sources", mode="before")(_coerce_str_list)


class ContextPayload(PhasePayload):
    persisted = ("themes", "cultural_significance", "historical_context")

    themes: list[str] | None = None
    cultural_significance: str | None = None
    historical_context: str | None = None

    coerce_lists = field_validator("themes", mode="before")(_coerce_str_list)


class CharacteristicsPayload(PhasePayload):
    persisted = (
        "musical_characteristics",
        "dance_style",
        "recommended_for_dancing",
        "dance_recommendations",
    )

    musical_characteristics: list[str] | None = None
    dance_style: list[str] | None = None
    recommended_for_dancing: bool | None = None
    dance_recommendations: str | None = None

    coerce_lists = field_validator("musical_characteristics", "dance_style", mode="before")(
        _coerce_str_list
    )


class ReferencesPayload(PhasePayload):
    persisted = ("notable_recordings", "notable_performers", "current_availability")

    notable_recordings: list[Recording] = []
    notable_performers: list[Performer] = []
    current_availability: CurrentAvailability | None = None

    @field_validator("notable_recordings", "notable_performers", mode="before")
    @classmethod
    def _drop_non_objects(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]


class SynthesisPayload(PhasePayload):
    persisted = ("story", "inspiration", "explanation")

    story: str | None = None
    inspiration: str | None = None
    explanation: str | None = None


class EnrichmentMetadata(BaseModel):
    processing_time_ms: int
    successful_turns: int
    failed_turns: int
    confidence: Confidence
    persistence_failures: int = 0
    completed_at: datetime | None = None


class SubjectRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str

    # Phase0
    original_user_input: str | None = None
    corrected_title: str | None = None
    title_correction_confidence: str | None = None
    alternative_spellings: list[str] | None = None

    # Phase1
    composer: str | None = None
    lyricist: str | None = None
    year_composed: int | None = None
    period: str | None = None
    musical_form: str | None = None

    # Phase2
    themes: list[str] | None = None
    cultural_significance: str | None = None
    historical_context: str | None = None

    # Phase3
    musical_characteristics: list[str] | None = None
    dance_style: list[str] | None = None
    recommended_for_dancing: bool | None = None
    dance_recommendations: str | None = None

    # Phase4
    notable_recordings: list[Recording] | None = None
    notable_performers: list[Performer] | None = None
    current_availability: CurrentAvailability | None = None

    # Phase5
    story: str | None = None
    inspiration: str | None = None
    explanation: str | None = None

    sources: list[AggregatedSource] = []
    research_phases: list[str] = []
    research_completed: bool = False
    last_research_update: datetime | None = None
    metadata: EnrichmentMetadata | None = None
