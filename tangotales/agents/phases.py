"""The fixed phase sequence of an enrichment run."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from tangotales.models.enrichment import (
    CharacteristicsPayload,
    ContextPayload,
    FactsPayload,
    PhasePayload,
    ReferencesPayload,
    SynthesisPayload,
    TitleValidationPayload,
)


@dataclass(frozen=True, slots=True)
class Phase:
    index: int
    name: str
    prompt_key: str
    payload_model: type[PhasePayload]
    required_fields: tuple[str, ...]
    start_message: str
    icon: str
    success_message: str
    fallback_message: str
    fallback: Callable[[str], dict[str, Any]]
    link_bearing: bool = False
    success_icon: str = "✅"


def _validation_fallback(title: str) -> dict[str, Any]:
    return {"corrected_title": title, "title_correction_confidence": "failed"}


def _facts_fallback(title: str) -> dict[str, Any]:
    return {"composer": "Unknown", "period": "Golden Age", "musical_form": "Tango"}


def _context_fallback(title: str) -> dict[str, Any]:
    return {
        "themes": ["tango", "traditional"],
        "cultural_significance": "This is a traditional tango song.",
        "historical_context": "Part of the Argentine tango repertoire.",
    }


def _characteristics_fallback(title: str) -> dict[str, Any]:
    return {
        "musical_characteristics": ["traditional tango rhythm"],
        "dance_style": ["close embrace"],
        "recommended_for_dancing": True,
        "dance_recommendations": "Suitable for social dancing.",
    }


def _references_fallback(title: str) -> dict[str, Any]:
    return {"notable_recordings": [], "notable_performers": []}


def _synthesis_fallback(title: str) -> dict[str, Any]:
    return {
        "story": None,
        "inspiration": None,
        "explanation": (
            f"{title} is a tango composition that represents part of the rich Argentine tango "
            "tradition. This piece showcases the musical and cultural elements that make tango "
            "a unique art form."
        ),
    }


PHASES: tuple[Phase, ...] = (
    Phase(
        index=0,
        name="validation",
        prompt_key="enrichment.validation",
        payload_model=TitleValidationPayload,
        required_fields=("isKnownTango", "correctedTitle", "confidence"),
        start_message="🔍 Searching and validating tango song title...",
        icon="🔍",
        success_message="✅ Title validated successfully",
        fallback_message="⚠️ Title validation incomplete",
        fallback=_validation_fallback,
    ),
    Phase(
        index=1,
        name="facts",
        prompt_key="enrichment.facts",
        payload_model=FactsPayload,
        required_fields=("composer", "period", "musicalForm"),
        start_message="📚 Researching composer and historical details...",
        icon="📚",
        success_message="✅ Basic information gathered",
        fallback_message="⚠️ Using fallback basic info",
        fallback=_facts_fallback,
    ),
    Phase(
        index=2,
        name="context",
        prompt_key="enrichment.context",
        payload_model=ContextPayload,
        required_fields=("themes", "culturalSignificance", "historicalContext"),
        start_message="🏛️ Finding cultural significance and context...",
        icon="🏛️",
        success_message="✅ Cultural context researched",
        fallback_message="⚠️ Using fallback cultural info",
        fallback=_context_fallback,
    ),
    Phase(
        index=3,
        name="characteristics",
        prompt_key="enrichment.characteristics",
        payload_model=CharacteristicsPayload,
        required_fields=("musicalCharacteristics", "danceStyle", "recommendedForDancing"),
        start_message="🎵 Analyzing musical characteristics...",
        icon="🎵",
        success_message="✅ Musical analysis complete",
        fallback_message="⚠️ Using fallback music info",
        fallback=_characteristics_fallback,
    ),
    Phase(
        index=4,
        name="references",
        prompt_key="enrichment.references",
        payload_model=ReferencesPayload,
        required_fields=("notableRecordings", "notablePerformers"),
        start_message="🎼 Discovering current recordings and performers...",
        icon="🎼",
        success_message="✅ Recordings and performers found",
        fallback_message="⚠️ Using fallback recordings info",
        fallback=_references_fallback,
        link_bearing=True,
    ),
    Phase(
        index=5,
        name="synthesis",
        prompt_key="enrichment.synthesis",
        payload_model=SynthesisPayload,
        required_fields=("explanation",),
        start_message="✨ Creating comprehensive summary...",
        icon="✨",
        success_message="✅ Research complete!",
        fallback_message="⚠️ Using basic summary",
        fallback=_synthesis_fallback,
        success_icon="🎉",
    ),
)

TOTAL_PHASES = len(PHASES)
