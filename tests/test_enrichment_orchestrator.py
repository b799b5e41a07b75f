from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from tangotales.agents.enrichment_orchestrator import EnrichmentPipeline, confidence_for
from tangotales.errors import (
    DialogueError,
    GovernorBusyError,
    RunCancelledError,
    RunTimeoutError,
    SubjectRejectedError,
    SubjectStoreError,
)
from tangotales.llm_client import DialogueTurn, SessionConfig
from tangotales.models.enrichment import Confidence, PhaseFallback, PhaseOk, ValidationResult
from tangotales.services.governor import ConcurrencyGovernor
from tangotales.services.session_registry import SessionRegistry
from tangotales.services.subject_store import InMemorySubjectStore

REDIRECT = "https://vertexaisearch.cloud.google.com/grounding-api-redirect/tok"


class FakeSession:
    def __init__(self, answers):
        self.answers = list(answers)
        self.prompts: list[str] = []

    async def send(self, prompt: str) -> DialogueTurn:
        self.prompts.append(prompt)
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, DialogueTurn):
            return answer
        return DialogueTurn(text=answer, raw=SimpleNamespace(candidates=[]))


class FakeProvider:
    def __init__(self, session: FakeSession):
        self.session = session
        self.created = 0

    def create_session(self, config: SessionConfig) -> FakeSession:
        self.created += 1
        return self.session


class FakeValidator:
    def __init__(self, results: dict[str, ValidationResult] | None = None):
        self.results = results or {}
        self.calls: list[list[str]] = []

    async def validate_many(self, urls):
        urls = list(dict.fromkeys(urls))
        self.calls.append(urls)
        return {url: self.results.get(url, ValidationResult(is_valid=True, final_url=url)) for url in urls}


VALIDATION = json.dumps(
    {"correctedTitle": "La Cumparsita", "confidence": "high", "isKnownTango": True, "alternativeSpellings": ["Cumparsita"]}
)
FACTS = json.dumps(
    {"composer": "Gerardo Matos Rodríguez", "yearComposed": 1916, "period": "Golden Age", "musicalForm": "Tango"}
)
CONTEXT = json.dumps(
    {"themes": ["carnival"], "culturalSignificance": "An anthem of tango.", "historicalContext": "Montevideo, 1916."}
)
CHARACTERISTICS = json.dumps(
    {"musicalCharacteristics": ["marcato"], "danceStyle": ["milonguero"], "recommendedForDancing": True}
)
REFERENCES_EMPTY = json.dumps({"notableRecordings": [], "notablePerformers": []})
SYNTHESIS = json.dumps({"story": None, "explanation": "La Cumparsita is the best known tango."})


def happy_answers(references=REFERENCES_EMPTY, context=CONTEXT):
    return [VALIDATION, FACTS, context, CHARACTERISTICS, references, SYNTHESIS]


async def make_pipeline(answers, *, validator=None, store=None, governor=None, **kwargs):
    session = FakeSession(answers)
    provider = FakeProvider(session)
    if store is None:
        store = InMemorySubjectStore()
        await store.create({"id": "song-1", "title": "la cumparsita"})
    pipeline = EnrichmentPipeline(
        provider=provider,
        store=store,
        governor=governor or ConcurrencyGovernor(max_concurrent=1, min_spacing_ms=0),
        validator=validator or FakeValidator(),
        registry=SessionRegistry(max_sessions=4, ttl_seconds=60),
        session_config=SessionConfig(model="test-model"),
        follow_up_enabled=kwargs.pop("follow_up_enabled", False),
        run_timeout_seconds=kwargs.pop("run_timeout_seconds", 0),
        rewrite_redirect_urls=kwargs.pop("rewrite_redirect_urls", None),
    )
    return pipeline, session, store, provider


def test_confidence_thresholds():
    assert confidence_for(6) == Confidence.HIGH
    assert confidence_for(5) == Confidence.HIGH
    assert confidence_for(4) == Confidence.MEDIUM
    assert confidence_for(3) == Confidence.MEDIUM
    assert confidence_for(2) == Confidence.LOW


@pytest.mark.asyncio
async def test_happy_path_persists_every_phase_and_reports_progress():
    pipeline, session, store, _ = await make_pipeline(happy_answers())
    updates = []

    result = await pipeline.enrich("song-1", "la cumparsita", progress=updates.append)

    assert result.confidence == Confidence.HIGH
    assert result.metadata.successful_turns == 6
    assert result.corrected_title == "La Cumparsita"
    assert all(isinstance(outcome, PhaseOk) for outcome in result.outcomes)

    record = await store.get("song-1")
    assert record["original_user_input"] == "la cumparsita"
    assert record["corrected_title"] == "La Cumparsita"
    assert record["title_correction_confidence"] == "high"
    assert record["composer"] == "Gerardo Matos Rodríguez"
    assert record["year_composed"] == 1916
    assert record["themes"] == ["carnival"]
    assert record["recommended_for_dancing"] is True
    assert record["explanation"] == "La Cumparsita is the best known tango."
    assert "story" not in record
    assert record["research_phases"] == [
        "validation",
        "facts",
        "context",
        "characteristics",
        "references",
        "synthesis",
    ]
    assert record["research_completed"] is True
    assert record["metadata"]["confidence"] == "high"

    # Later prompts use the corrected title.
    assert '"La Cumparsita"' in session.prompts[1]

    assert len(updates) == 12
    assert (updates[0].phase_index, updates[0].icon, updates[0].completed) == (0, "🔍", False)
    assert updates[-1].icon == "🎉"
    assert updates[-1].completed is True
    assert all(update.total_phases == 6 for update in updates)


@pytest.mark.asyncio
async def test_rejected_subject_aborts_without_persisting_later_phases():
    answers = [json.dumps({"correctedTitle": None, "confidence": "not_found", "isKnownTango": False})]
    pipeline, session, store, _ = await make_pipeline(answers)
    updates = []

    with pytest.raises(SubjectRejectedError):
        await pipeline.enrich("song-1", "yellow flower", progress=updates.append)

    assert await store.get("song-1") == {"id": "song-1", "title": "la cumparsita"}
    assert len(session.prompts) == 1
    assert updates[-1].message == "❌ Not a valid tango song"
    assert pipeline.governor.active == 0


@pytest.mark.asyncio
async def test_failed_phases_fall_back_and_lower_confidence():
    answers = [VALIDATION, "I have no idea.", DialogueError("boom"), CHARACTERISTICS, REFERENCES_EMPTY, SYNTHESIS]
    pipeline, _, store, _ = await make_pipeline(answers)
    updates = []

    result = await pipeline.enrich("song-1", "la cumparsita", progress=updates.append)

    assert result.confidence == Confidence.MEDIUM
    assert result.metadata.failed_turns == 2
    assert isinstance(result.outcomes[1], PhaseFallback)
    assert isinstance(result.outcomes[2], PhaseFallback)

    record = await store.get("song-1")
    assert record["composer"] == "Unknown"
    assert record["period"] == "Golden Age"
    assert record["musical_form"] == "Tango"
    assert record["themes"] == ["tango", "traditional"]
    assert record["musical_characteristics"] == ["marcato"]
    assert "⚠️ Using fallback basic info" in [u.message for u in updates]


@pytest.mark.asyncio
async def test_busy_governor_rejects_before_any_model_call():
    governor = ConcurrencyGovernor(max_concurrent=1, min_spacing_ms=0)
    pipeline, session, _, provider = await make_pipeline(happy_answers(), governor=governor)

    async with governor.admit():
        with pytest.raises(GovernorBusyError):
            await pipeline.enrich("song-1", "la cumparsita")

    assert provider.created == 0
    assert session.prompts == []


@pytest.mark.asyncio
async def test_follow_up_turn_fills_missing_required_fields():
    facts_missing = json.dumps({"composer": "Gerardo Matos Rodríguez", "period": "Golden Age"})
    answers = [VALIDATION, facts_missing, json.dumps({"musicalForm": "Milonga"}), CONTEXT, CHARACTERISTICS, REFERENCES_EMPTY, SYNTHESIS]
    pipeline, session, store, _ = await make_pipeline(answers, follow_up_enabled=True)

    result = await pipeline.enrich("song-1", "la cumparsita")

    assert "musicalForm" in session.prompts[2]
    record = await store.get("song-1")
    assert record["musical_form"] == "Milonga"
    assert result.metadata.successful_turns == 6


@pytest.mark.asyncio
async def test_reference_links_are_validated_and_verified():
    references = json.dumps(
        {
            "notableRecordings": [
                {
                    "artist": "Juan D'Arienzo",
                    "year": 1951,
                    "album": "Clásicos",
                    "links": [
                        "https://open.spotify.com/track/good",
                        "https://www.youtube.com/watch?v=other",
                        "https://dead.example.com/x",
                    ],
                }
            ],
            "notablePerformers": [{"name": "Juan D'Arienzo", "role": "Orchestra Leader"}],
        }
    )
    grounding = SimpleNamespace(
        candidates=[
            SimpleNamespace(
                grounding_metadata=SimpleNamespace(
                    grounding_chunks=[
                        SimpleNamespace(web=SimpleNamespace(uri="https://www.todotango.com/tema/1", title="Todo Tango")),
                        SimpleNamespace(web=SimpleNamespace(uri=REDIRECT, title="Untitled")),
                    ]
                )
            )
        ]
    )
    validator = FakeValidator(
        {
            "https://open.spotify.com/track/good": ValidationResult(
                is_valid=True, http_status=200, extracted_title="La Cumparsita - Juan D'Arienzo"
            ),
            "https://www.youtube.com/watch?v=other": ValidationResult(
                is_valid=True, http_status=200, extracted_title="Easy weeknight pasta"
            ),
            "https://dead.example.com/x": ValidationResult(is_valid=False, http_status=404, error="HTTP 404"),
            REDIRECT: ValidationResult(is_valid=True, final_url=REDIRECT, skipped_reason="ephemeral_redirect"),
        }
    )
    answers = happy_answers(references=DialogueTurn(text=references, raw=grounding))
    pipeline, _, store, _ = await make_pipeline(answers, validator=validator)

    await pipeline.enrich("song-1", "la cumparsita")

    record = await store.get("song-1")
    links = record["notable_recordings"][0]["links"]
    assert [link["url"] for link in links] == ["https://open.spotify.com/track/good"]
    assert links[0]["verification"]["is_verified"] is True
    assert links[0]["verification"]["confidence"] == "high"

    urls = [source["url"] for source in record["sources"]]
    assert len(urls) == len(set(urls))
    assert set(urls) == {
        "https://www.todotango.com/tema/1",
        REDIRECT,
        "https://open.spotify.com/track/good",
        "https://www.youtube.com/watch?v=other",
    }
    assert record["notable_performers"] == [{"name": "Juan D'Arienzo", "role": "Orchestra Leader"}]


@pytest.mark.asyncio
async def test_invalid_redirect_never_reaches_sources():
    grounding = SimpleNamespace(
        candidates=[
            SimpleNamespace(
                grounding_metadata={"groundingChunks": [{"web": {"uri": REDIRECT, "title": "Untitled"}}]}
            )
        ]
    )
    validator = FakeValidator({REDIRECT: ValidationResult(is_valid=False, error="HTTP 404")})
    answers = happy_answers(references=DialogueTurn(text=REFERENCES_EMPTY, raw=grounding))
    pipeline, _, store, _ = await make_pipeline(answers, validator=validator)

    await pipeline.enrich("song-1", "la cumparsita")

    record = await store.get("song-1")
    assert REDIRECT not in [source["url"] for source in record.get("sources", [])]


@pytest.mark.asyncio
async def test_redirect_citation_reaches_sources_verbatim_with_default_settings():
    grounding = SimpleNamespace(
        candidates=[
            SimpleNamespace(
                grounding_metadata=SimpleNamespace(
                    grounding_chunks=[SimpleNamespace(web=SimpleNamespace(uri=REDIRECT, title="youtube.com"))]
                )
            )
        ]
    )
    validator = FakeValidator(
        {REDIRECT: ValidationResult(is_valid=True, final_url=REDIRECT, skipped_reason="ephemeral_redirect")}
    )
    answers = happy_answers(references=DialogueTurn(text=REFERENCES_EMPTY, raw=grounding))
    pipeline, _, store, _ = await make_pipeline(answers, validator=validator)

    await pipeline.enrich("song-1", "la cumparsita")

    record = await store.get("song-1")
    assert [source["url"] for source in record["sources"]] == [REDIRECT]


@pytest.mark.asyncio
async def test_unparseable_references_recover_links_from_text():
    raw = "Sorry, I can only offer https://open.spotify.com/track/1 and https://www.todotango.com/tema/2"
    pipeline, _, store, _ = await make_pipeline(happy_answers(references=raw))

    result = await pipeline.enrich("song-1", "la cumparsita")

    assert isinstance(result.outcomes[4], PhaseFallback)
    record = await store.get("song-1")
    assert record["notable_recordings"] == []
    assert record["current_availability"]["streaming_platforms"] == ["Spotify"]
    assert {source["url"] for source in record["sources"]} == {
        "https://open.spotify.com/track/1",
        "https://www.todotango.com/tema/2",
    }


@pytest.mark.asyncio
async def test_rerun_overwrites_phase_fields_and_dedupes_sets():
    second_context = json.dumps(
        {"themes": ["nostalgia"], "culturalSignificance": "Second take.", "historicalContext": "Buenos Aires."}
    )
    answers = happy_answers() + happy_answers(context=second_context)
    pipeline, _, store, provider = await make_pipeline(answers)

    await pipeline.enrich("song-1", "la cumparsita")
    await pipeline.enrich("song-1", "la cumparsita")

    record = await store.get("song-1")
    assert record["themes"] == ["nostalgia"]
    assert record["cultural_significance"] == "Second take."
    assert record["historical_context"] == "Buenos Aires."
    assert record["composer"] == "Gerardo Matos Rodríguez"
    assert len(record["research_phases"]) == 6
    assert provider.created == 1


@pytest.mark.asyncio
async def test_persistence_failures_are_logged_not_fatal():
    store = MagicMock()
    store.get = AsyncMock(return_value=None)
    store.update = AsyncMock(side_effect=SubjectStoreError("disk full"))
    pipeline, _, _, _ = await make_pipeline(happy_answers(), store=store)

    result = await pipeline.enrich("song-1", "la cumparsita")

    assert result.confidence == Confidence.HIGH
    assert result.metadata.persistence_failures == 6
    assert store.update.await_count == 7
    assert result.record["composer"] == "Gerardo Matos Rodríguez"


@pytest.mark.asyncio
async def test_cancel_event_stops_the_run_and_releases_governor():
    pipeline, session, _, _ = await make_pipeline(happy_answers())
    cancel = asyncio.Event()
    cancel.set()

    with pytest.raises(RunCancelledError):
        await pipeline.enrich("song-1", "la cumparsita", cancel_event=cancel)

    assert session.prompts == []
    assert pipeline.governor.active == 0


@pytest.mark.asyncio
async def test_run_timeout_raises_and_releases_governor():
    class SlowSession(FakeSession):
        async def send(self, prompt: str) -> DialogueTurn:
            await asyncio.sleep(5)
            return await super().send(prompt)  # pragma: no cover

    pipeline, _, _, provider = await make_pipeline(happy_answers(), run_timeout_seconds=0.05)
    provider.session = SlowSession(happy_answers())

    with pytest.raises(RunTimeoutError):
        await pipeline.enrich("song-1", "la cumparsita")

    assert pipeline.governor.active == 0


@pytest.mark.asyncio
async def test_progress_callback_errors_do_not_affect_the_run():
    pipeline, _, _, _ = await make_pipeline(happy_answers())

    def broken(update):
        raise ValueError("ui went away")

    result = await pipeline.enrich("song-1", "la cumparsita", progress=broken)
    assert result.confidence == Confidence.HIGH


@pytest.mark.asyncio
async def test_record_view_fills_presentation_defaults():
    answers = [VALIDATION, FACTS, CONTEXT, CHARACTERISTICS, REFERENCES_EMPTY, "not json at all"]
    pipeline, _, _, _ = await make_pipeline(answers)

    result = await pipeline.enrich("song-1", "la cumparsita")
    view = result.record_view()

    assert view.id == "song-1"
    assert view.explanation.startswith("La Cumparsita is a tango composition")
    assert view.composer == "Gerardo Matos Rodríguez"
    assert view.research_completed is True
    assert view.metadata.successful_turns == 5
