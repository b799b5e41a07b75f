"""Phase state machine for one subject enrichment run.

Phases run strictly in order through one chat session so later prompts can
lean on earlier answers. Every phase failure degrades into that phase's
fallback record, except a Phase0 rejection which ends the run.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from tangotales.agents.phases import PHASES, TOTAL_PHASES, Phase
from tangotales.agents.reference_verifier import ReferenceVerifier
from tangotales.config import settings
from tangotales.errors import RunCancelledError, RunTimeoutError, SubjectRejectedError
from tangotales.llm_client import (
    DialogueProvider,
    DialogueSession,
    DialogueTurn,
    GeminiDialogueProvider,
    SessionConfig,
    default_session_config,
)
from tangotales.models.enrichment import (
    AggregatedSource,
    Confidence,
    EnrichmentMetadata,
    PhaseAbort,
    PhaseFallback,
    PhaseOk,
    PhaseOutcome,
    SubjectRecord,
    TitleValidationPayload,
    ValidationResult,
)
from tangotales.models.events import ProgressCallback, ProgressUpdate
from tangotales.services.governor import ConcurrencyGovernor, get_governor
from tangotales.services.logger import log_event, log_phase, log_store_operation
from tangotales.services.prompt_store import render_prompt
from tangotales.services.session_registry import SessionRegistry
from tangotales.services.source_merge import merge_phase_list, merge_sources, prune_absent
from tangotales.services.subject_store import SubjectStore, get_subject_store
from tangotales.tools.link_validator import LinkValidator
from tangotales.tools.response_parser import (
    ParseFailure,
    normalize_recording_links,
    parse_model_response,
)


def confidence_for(successful: int) -> Confidence:
    if successful >= 5:
        return Confidence.HIGH
    if successful >= 3:
        return Confidence.MEDIUM
    return Confidence.LOW


@dataclass
class _Run:
    subject_id: str
    input_title: str
    corrected_title: str
    started: float
    record: dict[str, Any] = field(default_factory=dict)
    persistence_failures: int = 0


@dataclass
class EnrichmentResult:
    subject_id: str
    title: str
    corrected_title: str
    record: dict[str, Any]
    outcomes: list[PhaseOutcome]
    metadata: EnrichmentMetadata

    @property
    def confidence(self) -> Confidence:
        return self.metadata.confidence

    def record_view(self) -> SubjectRecord:
        """Final record with presentation defaults for anything missing."""
        view: dict[str, Any] = {}
        for phase in PHASES:
            view.update(prune_absent(phase.fallback(self.corrected_title)))
        view.update(prune_absent(self.record))
        view.update({"id": self.subject_id, "title": self.title})
        return SubjectRecord.model_validate(view)


class EnrichmentPipeline:
    def __init__(
        self,
        *,
        provider: DialogueProvider | None = None,
        store: SubjectStore | None = None,
        governor: ConcurrencyGovernor | None = None,
        validator: LinkValidator | None = None,
        registry: SessionRegistry[DialogueSession] | None = None,
        session_config: SessionConfig | None = None,
        follow_up_enabled: bool | None = None,
        run_timeout_seconds: float | None = None,
        rewrite_redirect_urls: bool | None = None,
    ):
        self.provider = provider or GeminiDialogueProvider()
        self.store = store or get_subject_store()
        self.governor = governor or get_governor()
        self.registry: SessionRegistry[DialogueSession] = registry or SessionRegistry()
        self.session_config = session_config or default_session_config()
        self.follow_up_enabled = (
            settings.follow_up_enabled if follow_up_enabled is None else follow_up_enabled
        )
        self.run_timeout_seconds = (
            settings.run_timeout_seconds if run_timeout_seconds is None else run_timeout_seconds
        )
        self.references = ReferenceVerifier(
            validator or LinkValidator(),
            rewrite_redirect_urls=(
                settings.rewrite_redirect_urls if rewrite_redirect_urls is None else rewrite_redirect_urls
            ),
        )

    # --- sessions ---

    def _session_for(self, title: str) -> DialogueSession:
        return self.registry.get_or_create(
            title, lambda: self.provider.create_session(self.session_config)
        )

    def clear_session(self, title: str) -> bool:
        return self.registry.evict(title)

    def clear_all_sessions(self) -> None:
        self.registry.clear()

    # --- public entry point ---

    async def enrich(
        self,
        subject_id: str,
        title: str,
        *,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> EnrichmentResult:
        """Run all phases for one subject.

        Raises ``GovernorBusyError`` before any network call when the governor
        is full, and ``SubjectRejectedError`` when Phase0 rejects the title.
        """
        title = title.strip()
        async with self.governor.admit(label=title):
            timeout = self.run_timeout_seconds
            if not timeout or timeout <= 0:
                return await self._run(subject_id, title, progress, cancel_event)
            try:
                async with asyncio.timeout(timeout):
                    return await self._run(subject_id, title, progress, cancel_event)
            except TimeoutError as exc:
                log_event("enrichment_timeout", f"Run for '{title}' exceeded {timeout}s", subject_id=subject_id)
                raise RunTimeoutError(f"Enrichment of '{title}' exceeded {timeout}s") from exc

    async def _run(
        self,
        subject_id: str,
        title: str,
        progress: ProgressCallback | None,
        cancel_event: asyncio.Event | None,
    ) -> EnrichmentResult:
        run = _Run(subject_id=subject_id, input_title=title, corrected_title=title, started=time.perf_counter())
        log_event("enrichment_started", f"Enriching '{title}'", subject_id=subject_id)
        session = self._session_for(title)

        outcomes: list[PhaseOutcome] = []
        for phase in PHASES:
            if cancel_event is not None and cancel_event.is_set():
                raise RunCancelledError(f"Enrichment of '{title}' cancelled before {phase.name}")

            self._emit(progress, phase.index, phase.start_message, phase.icon, False)
            outcome = await self._run_phase(phase, session, run)
            outcomes.append(outcome)

            if isinstance(outcome, PhaseAbort):
                log_phase(subject_id, phase.name, "abort", {"reason": outcome.reason})
                self.registry.evict(title)
                self._emit(progress, phase.index, "❌ Not a valid tango song", "❌", True)
                raise SubjectRejectedError(title, outcome.reason)

            if isinstance(outcome, PhaseOk):
                log_phase(subject_id, phase.name, "success", {"missing": outcome.missing_fields or None})
                self._emit(progress, phase.index, phase.success_message, phase.success_icon, True)
            else:
                log_phase(subject_id, phase.name, "fallback", {"reason": outcome.reason})
                self._emit(progress, phase.index, phase.fallback_message, "⚠️", True)

        metadata = self._metadata(run, outcomes)
        completion = {
            "research_completed": True,
            "metadata": metadata.model_dump(mode="json"),
            "last_research_update": datetime.now(timezone.utc).isoformat(),
        }
        run.record.update(completion)
        await self._persist(run, completion)
        log_event(
            "enrichment_completed",
            f"Enriched '{run.corrected_title}'",
            subject_id=subject_id,
            confidence=metadata.confidence.value,
            successful_turns=metadata.successful_turns,
            failed_turns=metadata.failed_turns,
            processing_time_ms=metadata.processing_time_ms,
        )
        return EnrichmentResult(
            subject_id=subject_id,
            title=title,
            corrected_title=run.corrected_title,
            record=run.record,
            outcomes=outcomes,
            metadata=metadata,
        )

    # --- phases ---

    async def _run_phase(self, phase: Phase, session: DialogueSession, run: _Run) -> PhaseOutcome:
        sources: list[AggregatedSource] = []
        validations: dict[str, ValidationResult] = {}
        try:
            prompt = render_prompt(phase.prompt_key, title=run.corrected_title)
            turn = await session.send(prompt)
            parsed = parse_model_response(turn.text, phase.required_fields)

            if isinstance(parsed, ParseFailure):
                outcome: PhaseOutcome = PhaseFallback(
                    phase.name, phase.fallback(run.corrected_title), parsed.diagnostic
                )
                data = None
            else:
                data = parsed.data
                if parsed.missing_fields and self.follow_up_enabled:
                    data = await self._follow_up(session, run, data, parsed.missing_fields)
                if phase.link_bearing:
                    data = normalize_recording_links(data)
                outcome = self._interpret(phase, data, run)

            if phase.link_bearing and not isinstance(outcome, PhaseAbort):
                bundle = await self.references.build(
                    raw_text=turn.text,
                    response=turn.raw,
                    data=data if isinstance(outcome, PhaseOk) else None,
                    subject_title=run.corrected_title,
                    subject=run.record,
                )
                sources, validations = bundle.sources, bundle.validations
                outcome.data = {**outcome.data, **bundle.fields}
                log_event(
                    "references_verified",
                    f"References for '{run.corrected_title}'",
                    subject_id=run.subject_id,
                    grounding_sources=len(bundle.grounding),
                    recovered_from_text=bundle.recovered,
                    sources=len(sources),
                )
        except Exception as exc:
            logger.exception(f"Phase {phase.name} failed for '{run.corrected_title}'")
            outcome = PhaseFallback(
                phase.name, phase.fallback(run.corrected_title), f"{type(exc).__name__}: {exc}"
            )
            sources, validations = [], {}

        if not isinstance(outcome, PhaseAbort):
            await self._persist_phase(phase, outcome, run, sources, validations)
        return outcome

    def _interpret(self, phase: Phase, data: dict[str, Any], run: _Run) -> PhaseOutcome:
        payload = phase.payload_model.model_validate(data)
        missing = [name for name in phase.required_fields if data.get(name) in (None, "")]

        if isinstance(payload, TitleValidationPayload):
            if payload.is_known_tango is False:
                return PhaseAbort(phase.name, "Model reported the title is not a known tango")
            if payload.is_known_tango is None:
                return PhaseFallback(
                    phase.name, phase.fallback(run.corrected_title), "Legitimacy was not reported"
                )
            corrected = (payload.corrected_title or "").strip()
            if corrected and corrected.lower() != "null":
                run.corrected_title = corrected
            fields = payload.record_fields()
            fields["corrected_title"] = run.corrected_title
            return PhaseOk(phase.name, fields, missing)

        return PhaseOk(phase.name, payload.record_fields(), missing)

    async def _follow_up(
        self,
        session: DialogueSession,
        run: _Run,
        data: dict[str, Any],
        missing: list[str],
    ) -> dict[str, Any]:
        prompt = render_prompt("enrichment.follow_up", title=run.corrected_title, fields=", ".join(missing))
        try:
            turn: DialogueTurn = await session.send(prompt)
        except Exception as exc:
            logger.warning(f"Follow-up for {missing} failed, keeping partial answer: {exc}")
            return data

        parsed = parse_model_response(turn.text, missing)
        if isinstance(parsed, ParseFailure):
            logger.warning(f"Follow-up for {missing} unparseable: {parsed.diagnostic}")
            return data
        filled = {key: parsed.data[key] for key in missing if parsed.data.get(key) is not None}
        logger.info(f"Follow-up filled {sorted(filled)} of {missing}")
        return {**data, **filled}

    # --- persistence ---

    async def _persist_phase(
        self,
        phase: Phase,
        outcome: PhaseOk | PhaseFallback,
        run: _Run,
        sources: list[AggregatedSource],
        validations: dict[str, ValidationResult],
    ) -> None:
        partial: dict[str, Any] = dict(outcome.data)
        if phase.index == 0:
            partial["original_user_input"] = run.input_title

        existing = await self._read_existing(run)
        partial["research_phases"] = merge_phase_list(existing.get("research_phases"), phase.name)
        if sources:
            partial["sources"] = merge_sources(existing.get("sources") or [], sources, validations)
        partial["last_research_update"] = datetime.now(timezone.utc).isoformat()

        partial = prune_absent(partial)
        run.record.update(partial)
        await self._persist(run, partial)

    async def _read_existing(self, run: _Run) -> dict[str, Any]:
        try:
            existing = await self.store.get(run.subject_id)
        except Exception as exc:
            log_store_operation("get", run.subject_id, "failed", error=str(exc))
            existing = None
        if existing is None:
            return dict(run.record)
        return existing

    async def _persist(self, run: _Run, partial: dict[str, Any]) -> None:
        try:
            await self.store.update(run.subject_id, prune_absent(partial))
        except Exception as exc:
            run.persistence_failures += 1
            log_store_operation(
                "update", run.subject_id, "failed", details=",".join(sorted(partial)), error=str(exc)
            )

    # --- misc ---

    def _metadata(self, run: _Run, outcomes: list[PhaseOutcome]) -> EnrichmentMetadata:
        successful = sum(1 for outcome in outcomes if isinstance(outcome, PhaseOk))
        return EnrichmentMetadata(
            processing_time_ms=int((time.perf_counter() - run.started) * 1000),
            successful_turns=successful,
            failed_turns=len(outcomes) - successful,
            confidence=confidence_for(successful),
            persistence_failures=run.persistence_failures,
            completed_at=datetime.now(timezone.utc),
        )

    @staticmethod
    def _emit(
        progress: ProgressCallback | None,
        index: int,
        message: str,
        icon: str,
        completed: bool,
    ) -> None:
        if progress is None:
            return
        update = ProgressUpdate(
            phase_index=index,
            total_phases=TOTAL_PHASES,
            message=message,
            icon=icon,
            completed=completed,
        )
        try:
            progress(update)
        except Exception as exc:
            logger.warning(f"Progress callback raised, ignoring: {exc}")
