from __future__ import annotations

import json

import pytest

from tangotales.agents.phases import PHASES
from tangotales.services import prompt_store
from tangotales.services.prompt_store import render_prompt


def test_render_prompt_substitutes_title():
    prompt = render_prompt("enrichment.facts", title="El Choclo")
    assert '"El Choclo"' in prompt
    assert '"musicalForm"' in prompt


def test_every_phase_prompt_renders():
    for phase in PHASES:
        assert "Sur" in render_prompt(phase.prompt_key, title="Sur")


def test_follow_up_prompt_lists_fields():
    prompt = render_prompt("enrichment.follow_up", title="Sur", fields="composer, period")
    assert "composer, period" in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("enrichment.missing")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError):
        render_prompt("enrichment.facts")


def test_prompt_catalog_joins_line_lists_and_reloads(tmp_path, monkeypatch):
    catalog = tmp_path / "prompts.json"
    catalog.write_text(json.dumps({"demo": {"lines": ["First $title", "Second"], "bad": 3}}), encoding="utf-8")
    monkeypatch.setattr(prompt_store, "PROMPTS_PATH", catalog)
    prompt_store.clear_prompt_cache()
    try:
        assert render_prompt("demo.lines", title="Sur") == "First Sur\nSecond"
        with pytest.raises(TypeError):
            render_prompt("demo.bad")
    finally:
        prompt_store.clear_prompt_cache()
