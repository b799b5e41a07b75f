from __future__ import annotations

from tangotales.models.enrichment import Confidence, MetadataTokens
from tangotales.tools.metadata_matcher import (
    create_metadata_tokens,
    match_metadata,
    match_page,
    normalize_text,
    token_matches,
)


def test_two_strong_matches_are_verified_high():
    tokens = MetadataTokens(artist="Carlos Gardel", title="Mi Buenos Aires Querido")
    result = match_metadata("Carlos Gardel - Mi Buenos Aires Querido (1934) | YouTube", tokens)
    assert result.is_verified is True
    assert result.confidence == Confidence.HIGH
    assert set(result.matched_tokens) >= {"artist", "title"}


def test_single_strong_match_is_verified_medium():
    tokens = MetadataTokens(artist="Osvaldo Pugliese", title="La Yumba", album="Ausencia")
    result = match_metadata("La Yumba - full score and history", tokens)
    assert result.is_verified is True
    assert result.confidence == Confidence.MEDIUM
    assert result.matched_tokens == ["title"]


def test_only_weak_matches_are_not_verified():
    tokens = MetadataTokens(artist="Aníbal Troilo", title="Sur", album="Bien Porteño", year="1948")
    result = match_metadata("Bien Porteño compilation released 1948", tokens)
    assert result.is_verified is False
    assert result.confidence == Confidence.LOW
    assert result.reason == "Only weak token matches (album/year); no strong matches found"


def test_no_matches():
    tokens = MetadataTokens(artist="Juan D'Arienzo", title="La Puñalada")
    result = match_metadata("Cooking recipes for the weekend", tokens)
    assert result.is_verified is False
    assert result.reason == "No significant token matches found"


def test_no_content():
    result = match_page(None, None, MetadataTokens(title="El Choclo"))
    assert result.is_verified is False
    assert result.confidence == Confidence.LOW
    assert result.reason == "No content extracted from landing page"


def test_multi_word_token_matches_on_two_thirds_of_words():
    content = normalize_text("Orquesta Típica Francisco Canaro plays tonight")
    assert token_matches(content, "Francisco Canaro Orquesta") is True
    assert token_matches(content, "Francisco Lomuto Quinteto") is False


def test_normalize_text_strips_punctuation_and_case():
    assert normalize_text("  Adiós,  Muchachos! ") == "adiós muchachos"


def test_create_metadata_tokens_maps_performer_to_artist_and_skips_unknown_composer():
    tokens = create_metadata_tokens(song_title="Libertango", performer="Astor Piazzolla", composer="Unknown", year=1974)
    assert tokens.artist == "Astor Piazzolla"
    assert tokens.composer is None
    assert tokens.year == "1974"
