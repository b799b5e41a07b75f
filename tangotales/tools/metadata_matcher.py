"""Decide whether a reachable page is actually about the subject.

Tokens are split into a strong tier (artist, orchestra, title, composer) and a
weak tier (album, year, lyricist). Weak matches alone never verify a link:
a year or album name shows up on far too many unrelated pages.
"""
from __future__ import annotations

import math
import re

from tangotales.models.enrichment import Confidence, MatchResult, MetadataTokens

STRONG_FIELDS = ("artist", "orchestra", "title", "composer")
WEAK_FIELDS = ("album", "year", "lyricist")
WORD_MATCH_RATIO = 0.66


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    text = re.sub(r"[^\w\s]", " ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def token_matches(content: str, token: str | None) -> bool:
    """Match ``token`` against already-normalized ``content``."""
    normalized = normalize_text(token)
    if not normalized or not content:
        return False
    if normalized in content:
        return True

    words = [word for word in normalized.split(" ") if len(word) > 2]
    if len(words) < 2:
        return False
    needed = math.ceil(len(words) * WORD_MATCH_RATIO)
    found = sum(1 for word in words if word in content)
    return found >= needed


def match_metadata(content: str | None, tokens: MetadataTokens) -> MatchResult:
    normalized = normalize_text(content)
    if not normalized:
        return MatchResult(
            is_verified=False,
            confidence=Confidence.LOW,
            reason="No content extracted from landing page",
        )

    strong = [name for name in STRONG_FIELDS if token_matches(normalized, getattr(tokens, name))]
    weak = [name for name in WEAK_FIELDS if token_matches(normalized, getattr(tokens, name))]
    matched = strong + weak

    if len(strong) >= 2:
        return MatchResult(is_verified=True, confidence=Confidence.HIGH, matched_tokens=matched)
    if len(strong) == 1:
        return MatchResult(is_verified=True, confidence=Confidence.MEDIUM, matched_tokens=matched)
    if len(weak) >= 2:
        return MatchResult(
            is_verified=False,
            confidence=Confidence.LOW,
            matched_tokens=matched,
            reason="Only weak token matches (album/year); no strong matches found",
        )
    return MatchResult(
        is_verified=False,
        confidence=Confidence.LOW,
        matched_tokens=matched,
        reason="No significant token matches found",
    )


def match_page(title: str | None, snippet: str | None, tokens: MetadataTokens) -> MatchResult:
    content = " ".join(part for part in (title, snippet) if part)
    return match_metadata(content, tokens)


def create_metadata_tokens(
    *,
    song_title: str | None = None,
    artist: str | None = None,
    performer: str | None = None,
    orchestra: str | None = None,
    composer: str | None = None,
    lyricist: str | None = None,
    album: str | None = None,
    year: int | str | None = None,
) -> MetadataTokens:
    return MetadataTokens(
        artist=artist or performer,
        orchestra=orchestra,
        title=song_title,
        composer=composer if composer and composer.lower() != "unknown" else None,
        lyricist=lyricist,
        album=album,
        year=str(year) if year else None,
    )
