"""Replace single-use grounding redirect URLs with stable search URLs.

Grounding chunks often point at ``grounding-api-redirect`` tokens that expire
shortly after the response. When the chunk title names the destination site
we can build a durable search URL on that site instead.
"""
from __future__ import annotations

import re
from dataclasses import replace
from urllib.parse import quote, quote_plus

from loguru import logger

from tangotales.models.enrichment import GroundingSource
from tangotales.tools.web_utils import categorize_url, is_ephemeral_redirect

_PLATFORM_PATTERNS: dict[str, tuple[str, ...]] = {
    "youtube.com": ("youtube", "youtu.be"),
    "open.spotify.com": ("open.spotify",),
    "spotify.com": ("spotify",),
    "discogs.com": ("discogs",),
    "deezer.com": ("deezer",),
    "music.apple.com": ("apple music", "itunes"),
    "soundcloud.com": ("soundcloud",),
    "tango.info": ("tango.info", "tangoinfo"),
    "todotango.com": ("todotango", "todo tango"),
    "wikipedia.org": ("wikipedia",),
    "musicbrainz.org": ("musicbrainz", "music brainz"),
    "allmusic.com": ("allmusic", "all music"),
}

_PLATFORM_LABELS: tuple[tuple[str, str], ...] = (
    ("youtube", "YouTube"),
    ("spotify", "Spotify"),
    ("discogs", "Discogs"),
    ("deezer", "Deezer"),
    ("soundcloud", "SoundCloud"),
    ("tango.info", "Tango.info"),
    ("todotango", "Todo Tango"),
    ("wikipedia", "Wikipedia"),
    ("musicbrainz", "MusicBrainz"),
    ("allmusic", "AllMusic"),
)


def _clean_domain(domain: str) -> str:
    return re.sub(r"^www\.", "", domain.strip().lower())


def extract_domain_from_title(title: str | None) -> str | None:
    """Guess the destination domain from a grounding chunk title."""
    if not title:
        return None
    lowered = title.strip().lower()

    # Bare domain, e.g. "youtube.com"
    if "." in lowered and " " not in lowered and "/" not in lowered:
        return _clean_domain(lowered)

    for domain, patterns in _PLATFORM_PATTERNS.items():
        if any(pattern in lowered for pattern in patterns):
            return domain

    match = re.search(r"(?:https?://)?(?:www\.)?([a-z0-9-]+\.[a-z]{2,})", lowered)
    if match:
        return match.group(1)
    return None


def build_searchable_url(domain: str, subject_title: str, context: str | None = None) -> str:
    """Build a durable search URL for ``subject_title`` on ``domain``."""
    clean = _clean_domain(domain)
    term = f"{subject_title} {context}".strip() if context else subject_title
    encoded = quote(term)

    if "youtube.com" in clean:
        return f"https://www.youtube.com/results?search_query={quote_plus(term)}"
    if "spotify.com" in clean:
        return f"https://open.spotify.com/search/{encoded}"
    if "discogs.com" in clean:
        return f"https://www.discogs.com/search/?q={quote_plus(term)}&type=all"
    if "deezer.com" in clean:
        return f"https://www.deezer.com/search/{encoded}"
    if "apple.com" in clean and "music" in clean:
        return f"https://music.apple.com/us/search?term={quote_plus(term)}"
    if "soundcloud.com" in clean:
        return f"https://soundcloud.com/search?q={quote_plus(term)}"
    if "tango.info" in clean or "todotango" in clean:
        return f"https://www.{clean}/search?q={quote_plus(term)}"
    if "wikipedia.org" in clean:
        return f"https://en.wikipedia.org/w/index.php?search={quote_plus(term)}"
    return f"https://www.google.com/search?q={quote_plus(f'site:{clean} {term}')}"


def get_platform_label(domain: str) -> str:
    clean = _clean_domain(domain)
    if "apple" in clean and "music" in clean:
        return "Apple Music"
    for keyword, label in _PLATFORM_LABELS:
        if keyword in clean:
            return label
    return clean


def replace_redirect_urls(sources: list[GroundingSource], subject_title: str) -> list[GroundingSource]:
    """Swap redirect tokens for search URLs where the target site is known.

    Sources whose domain cannot be inferred keep the redirect URL unchanged.
    """
    replaced: list[GroundingSource] = []
    for source in sources:
        if not is_ephemeral_redirect(source.url):
            replaced.append(source)
            continue
        domain = extract_domain_from_title(source.title)
        if not domain:
            logger.debug(f"Keeping grounding redirect, no domain in title: {source.title!r}")
            replaced.append(source)
            continue
        url = build_searchable_url(domain, subject_title)
        replaced.append(
            replace(
                source,
                url=url,
                domain=domain,
                category=categorize_url(url),
                title=source.title or get_platform_label(domain),
            )
        )
    return replaced
