from __future__ import annotations

import re
from urllib.parse import urlparse

from tangotales.models.enrichment import SourceCategory

EPHEMERAL_REDIRECT_MARKER = "vertexaisearch.cloud.google.com/grounding-api-redirect/"

# Checked in order; first keyword hit wins.
_CATEGORY_KEYWORDS: tuple[tuple[SourceCategory, tuple[str, ...]], ...] = (
    (
        SourceCategory.STREAMING_PLATFORM,
        (
            "spotify",
            "youtube",
            "youtu.be",
            "music.apple",
            "itunes",
            "deezer",
            "soundcloud",
            "bandcamp",
            "tidal",
            "music.amazon",
        ),
    ),
    (SourceCategory.DISCOGRAPHY, ("discogs", "discography", "secondhandsongs")),
    (SourceCategory.ENCYCLOPEDIA, ("wikipedia", "britannica", "wikidata", "enciclopedia")),
    (SourceCategory.ARCHIVE, ("archive.org", "loc.gov", "library", "archivo", "bne.es", "biblioteca")),
    (
        SourceCategory.MUSIC_DATABASE,
        ("tango.info", "todotango", "musicbrainz", "allmusic", "tango-dj", "el-recodo", "tangodj"),
    ),
)


def is_valid_url(url: str) -> bool:
    """Absolute http(s) URL with a host."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        result = urlparse(url.strip())
    except ValueError:
        return False
    return result.scheme in ("http", "https") and bool(result.netloc)


def extract_domain(url: str) -> str:
    """Hostname without a leading ``www.``."""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return re.sub(r"^www\.", "", host.lower())


def is_ephemeral_redirect(url: str) -> bool:
    return isinstance(url, str) and EPHEMERAL_REDIRECT_MARKER in url


def categorize_url(url: str) -> SourceCategory:
    lowered = url.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return SourceCategory.OTHER


def infer_link_type(url: str) -> str:
    """Link type for a recording link, as the recording cards label them."""
    lowered = url.lower()
    if any(k in lowered for k in ("spotify", "apple", "youtube", "youtu.be", "deezer", "soundcloud")):
        return SourceCategory.STREAMING_PLATFORM.value
    if "discogs" in lowered:
        return SourceCategory.DISCOGRAPHY.value
    if "wikipedia" in lowered:
        return SourceCategory.ARCHIVE.value
    return categorize_url(url).value


def clean_text(text: str, max_length: int = 200) -> str:
    """Collapse whitespace and trim to max length."""
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) > max_length:
        text = text[:max_length].rstrip()
    return text
