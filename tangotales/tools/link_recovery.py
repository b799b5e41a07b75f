"""Best-effort link recovery for the references phase.

Used only when structured parsing produced no usable links. URLs are pulled
straight out of the raw answer and attached to recordings conservatively;
anything that cannot be tied to a specific recording stays at the aggregate
level.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from tangotales.tools.web_utils import categorize_url, infer_link_type, is_valid_url

URL_RE = re.compile(r"https?://[^\s\"'\],}<>)]+")
STREAMING_KEYWORDS = ("spotify", "apple", "youtube", "amazon", "bandcamp", "soundcloud", "deezer", "tidal")
RESEARCH_KEYWORDS = ("discogs", "archive", "library", "wikipedia", "tango", "music")

_STREAMING_LABELS = (
    ("spotify", "Spotify"),
    ("apple", "Apple Music"),
    ("youtube", "YouTube Music"),
    ("amazon", "Amazon Music"),
    ("bandcamp", "Bandcamp"),
    ("soundcloud", "SoundCloud"),
    ("deezer", "Deezer"),
    ("tidal", "Tidal"),
)
_RESEARCH_TITLES = (
    ("todotango", "Todo Tango"),
    ("tango.info", "Tango.info"),
    ("wikipedia", "Wikipedia"),
    ("discogs", "Discogs"),
    ("archive.org", "Internet Archive"),
)


@dataclass(slots=True)
class RecoveryResult:
    data: dict[str, Any]
    urls: list[str] = field(default_factory=list)
    attached: dict[str, int] = field(default_factory=dict)  # url -> recording index

    @property
    def unattached(self) -> list[str]:
        return [url for url in self.urls if url not in self.attached]


def extract_urls(raw_text: str) -> list[str]:
    found = []
    for match in URL_RE.findall(raw_text or ""):
        url = match.rstrip(".;:!?")
        if is_valid_url(url):
            found.append(url)
    return list(dict.fromkeys(found))


def streaming_label(url: str) -> str | None:
    lowered = url.lower()
    for keyword, label in _STREAMING_LABELS:
        if keyword in lowered:
            return label
    return None


def research_title(url: str) -> str:
    lowered = url.lower()
    for keyword, title in _RESEARCH_TITLES:
        if keyword in lowered:
            return title
    return "Research Source"


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def name_fragments(recording: dict[str, Any]) -> list[str]:
    """URL-comparable pieces of a recording's identifying names."""
    fragments: list[str] = []
    for key in ("artist", "orchestra"):
        name = recording.get(key)
        if not isinstance(name, str) or not name.strip():
            continue
        slug = _slug(name)
        if slug:
            fragments.extend([slug, slug.replace("-", "")])
        words = [word for word in slug.split("-") if len(word) >= 4]
        if words:
            fragments.append(words[0])
            fragments.append(words[-1])
    album = recording.get("album")
    if isinstance(album, str) and album.strip():
        album_slug = _slug(album)
        if len(album_slug) >= 4:
            fragments.append(album_slug)
    return list(dict.fromkeys(fragments))


def _link_for(url: str) -> dict[str, Any]:
    return {"url": url, "type": infer_link_type(url)}


def recover_links(raw_text: str, data: dict[str, Any] | None) -> RecoveryResult:
    """Pull links out of ``raw_text`` and attach them to ``notableRecordings``.

    ``data`` uses the camelCase keys of the model answer and is not mutated.
    """
    base = copy.deepcopy(data) if data else {}
    urls = extract_urls(raw_text)
    if not urls:
        return RecoveryResult(data=base)

    recordings = base.get("notableRecordings")
    if not isinstance(recordings, list):
        recordings = []
        base["notableRecordings"] = recordings
    entries = [r for r in recordings if isinstance(r, dict)]

    attached: dict[str, int] = {}
    if entries and len(urls) == len(entries):
        for index, url in enumerate(urls):
            attached[url] = index
    elif entries:
        fragments = [name_fragments(entry) for entry in entries]
        for url in urls:
            lowered = url.lower()
            for index, entry_fragments in enumerate(fragments):
                if any(fragment in lowered for fragment in entry_fragments):
                    attached[url] = index
                    break

    for url, index in attached.items():
        entry = entries[index]
        links = entry.get("links") if isinstance(entry.get("links"), list) else []
        if not any(isinstance(link, dict) and link.get("url") == url for link in links):
            links.append(_link_for(url))
        entry["links"] = links

    availability = base.get("currentAvailability")
    if not isinstance(availability, dict):
        availability = {}
    platforms = list(availability.get("streamingPlatforms") or [])
    recording_sources = list(availability.get("recordingSources") or [])
    for url in urls:
        lowered = url.lower()
        label = streaming_label(url)
        if label:
            if label not in platforms:
                platforms.append(label)
        elif any(keyword in lowered for keyword in RESEARCH_KEYWORDS):
            recording_sources.append(
                {"title": research_title(url), "url": url, "type": categorize_url(url).value}
            )
    if platforms:
        availability["streamingPlatforms"] = platforms
    if recording_sources:
        availability["recordingSources"] = recording_sources
    if availability:
        base["currentAvailability"] = availability
    base["recoveredLinks"] = urls

    logger.info(
        f"Recovered {len(urls)} links from raw text, attached {len(attached)} to recordings"
    )
    return RecoveryResult(data=base, urls=urls, attached=attached)
