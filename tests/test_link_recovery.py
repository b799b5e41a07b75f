from __future__ import annotations

from tangotales.tools.link_recovery import extract_urls, name_fragments, recover_links


def test_two_urls_for_two_recordings_pair_in_order():
    raw = (
        "Recordings: D'Arienzo (1937) https://open.spotify.com/track/aaa and "
        "Di Sarli (1951) https://www.youtube.com/watch?v=bbb."
    )
    data = {
        "notableRecordings": [
            {"artist": "Juan D'Arienzo", "year": 1937},
            {"artist": "Carlos Di Sarli", "year": 1951},
        ]
    }
    result = recover_links(raw, data)
    recordings = result.data["notableRecordings"]
    assert [link["url"] for link in recordings[0]["links"]] == ["https://open.spotify.com/track/aaa"]
    assert [link["url"] for link in recordings[1]["links"]] == ["https://www.youtube.com/watch?v=bbb"]
    assert result.unattached == []
    assert "links" not in data["notableRecordings"][0]


def test_count_mismatch_attaches_only_on_name_fragment():
    raw = (
        "https://www.discogs.com/artist/pugliese-osvaldo "
        "https://open.spotify.com/album/xyz "
        "https://www.todotango.com/creadores/ficha/troilo"
    )
    data = {"notableRecordings": [{"artist": "Osvaldo Pugliese"}, {"artist": "Aníbal Troilo"}]}
    result = recover_links(raw, data)
    recordings = result.data["notableRecordings"]
    assert [l["url"] for l in recordings[0]["links"]] == ["https://www.discogs.com/artist/pugliese-osvaldo"]
    assert [l["url"] for l in recordings[1]["links"]] == ["https://www.todotango.com/creadores/ficha/troilo"]
    assert result.unattached == ["https://open.spotify.com/album/xyz"]


def test_classifies_streaming_and_research_links():
    raw = "https://open.spotify.com/track/1 https://music.apple.com/album/2 https://en.wikipedia.org/wiki/Tango"
    result = recover_links(raw, {"notableRecordings": []})
    availability = result.data["currentAvailability"]
    assert availability["streamingPlatforms"] == ["Spotify", "Apple Music"]
    assert availability["recordingSources"][0]["title"] == "Wikipedia"
    assert result.data["recoveredLinks"] == [
        "https://open.spotify.com/track/1",
        "https://music.apple.com/album/2",
        "https://en.wikipedia.org/wiki/Tango",
    ]


def test_no_urls_returns_data_unchanged():
    data = {"notableRecordings": [{"artist": "Francisco Canaro"}]}
    result = recover_links("No links were found.", data)
    assert result.data == data
    assert result.urls == []


def test_extract_urls_strips_trailing_punctuation_and_dedupes():
    text = 'See "https://tango.info/works/x", then https://tango.info/works/x. Also (https://a.example/y)'
    assert extract_urls(text) == ["https://tango.info/works/x", "https://a.example/y"]


def test_name_fragments_include_slug_and_surname():
    fragments = name_fragments({"artist": "Osvaldo Pugliese", "album": "Ausencia"})
    assert "osvaldo-pugliese" in fragments
    assert "pugliese" in fragments
    assert "ausencia" in fragments
