import base64

from mirrorflow_proxy.utils.base64_utils import decode_base64_text, process_potential_base64_url
from mirrorflow_proxy.utils.candidates import (
    base64_heuristic,
    harvest,
    resolve_candidates,
    sanitize_url,
)


def test_base64_chunk_is_decoded():
    encoded = base64.b64encode(b"var source = 'https://cdn.example/a.m3u8';").decode()
    corpus = f"<script>var data = '{encoded}';</script>"

    assert base64_heuristic(corpus)
    assert harvest(corpus) == ["https://cdn.example/a.m3u8"]


def test_short_base64_runs_are_ignored():
    encoded = base64.b64encode(b"//c/a.m3u8").decode()
    assert base64_heuristic(f"x='{encoded}'") == []


def test_assignment_with_query():
    text = "const source='https://x.example/hls/v.m3u8?token=1';"
    assert harvest(text) == ["https://x.example/hls/v.m3u8?token=1"]


def test_relative_candidate_is_resolved_against_page():
    candidates = harvest('q = "/stream/abc/index.m3u8";')
    assert candidates == ["/stream/abc/index.m3u8"]
    assert resolve_candidates(candidates, "https://kwik.si/e/abc") == ["https://kwik.si/stream/abc/index.m3u8"]


def test_player_config_keys():
    text = "player.setup({file: 'https://a.example/f.m3u8', sources: [{src: \"https://b.example/s.m3u8\"}]});"
    assert harvest(text) == ["https://a.example/f.m3u8", "https://b.example/s.m3u8"]


def test_escaped_slashes():
    text = r'var u = "https:\/\/a.example\/b\/c.m3u8";'
    assert harvest(text) == ["https://a.example/b/c.m3u8"]


def test_sanitize_url():
    assert sanitize_url("https://a.b/c.m3u8&quot;") == "https://a.b/c.m3u8"
    assert sanitize_url("https://a.b/c.m3u8&#39;") == "https://a.b/c.m3u8"
    assert sanitize_url('https://a.b/c.m3u8\\")') == "https://a.b/c.m3u8"
    assert sanitize_url("  https://a.b/c.m3u8  ") == "https://a.b/c.m3u8"


def test_html_entity_artifacts_are_stripped():
    html = "<div data-x='https://a.b/c.m3u8&quot;'></div>"
    assert harvest(html) == ["https://a.b/c.m3u8"]


def test_union_is_deduplicated_in_discovery_order():
    first = "x('https://a.example/1.m3u8');"
    second = "https://b.example/2.m3u8 https://a.example/1.m3u8"
    assert harvest(first, None, second) == ["https://a.example/1.m3u8", "https://b.example/2.m3u8"]


def test_custom_heuristics():
    assert harvest("anything", heuristics=[lambda text: ["https://c.example/x.m3u8"]]) == [
        "https://c.example/x.m3u8"
    ]
    assert harvest("anything", heuristics=[lambda text: ["https://c.example/x.mp4"]]) == []


def test_resolve_candidates_drops_non_http():
    resolved = resolve_candidates(
        ["javascript:a.m3u8", "//cdn.example/a.m3u8", "https://cdn.example/a.m3u8"], "https://kwik.si/e/x"
    )
    assert resolved == ["https://cdn.example/a.m3u8"]


def test_decode_base64_text():
    assert decode_base64_text("aGVsbG8") == "hello"
    assert decode_base64_text(base64.urlsafe_b64encode(b"\xfb\xff?x").decode()) is None
    assert decode_base64_text("not base64!") is None


def test_process_potential_base64_url():
    url = "https://cdn.example/a.m3u8"
    encoded = base64.urlsafe_b64encode(url.encode()).decode().rstrip("=")
    assert process_potential_base64_url(encoded) == url
    assert process_potential_base64_url(url) == url
