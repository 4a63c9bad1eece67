import httpx
import pytest

from mirrorflow_proxy.extractors.base import NoViableVideoPlaylist
from mirrorflow_proxy.utils.playlist_classifier import (
    EvaluatedCandidate,
    PlaylistKind,
    classify_playlist,
    evaluate_candidates,
    select_playlist,
    summarize,
)

MASTER = "#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=1280x720\nvideo/720.m3u8\n"
VIDEO = "#EXTM3U\n#EXT-X-TARGETDURATION:10\n#EXTINF:10.0,\nseg-1.ts\n#EXTINF:10.0,\nseg-2.ts?tok=1\n#EXT-X-ENDLIST\n"
FMP4 = "#EXTM3U\n#EXT-X-MAP:URI=\"init.mp4\"\n#EXTINF:4,\nchunk-1.m4s\n"
IMAGES = "#EXTM3U\n#EXTINF:10.0,\nhttps://img.example/1.jpg\n#EXTINF:10.0,\nhttps://img.example/2.png\n"
UNKNOWN = "#EXTM3U\n#EXTINF:10.0,\n/hls/segment-1\n#EXTINF:10.0,\n/hls/segment-2\n"


@pytest.mark.parametrize(
    "text, kind",
    [
        (MASTER, PlaylistKind.MASTER),
        (VIDEO, PlaylistKind.VIDEO_MEDIA),
        (FMP4, PlaylistKind.VIDEO_MEDIA),
        (IMAGES, PlaylistKind.IMAGE_MEDIA),
        (UNKNOWN, PlaylistKind.UNKNOWN_MEDIA),
        ("\ufeff\r\n" + MASTER, PlaylistKind.MASTER),
        ("#EXTM3U\n  #EXTINF:10.0,\nhttps://img.example/1.jpg\n", PlaylistKind.IMAGE_MEDIA),
        ("<html>blocked</html>", PlaylistKind.NOT_PLAYLIST),
        ("", PlaylistKind.NOT_PLAYLIST),
    ],
)
def test_classify_playlist(text, kind):
    assert classify_playlist(text) is kind


def _candidate(url, kind):
    return EvaluatedCandidate(url=url, kind=kind, status_code=200)


def test_select_prefers_master_over_media():
    evaluated = [
        _candidate("https://cdn.example/decoy.m3u8", PlaylistKind.IMAGE_MEDIA),
        _candidate("https://cdn.example/720.m3u8", PlaylistKind.VIDEO_MEDIA),
        _candidate("https://cdn.example/master.m3u8", PlaylistKind.MASTER),
    ]
    assert select_playlist(evaluated).url == "https://cdn.example/master.m3u8"


def test_select_falls_back_to_first_video_media():
    evaluated = [
        _candidate("https://cdn.example/a.m3u8", PlaylistKind.FETCH_ERROR),
        _candidate("https://cdn.example/b.m3u8", PlaylistKind.VIDEO_MEDIA),
        _candidate("https://cdn.example/c.m3u8", PlaylistKind.VIDEO_MEDIA),
    ]
    assert select_playlist(evaluated).url == "https://cdn.example/b.m3u8"


def test_unknown_media_only_when_accepted():
    evaluated = [_candidate("https://cdn.example/u.m3u8", PlaylistKind.UNKNOWN_MEDIA)]
    assert select_playlist(evaluated, accept_unknown=True).kind is PlaylistKind.UNKNOWN_MEDIA
    with pytest.raises(NoViableVideoPlaylist):
        select_playlist(evaluated, accept_unknown=False)


def test_image_only_playlists_are_never_returned():
    evaluated = [
        _candidate("https://cdn.example/1.m3u8", PlaylistKind.IMAGE_MEDIA),
        _candidate("https://cdn.example/2.m3u8", PlaylistKind.IMAGE_MEDIA),
        _candidate("https://cdn.example/3.m3u8", PlaylistKind.NOT_PLAYLIST),
    ]
    with pytest.raises(NoViableVideoPlaylist) as exc_info:
        select_playlist(evaluated, accept_unknown=True)

    assert exc_info.value.status_code == 502
    assert exc_info.value.context == {"attempted": 3, "kinds": {"image-media": 2, "not-playlist": 1}}


def test_summarize():
    evaluated = [_candidate("a", PlaylistKind.MASTER), _candidate("b", PlaylistKind.MASTER)]
    assert summarize(evaluated) == {"master": 2}


def test_candidate_urls():
    candidate = _candidate("https://cdn.example/hls/abc/master.m3u8?t=1", PlaylistKind.MASTER)
    assert candidate.origin == "https://cdn.example"
    assert candidate.base_url == "https://cdn.example/hls/abc/"
    assert "sample" not in candidate.to_dict()
    assert candidate.to_dict(debug=True)["sample"] is None


@pytest.mark.asyncio
async def test_evaluate_candidates(mock_upstream):
    def timeout(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    seen = mock_upstream(
        {
            "https://cdn.example/master.m3u8": httpx.Response(200, text=MASTER),
            "https://cdn.example/decoy.m3u8": httpx.Response(200, text=IMAGES),
            "https://cdn.example/slow.m3u8": timeout,
        }
    )

    evaluated = await evaluate_candidates(
        [
            "https://cdn.example/decoy.m3u8",
            "https://cdn.example/missing.m3u8",
            "https://cdn.example/slow.m3u8",
            "https://cdn.example/master.m3u8",
            "https://cdn.example/over-limit.m3u8",
        ],
        headers={"referer": "https://kwik.si/e/abc"},
        limit=4,
        concurrency=2,
    )

    assert [item.kind for item in evaluated] == [
        PlaylistKind.IMAGE_MEDIA,
        PlaylistKind.FETCH_ERROR,
        PlaylistKind.FETCH_ERROR,
        PlaylistKind.MASTER,
    ]
    assert evaluated[1].status_code == 404
    assert evaluated[2].error == "timeout"
    # timeouts are retried, the over-limit candidate is never fetched
    assert {str(request.url) for request in seen} == {
        "https://cdn.example/decoy.m3u8",
        "https://cdn.example/missing.m3u8",
        "https://cdn.example/slow.m3u8",
        "https://cdn.example/master.m3u8",
    }
    assert len(seen) == 6
    assert all(request.headers["referer"] == "https://kwik.si/e/abc" for request in seen)
    assert select_playlist(evaluated).url == "https://cdn.example/master.m3u8"
