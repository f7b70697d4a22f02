import json
from unittest.mock import MagicMock, patch

import pytest
import yt_dlp

from tiktok_relay.media import MediaKind, MediaSet, ProviderFailure
from tiktok_relay.net import fill_url_template
from tiktok_relay.providers import (
    JsonApiAdapter,
    PageScrapeAdapter,
    RawResponse,
    Schema,
    YtDlpAdapter,
    build_adapters,
    normalize,
    scan_page,
)

LINK = "https://vm.tiktok.com/ZMabc123/"
ENDPOINT = "https://api.example/v1?url={URL}"


def labels(media_set):
    return [item.quality_label for item in media_set.items]


def test_tiktok_api_schema_keeps_image_order_and_watermark(tiktok_api_result):
    media_set = normalize(RawResponse(Schema.TIKTOK_API, LINK, tiktok_api_result))

    assert labels(media_set) == ["hd", "watermark", "image-1", "image-2", "image-3", "audio"]
    hd, watermark = media_set.items[0], media_set.items[1]
    assert hd.source_url == "https://v16.tiktokcdn.com/play.mp4"
    assert hd.is_watermarked is False
    assert watermark.source_url == "https://v16.tiktokcdn.com/wm.mp4"
    assert watermark.is_watermarked is True
    assert [item.source_url for item in media_set.items[2:5]] == tiktok_api_result["images"]
    assert media_set.items[-1].source_url == "https://sf16.tiktokcdn.com/music.mp3"
    assert media_set.items[-1].kind == MediaKind.AUDIO
    assert media_set.title == "beach day"
    assert media_set.author_label == "Sandy"
    assert media_set.thumbnail_url == "https://p16.tiktokcdn.com/cover.jpeg"
    assert media_set.duration_seconds == 15.0


def test_ssstik_schema_prefers_direct_field(ssstik_result):
    media_set = normalize(RawResponse(Schema.SSSTIK, LINK, ssstik_result))

    assert labels(media_set) == ["direct", "watermark", "image-1", "image-2", "audio"]
    assert media_set.items[0].source_url == "https://tikcdn.io/ssstik/direct.mp4"
    assert media_set.items[0].is_watermarked is False
    assert media_set.items[1].is_watermarked is True
    assert media_set.items[-1].source_url == "https://tikcdn.io/ssstik/music.mp3"
    assert media_set.author_label == "Whiskers"
    assert media_set.thumbnail_url == ""


def test_musicaldown_schema_falls_back_to_unknown_title(musicaldown_result):
    media_set = normalize(RawResponse(Schema.MUSICALDOWN, LINK, musicaldown_result))

    assert labels(media_set) == ["hd", "watermark", "image-1", "image-2", "image-3", "audio"]
    assert media_set.items[1].source_url == "https://muscdn.example/wm.mp4"
    assert media_set.items[1].is_watermarked is True
    assert media_set.title == "Unknown Title"


def test_title_prefers_explicit_title_over_description(musicaldown_result):
    musicaldown_result["title"] = "Explicit"
    musicaldown_result["desc"] = "described"

    assert normalize(RawResponse(Schema.MUSICALDOWN, LINK, musicaldown_result)).title == "Explicit"


def test_thumbnail_falls_back_to_video_cover(tiktok_api_result):
    del tiktok_api_result["cover"]

    media_set = normalize(RawResponse(Schema.TIKTOK_API, LINK, tiktok_api_result))

    assert media_set.thumbnail_url == "https://p16.tiktokcdn.com/video-cover.jpeg"


def test_image_labels_follow_source_positions():
    result = {"images": ["https://cdn.example/a.jpeg", "", "https://cdn.example/c.jpeg"]}

    media_set = normalize(RawResponse(Schema.MUSICALDOWN, LINK, result))

    assert labels(media_set) == ["image-1", "image-3"]
    assert all(item.kind == MediaKind.IMAGE for item in media_set.items)


def test_music_accepts_flat_string_in_object_schema(tiktok_api_result):
    tiktok_api_result["music"] = "https://sf16.tiktokcdn.com/flat.mp3"

    media_set = normalize(RawResponse(Schema.TIKTOK_API, LINK, tiktok_api_result))

    assert media_set.items[-1].source_url == "https://sf16.tiktokcdn.com/flat.mp3"


def test_same_url_for_both_variants_is_emitted_once():
    result = {"videoHD": "https://cdn.example/v.mp4", "videoWatermark": "https://cdn.example/v.mp4"}

    media_set = normalize(RawResponse(Schema.MUSICALDOWN, LINK, result))

    assert labels(media_set) == ["hd"]


def test_ytdlp_schema_splits_watermarked_formats():
    info = {
        "id": "7301",
        "title": "yt-dlp title",
        "uploader": "sandy",
        "thumbnail": "https://p16.tiktokcdn.com/thumb.jpeg",
        "duration": 12,
        "formats": [
            {
                "format_id": "download",
                "format_note": "Download video, watermarked",
                "url": "https://v16.tiktokcdn.com/wm.mp4",
                "vcodec": "h264",
                "acodec": "aac",
                "ext": "mp4",
            },
            {"format_id": "h264_540p", "url": "https://v16.tiktokcdn.com/540.mp4", "vcodec": "h264", "acodec": "aac"},
            {
                "format_id": "bytevc1_1080p",
                "url": "https://v16.tiktokcdn.com/1080.mp4",
                "vcodec": "h265",
                "acodec": "aac",
                "filesize": 2000,
                "ext": "mp4",
            },
        ],
    }

    media_set = normalize(RawResponse(Schema.YTDLP, LINK, info))

    assert labels(media_set) == ["hd", "watermark"]
    assert media_set.items[0].source_url == "https://v16.tiktokcdn.com/1080.mp4"
    assert media_set.items[0].size_bytes == 2000
    assert media_set.items[1].is_watermarked is True
    assert media_set.title == "yt-dlp title"
    assert media_set.author_label == "sandy"
    assert media_set.duration_seconds == 12.0


def test_ytdlp_schema_reads_image_entries():
    info = {
        "title": "slides",
        "entries": [
            {"url": "https://p16.tiktokcdn.com/1.jpeg", "ext": "jpeg"},
            {"url": "https://p16.tiktokcdn.com/2.webp?x=1", "ext": "webp"},
        ],
    }

    media_set = normalize(RawResponse(Schema.YTDLP, LINK, info))

    assert labels(media_set) == ["image-1", "image-2"]


@pytest.mark.asyncio
async def test_json_adapter_returns_media_set(fake_session, make_json_response, tiktok_api_result):
    session = fake_session(
        {fill_url_template(ENDPOINT, LINK): make_json_response({"status": "success", "result": tiktok_api_result})}
    )
    adapter = JsonApiAdapter("tiktok_api", Schema.TIKTOK_API, ENDPOINT, session)

    outcome = await adapter.resolve(LINK)

    assert isinstance(outcome, MediaSet)
    assert outcome.provider == "tiktok_api"
    assert outcome.original_link == LINK
    assert session.calls == [f"https://api.example/v1?url={'https%3A%2F%2Fvm.tiktok.com%2FZMabc123%2F'}"]


@pytest.mark.asyncio
async def test_json_adapter_reports_error_status(fake_session, make_json_response):
    session = fake_session(
        {fill_url_template(ENDPOINT, LINK): make_json_response({"status": "error", "message": "Video not found"})}
    )
    adapter = JsonApiAdapter("ssstik", Schema.SSSTIK, ENDPOINT, session)

    outcome = await adapter.resolve(LINK)

    assert outcome == ProviderFailure("ssstik", "Video not found")


@pytest.mark.asyncio
async def test_json_adapter_treats_empty_success_as_failure(fake_session, make_json_response):
    session = fake_session(
        {fill_url_template(ENDPOINT, LINK): make_json_response({"status": "success", "result": {"desc": "empty"}})}
    )
    adapter = JsonApiAdapter("musicaldown", Schema.MUSICALDOWN, ENDPOINT, session)

    outcome = await adapter.resolve(LINK)

    assert outcome == ProviderFailure("musicaldown", "no media")


@pytest.mark.asyncio
async def test_json_adapter_reports_http_error(fake_session, fake_response):
    session = fake_session({fill_url_template(ENDPOINT, LINK): fake_response(status_code=502)})
    adapter = JsonApiAdapter("tiktok_api", Schema.TIKTOK_API, ENDPOINT, session)

    outcome = await adapter.resolve(LINK)

    assert isinstance(outcome, ProviderFailure)
    assert outcome.reason.startswith("request failed")
    assert "502" in outcome.reason


@pytest.mark.asyncio
async def test_json_adapter_reports_malformed_payload(fake_session, fake_response):
    session = fake_session({fill_url_template(ENDPOINT, LINK): fake_response(text="<html>busy</html>")})
    adapter = JsonApiAdapter("tiktok_api", Schema.TIKTOK_API, ENDPOINT, session)

    outcome = await adapter.resolve(LINK)

    assert isinstance(outcome, ProviderFailure)
    assert outcome.reason.startswith("malformed payload")


@pytest.mark.asyncio
async def test_json_adapter_without_endpoint_skips_network(fake_session):
    session = fake_session()
    adapter = JsonApiAdapter("tiktok_api", Schema.TIKTOK_API, "", session)

    outcome = await adapter.resolve(LINK)

    assert outcome == ProviderFailure("tiktok_api", "endpoint not configured")
    assert session.calls == []


@pytest.mark.asyncio
async def test_ytdlp_adapter_reports_download_error(fake_session):
    ydl = MagicMock()
    ydl.extract_info.side_effect = yt_dlp.utils.DownloadError("ERROR: Unsupported URL")
    youtube_dl = MagicMock()
    youtube_dl.return_value.__enter__.return_value = ydl
    adapter = YtDlpAdapter(fake_session(), cookiefile=None)

    with patch("tiktok_relay.providers.yt_dlp.YoutubeDL", youtube_dl):
        outcome = await adapter.resolve(LINK)

    assert isinstance(outcome, ProviderFailure)
    assert "Unsupported URL" in outcome.reason


def test_scan_page_reads_rehydration_data():
    item = {
        "desc": "from the page",
        "author": {"uniqueId": "pageuser"},
        "video": {"playAddr": "https://v16.tiktokcdn.com/page.mp4", "cover": "https://p16.tiktokcdn.com/c.jpeg"},
        "music": {"playUrl": "https://sf16.tiktokcdn.com/page.mp3"},
    }
    data = {"__DEFAULT_SCOPE__": {"webapp.video-detail": {"itemInfo": {"itemStruct": item}}}}
    page = (
        '<html><script id="__UNIVERSAL_DATA_FOR_REHYDRATION__" type="application/json">'
        f"{json.dumps(data)}</script></html>"
    )

    assert scan_page(page) == item
    media_set = normalize(RawResponse(Schema.PAGE, LINK, item))
    assert labels(media_set) == ["hd", "audio"]
    assert media_set.thumbnail_url == "https://p16.tiktokcdn.com/c.jpeg"
    assert media_set.author_label == "pageuser"


def test_scan_page_reads_slideshow_images():
    item = {
        "imagePost": {
            "images": [
                {"imageURL": {"urlList": ["https://p16.tiktokcdn.com/s1.jpeg", "https://mirror/s1.jpeg"]}},
                {"imageURL": {"urlList": ["https://p16.tiktokcdn.com/s2.jpeg"]}},
            ]
        }
    }

    media_set = normalize(RawResponse(Schema.PAGE, LINK, item))

    assert [item.source_url for item in media_set.items] == [
        "https://p16.tiktokcdn.com/s1.jpeg",
        "https://p16.tiktokcdn.com/s2.jpeg",
    ]


def test_scan_page_falls_back_to_regex_scan():
    page = r'<script>window.x = {"playAddr":"https:\u002F\u002Fv16.tiktokcdn.com\u002Fp.mp4?a=1\u0026b=2"}</script>'

    item = scan_page(page)

    assert item["video"]["playAddr"] == "https://v16.tiktokcdn.com/p.mp4?a=1&b=2"


@pytest.mark.asyncio
async def test_page_adapter_reports_missing_data(fake_session, fake_response):
    session = fake_session({LINK: fake_response(text="<html>captcha</html>")})

    outcome = await PageScrapeAdapter(session).resolve(LINK)

    assert outcome == ProviderFailure("page", "no embedded media data in page")


def test_build_adapters_keeps_priority_order(fake_session):
    adapters = build_adapters(["page", "musicaldown", "ytdlp"], session=fake_session())

    assert [adapter.name for adapter in adapters] == ["page", "musicaldown", "ytdlp"]


def test_build_adapters_rejects_unknown_provider(fake_session):
    with pytest.raises(ValueError, match="nope"):
        build_adapters(["page", "nope"], session=fake_session())


@pytest.mark.asyncio
async def test_ytdlp_adapter_keeps_extraction_cookies(fake_session):
    info = {
        "title": "with cookies",
        "extractor_key": "TikTok",
        "url": "https://v16.tiktokcdn.com/1080.mp4",
        "http_headers": {"User-Agent": "extractor-agent", "Referer": "https://www.tiktok.com/"},
        "formats": [
            {"url": "https://v16.tiktokcdn.com/1080.mp4", "vcodec": "h264", "acodec": "aac", "ext": "mp4"},
        ],
    }
    ydl = MagicMock()
    ydl.extract_info.return_value = info
    ydl.get_info_extractor.return_value._get_cookies.return_value = {
        "tt_chain_token": MagicMock(value="abc"),
        "ttwid": MagicMock(value="xyz"),
    }
    youtube_dl = MagicMock()
    youtube_dl.return_value.__enter__.return_value = ydl
    adapter = YtDlpAdapter(fake_session(), cookiefile=None)

    with patch("tiktok_relay.providers.yt_dlp.YoutubeDL", youtube_dl):
        outcome = await adapter.resolve(LINK)

    assert isinstance(outcome, MediaSet)
    ydl.get_info_extractor.assert_called_with("TikTok")
    assert outcome.request_headers == {
        "User-Agent": "extractor-agent",
        "Referer": "https://www.tiktok.com/",
        "Cookie": "tt_chain_token=abc; ttwid=xyz",
    }
