"""
Provider adapters.

Every adapter talks to one extraction backend and tags what it got back with
an explicit schema. ``normalize`` turns a tagged response into a MediaSet
using the one normalizer registered for that schema.
"""

import asyncio
import dataclasses
import enum
import json
import logging
import re
from pathlib import Path

import requests
import yt_dlp

from . import config
from .media import (
    UNKNOWN_TITLE,
    MediaItem,
    MediaKind,
    MediaSet,
    ProviderFailure,
    normalize_reason,
)
from .net import build_http_session, fill_url_template

logger = logging.getLogger("tiktok-relay.providers")

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "gif", "bmp", "heic"}
UNIVERSAL_DATA_REGEX = re.compile(
    r'<script[^>]+id="__UNIVERSAL_DATA_FOR_REHYDRATION__"[^>]*>(.*?)</script>',
    re.DOTALL,
)
PLAY_ADDR_REGEX = re.compile(r'"playAddr"\s*:\s*"([^"]+)"')
DOWNLOAD_ADDR_REGEX = re.compile(r'"downloadAddr"\s*:\s*"([^"]+)"')


class Schema(str, enum.Enum):
    TIKTOK_API = "tiktok_api"
    SSSTIK = "ssstik"
    MUSICALDOWN = "musicaldown"
    YTDLP = "ytdlp"
    PAGE = "page"


@dataclasses.dataclass(frozen=True)
class RawResponse:
    schema: Schema
    link: str
    payload: dict
    request_headers: dict = dataclasses.field(default_factory=dict)


class ProviderError(Exception):
    """An expected upstream failure. Reported, never propagated."""


# -------------------------
# Field helpers
# -------------------------
def _dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _first(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        for entry in value:
            if isinstance(entry, str) and entry:
                return entry
    return ""


def _seconds(value) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _pick_title(result: dict) -> str:
    for key in ("title", "desc", "description"):
        value = result.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return UNKNOWN_TITLE


def _pick_thumbnail(result: dict) -> str:
    thumbnail = _first(result.get("thumbnail"))
    if thumbnail:
        return thumbnail
    cover = _first(result.get("cover"))
    if cover:
        return cover
    return _first(_dict(result.get("video")).get("cover"))


def _pick_author(result: dict) -> str | None:
    author = result.get("author")
    if isinstance(author, str) and author:
        return author
    author = _dict(author)
    for key in ("nickname", "username", "uniqueId"):
        value = author.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _video_item(url: str, label: str, watermarked: bool | None, size_bytes: int = 0, ext: str = "mp4") -> MediaItem:
    return MediaItem(
        source_url=url,
        kind=MediaKind.VIDEO,
        has_video_track=True,
        has_audio_track=True,
        is_watermarked=watermarked,
        quality_label=label,
        size_bytes=size_bytes,
        extension=ext,
    )


def _video_pair(primary_url: str, watermark_url: str, primary_label: str = "hd") -> list[MediaItem]:
    items = []
    if primary_url:
        items.append(_video_item(primary_url, primary_label, False))
    if watermark_url and watermark_url != primary_url:
        items.append(_video_item(watermark_url, "watermark", True))
    return items


def _image_items(images) -> list[MediaItem]:
    if not isinstance(images, list):
        return []
    items = []
    for position, image in enumerate(images, start=1):
        url = _first(image)
        if not url:
            continue
        items.append(
            MediaItem(
                source_url=url,
                kind=MediaKind.IMAGE,
                has_video_track=False,
                has_audio_track=False,
                is_watermarked=None,
                quality_label=f"image-{position}",
                extension="jpeg",
            )
        )
    return items


def _audio_url(music) -> str:
    if isinstance(music, dict):
        return _first(music.get("playUrl")) or _first(music.get("play_url"))
    return _first(music)


def _audio_items(music) -> list[MediaItem]:
    url = _audio_url(music)
    if not url:
        return []
    return [
        MediaItem(
            source_url=url,
            kind=MediaKind.AUDIO,
            has_video_track=False,
            has_audio_track=True,
            is_watermarked=None,
            quality_label="audio",
            extension="mp3",
        )
    ]


def _media_set(raw: RawResponse, result: dict, items: list[MediaItem], duration=None) -> MediaSet:
    return MediaSet(
        original_link=raw.link,
        title=_pick_title(result),
        author_label=_pick_author(result),
        thumbnail_url=_pick_thumbnail(result),
        duration_seconds=_seconds(duration),
        items=tuple(items),
        request_headers=dict(raw.request_headers),
    )


# -------------------------
# Normalizers
# -------------------------
def _normalize_tiktok_api(raw: RawResponse) -> MediaSet:
    result = raw.payload
    video = _dict(result.get("video"))
    items = _video_pair(_first(video.get("playAddr")), _first(video.get("downloadAddr")))
    items += _image_items(result.get("images"))
    items += _audio_items(result.get("music"))
    return _media_set(raw, result, items, video.get("duration"))


def _normalize_ssstik(raw: RawResponse) -> MediaSet:
    result = raw.payload
    items = _video_pair(_first(result.get("direct")), _first(result.get("video")), primary_label="direct")
    items += _image_items(result.get("images"))
    items += _audio_items(result.get("music"))
    return _media_set(raw, result, items)


def _normalize_musicaldown(raw: RawResponse) -> MediaSet:
    result = raw.payload
    items = _video_pair(_first(result.get("videoHD")), _first(result.get("videoWatermark")))
    items += _image_items(result.get("images"))
    items += _audio_items(result.get("music"))
    return _media_set(raw, result, items)


def _is_image_meta(meta: dict) -> bool:
    ext = (meta.get("ext") or "").lower()
    url = (meta.get("url") or "").lower().split("?")[0]
    if meta.get("vcodec") and meta.get("vcodec") != "none":
        return False
    return ext in IMAGE_EXTENSIONS or any(url.endswith(f".{image_ext}") for image_ext in IMAGE_EXTENSIONS)


def _ytdlp_stream_items(meta: dict) -> list[MediaItem]:
    formats = [fmt for fmt in meta.get("formats") or [] if isinstance(fmt, dict) and fmt.get("url")]
    clean: list[dict] = []
    marked: list[dict] = []
    audio_only: list[dict] = []
    # yt-dlp sorts formats worst to best
    for fmt in reversed(formats):
        if fmt.get("vcodec") == "none":
            if fmt.get("acodec") not in (None, "none"):
                audio_only.append(fmt)
            continue
        if fmt.get("acodec") == "none":
            continue
        note = (fmt.get("format_note") or "").lower()
        (marked if "watermark" in note else clean).append(fmt)

    items = []
    if clean:
        best = clean[0]
        items.append(
            _video_item(best["url"], "hd", False, best.get("filesize") or 0, (best.get("ext") or "mp4").lower())
        )
    if marked:
        fallback = marked[0]
        items.append(
            _video_item(
                fallback["url"], "watermark", True, fallback.get("filesize") or 0, (fallback.get("ext") or "mp4").lower()
            )
        )
    if not items and not formats and meta.get("url"):
        items.append(_video_item(meta["url"], "sd", None, meta.get("filesize") or 0))
    if audio_only:
        items += _audio_items(audio_only[0]["url"])
    return items


def _normalize_ytdlp(raw: RawResponse) -> MediaSet:
    info = raw.payload
    entries = [entry for entry in info.get("entries") or [] if isinstance(entry, dict)]
    items: list[MediaItem] = []
    if entries:
        image_urls = []
        for entry in entries:
            if _is_image_meta(entry):
                image_urls.append(entry.get("url") or "")
            elif not any(item.kind == MediaKind.VIDEO for item in items):
                items += _ytdlp_stream_items(entry)
        items += _image_items(image_urls)
    elif _is_image_meta(info):
        items += _image_items([info.get("url") or ""])
    else:
        items += _ytdlp_stream_items(info)

    result = {
        "title": info.get("title"),
        "description": info.get("description"),
        "thumbnail": info.get("thumbnail"),
        "author": info.get("uploader") or info.get("creator") or info.get("channel"),
    }
    return _media_set(raw, result, items, info.get("duration"))


def _normalize_page(raw: RawResponse) -> MediaSet:
    item = raw.payload
    video = _dict(item.get("video"))
    items = _video_pair(_first(video.get("playAddr")), _first(video.get("downloadAddr")))
    images = [
        _first(_dict(_dict(image).get("imageURL")).get("urlList"))
        for image in _dict(item.get("imagePost")).get("images") or []
    ]
    items += _image_items(images)
    items += _audio_items(item.get("music"))
    return _media_set(raw, item, items, video.get("duration"))


NORMALIZERS = {
    Schema.TIKTOK_API: _normalize_tiktok_api,
    Schema.SSSTIK: _normalize_ssstik,
    Schema.MUSICALDOWN: _normalize_musicaldown,
    Schema.YTDLP: _normalize_ytdlp,
    Schema.PAGE: _normalize_page,
}


def normalize(raw: RawResponse) -> MediaSet:
    return NORMALIZERS[raw.schema](raw)


# -------------------------
# Adapters
# -------------------------
class ProviderAdapter:
    name = "provider"

    def __init__(self, session: requests.Session, timeout: float = config.PROVIDER_TIMEOUT_SECONDS):
        self.session = session
        self.timeout = timeout

    def fetch_raw(self, link: str) -> RawResponse:
        raise NotImplementedError

    async def resolve(self, link: str) -> MediaSet | ProviderFailure:
        try:
            raw = await asyncio.to_thread(self.fetch_raw, link)
        except ProviderError as err:
            return ProviderFailure(self.name, normalize_reason(str(err)))
        except requests.JSONDecodeError as err:
            return ProviderFailure(self.name, normalize_reason(f"malformed payload: {err}"))
        except requests.RequestException as err:
            return ProviderFailure(self.name, normalize_reason(f"request failed: {err}"))
        except ValueError as err:
            return ProviderFailure(self.name, normalize_reason(f"malformed payload: {err}"))

        media_set = normalize(raw)
        if not media_set.items:
            return ProviderFailure(self.name, "no media")
        logger.info("Provider resolved link: provider=%s link=%s items=%s", self.name, link, len(media_set.items))
        return dataclasses.replace(media_set, provider=self.name)


class JsonApiAdapter(ProviderAdapter):
    """A backend answering ``{"status", "message", "result"}`` JSON envelopes."""

    def __init__(self, name: str, schema: Schema, endpoint: str, session: requests.Session, timeout: float = config.PROVIDER_TIMEOUT_SECONDS):
        super().__init__(session, timeout)
        self.name = name
        self.schema = schema
        self.endpoint = endpoint

    def fetch_raw(self, link: str) -> RawResponse:
        if not self.endpoint:
            raise ProviderError("endpoint not configured")
        response = self.session.get(fill_url_template(self.endpoint, link), timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ProviderError("malformed payload: expected a JSON object")
        result = body.get("result")
        if body.get("status") != "success" or not isinstance(result, dict):
            raise ProviderError(body.get("message") or "Download failed")
        return RawResponse(self.schema, link, result)


class YtDlpAdapter(ProviderAdapter):
    name = "ytdlp"

    def __init__(self, session: requests.Session, timeout: float = config.PROVIDER_TIMEOUT_SECONDS, cookiefile: Path | None = config.TIKTOK_COOKIES):
        super().__init__(session, timeout)
        self.cookiefile = cookiefile

    def _ydl_opts(self) -> dict:
        ydl_opts = {
            "noplaylist": False,
            "skip_download": True,
            "extractor_retries": 1,
            "socket_timeout": self.timeout,
            "user_agent": config.CHROME_USER_AGENT,
            "http_headers": dict(self.session.headers),
            "quiet": True,
            "no_warnings": True,
        }
        if self.cookiefile and self.cookiefile.exists():
            ydl_opts["cookiefile"] = str(self.cookiefile)
        return ydl_opts

    def _media_headers(self, ydl: yt_dlp.YoutubeDL, info: dict) -> dict:
        """Headers and cookies the extractor used; the CDN rejects media requests without them."""
        headers = {
            key: value for key, value in _dict(info.get("http_headers")).items() if isinstance(value, str)
        }
        ie = ydl.get_info_extractor(info.get("extractor_key") or "TikTok")
        cookies = {}
        for url in (f"{config.PLATFORM_ORIGIN}/", info.get("url")):
            if isinstance(url, str) and url:
                cookies.update({name: morsel.value for name, morsel in ie._get_cookies(url).items()})
        if cookies:
            headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in cookies.items())
        return headers

    def fetch_raw(self, link: str) -> RawResponse:
        try:
            # the cookie jar only lives as long as the YoutubeDL instance
            with yt_dlp.YoutubeDL(self._ydl_opts()) as ydl:
                info = ydl.extract_info(link, download=False)
                if not isinstance(info, dict):
                    raise ProviderError("yt-dlp returned unexpected result")
                headers = self._media_headers(ydl, info)
        except yt_dlp.utils.DownloadError as err:
            raise ProviderError(str(err)) from err
        return RawResponse(Schema.YTDLP, link, info, headers)


def _unescape_json_url(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        return value.replace("\\u002F", "/").replace("\\u0026", "&")


def scan_page(page: str) -> dict | None:
    """Find the item struct embedded in a TikTok page, or any playable address."""
    match = UNIVERSAL_DATA_REGEX.search(page)
    if match:
        try:
            data = json.loads(match.group(1))
        except ValueError:
            data = None
        scope = _dict(_dict(data).get("__DEFAULT_SCOPE__"))
        item = _dict(_dict(scope.get("webapp.video-detail")).get("itemInfo")).get("itemStruct")
        if isinstance(item, dict) and item:
            return item

    play_urls = [_unescape_json_url(url) for url in PLAY_ADDR_REGEX.findall(page)]
    download_urls = [_unescape_json_url(url) for url in DOWNLOAD_ADDR_REGEX.findall(page)]
    if play_urls or download_urls:
        return {"video": {"playAddr": _first(play_urls), "downloadAddr": _first(download_urls)}}
    return None


class PageScrapeAdapter(ProviderAdapter):
    name = "page"

    def fetch_raw(self, link: str) -> RawResponse:
        response = self.session.get(
            link,
            headers={"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"},
            timeout=self.timeout,
            allow_redirects=True,
        )
        response.raise_for_status()
        item = scan_page(response.text)
        if item is None:
            raise ProviderError("no embedded media data in page")
        return RawResponse(Schema.PAGE, link, item)


def build_adapters(priority: list[str] | None = None, session: requests.Session | None = None) -> list[ProviderAdapter]:
    priority = config.PROVIDER_PRIORITY if priority is None else priority
    session = session or build_http_session()
    factories = {
        "tiktok_api": lambda: JsonApiAdapter("tiktok_api", Schema.TIKTOK_API, config.TIKTOK_API_URL, session),
        "ssstik": lambda: JsonApiAdapter("ssstik", Schema.SSSTIK, config.SSSTIK_API_URL, session),
        "musicaldown": lambda: JsonApiAdapter("musicaldown", Schema.MUSICALDOWN, config.MUSICALDOWN_API_URL, session),
        "ytdlp": lambda: YtDlpAdapter(session),
        "page": lambda: PageScrapeAdapter(session),
    }
    unknown = [name for name in priority if name not in factories]
    if unknown:
        raise ValueError(f"Unknown providers in priority list: {', '.join(unknown)}")
    return [factories[name]() for name in priority]
