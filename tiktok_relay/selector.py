import dataclasses
import enum
from typing import NamedTuple

from . import config
from .media import MediaItem, MediaKind, MediaSet, SelectionFailed


class Classified(NamedTuple):
    videos: list[MediaItem]
    images: list[MediaItem]
    audios: list[MediaItem]


class DeliveryKind(str, enum.Enum):
    VIDEO = "video"
    SLIDESHOW = "slideshow"
    AUDIO = "audio"


@dataclasses.dataclass(frozen=True)
class DeliveryPlan:
    kind: DeliveryKind
    media_set: MediaSet
    # ranked: the first is preferred, the rest are fallbacks
    videos: tuple[MediaItem, ...] = ()
    images: tuple[MediaItem, ...] = ()
    audio: MediaItem | None = None


def classify(items) -> Classified:
    videos, images, audios = [], [], []
    for item in items:
        if item.has_video_track and item.has_audio_track:
            videos.append(item)
        elif item.kind == MediaKind.IMAGE or not (item.has_video_track or item.has_audio_track):
            images.append(item)
        elif item.has_audio_track:
            audios.append(item)
    return Classified(videos, images, audios)


def _watermark_rank(item: MediaItem) -> int:
    if item.is_watermarked is False:
        return 0
    if item.is_watermarked is None:
        return 1
    return 2


def rank_videos(videos, max_bytes: int = config.MAX_BOT_FILE_BYTES) -> list[MediaItem]:
    """Unwatermarked first, then unknown, then watermarked; provider order otherwise."""
    within_budget = [video for video in videos if not video.size_bytes or video.size_bytes <= max_bytes]
    return sorted(within_budget, key=_watermark_rank)


def pick_best(videos, max_bytes: int = config.MAX_BOT_FILE_BYTES) -> MediaItem | None:
    ranked = rank_videos(videos, max_bytes)
    return ranked[0] if ranked else None


def plan_delivery(
    media_set: MediaSet,
    album_cap: int = config.ALBUM_ITEM_CAP,
    max_bytes: int = config.MAX_BOT_FILE_BYTES,
) -> DeliveryPlan:
    videos, images, audios = classify(media_set.items)
    first_audio = audios[0] if audios else None

    if images:
        return DeliveryPlan(
            kind=DeliveryKind.SLIDESHOW,
            media_set=media_set,
            images=tuple(images[:album_cap]),
            audio=first_audio,
        )
    ranked = rank_videos(videos, max_bytes)
    if ranked:
        return DeliveryPlan(kind=DeliveryKind.VIDEO, media_set=media_set, videos=tuple(ranked))
    if first_audio:
        return DeliveryPlan(kind=DeliveryKind.AUDIO, media_set=media_set, audio=first_audio)
    raise SelectionFailed("no suitable media")
