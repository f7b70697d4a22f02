import asyncio
import dataclasses
import enum
import logging
from typing import Awaitable, Callable

from . import config
from .fetcher import MediaFetcher
from .media import AllProvidersExhausted, FetchFailed, FetchResult, MediaSet
from .net import build_http_session
from .resolver import Resolver, build_resolver
from .selector import DeliveryKind, DeliveryPlan, plan_delivery

logger = logging.getLogger("tiktok-relay.pipeline")


class Stage(str, enum.Enum):
    RESOLVING = "resolving"
    SELECTING = "selecting"
    FETCHING = "fetching"


StageCallback = Callable[[Stage], Awaitable[None]]


@dataclasses.dataclass
class Delivery:
    """Finished buffers for the transport, in the order they must be sent."""

    kind: DeliveryKind
    media_set: MediaSet
    video: FetchResult | None = None
    photos: list[FetchResult] = dataclasses.field(default_factory=list)
    audio: FetchResult | None = None

    @property
    def title(self) -> str:
        return self.media_set.title


class MediaPipeline:
    def __init__(self, resolver: Resolver, fetcher: MediaFetcher, album_cap: int = config.ALBUM_ITEM_CAP):
        self.resolver = resolver
        self.fetcher = fetcher
        self.album_cap = album_cap

    async def _fetch_video(self, plan: DeliveryPlan) -> FetchResult:
        last_error: FetchFailed | None = None
        for candidate in plan.videos:
            try:
                return await self.fetcher.fetch(candidate.source_url, headers=plan.media_set.request_headers)
            except FetchFailed as err:
                last_error = err
                logger.warning(
                    "Video candidate failed: quality=%s watermarked=%s reason=%s",
                    candidate.quality_label,
                    candidate.is_watermarked,
                    err.last_reason,
                )
        raise last_error

    async def _fetch_optional_audio(self, plan: DeliveryPlan) -> FetchResult | None:
        if plan.audio is None:
            return None
        try:
            return await self.fetcher.fetch(plan.audio.source_url, headers=plan.media_set.request_headers)
        except FetchFailed as err:
            logger.warning("Slideshow audio skipped: link=%s reason=%s", plan.media_set.original_link, err.last_reason)
            return None

    async def _fetch_slideshow(self, plan: DeliveryPlan) -> tuple[list[FetchResult], FetchResult | None]:
        audio_task = asyncio.ensure_future(self._fetch_optional_audio(plan))
        try:
            # gather keeps argument order, not completion order
            headers = plan.media_set.request_headers
            photos = await asyncio.gather(*(self.fetcher.fetch(image.source_url, headers=headers) for image in plan.images))
        except BaseException:
            audio_task.cancel()
            raise
        return list(photos), await audio_task

    async def prepare(self, link: str, on_stage: StageCallback | None = None) -> Delivery:
        async def report(stage: Stage) -> None:
            if on_stage is not None:
                await on_stage(stage)

        await report(Stage.RESOLVING)
        media_set = await self.resolver.resolve_link(link)
        if not media_set.ok:
            raise AllProvidersExhausted(link, media_set.error or "no media", media_set.attempts)
        logger.info(
            "Link resolved: link=%s provider=%s items=%s title=%r",
            link,
            media_set.provider,
            len(media_set.items),
            media_set.title,
        )

        await report(Stage.SELECTING)
        plan = plan_delivery(media_set, album_cap=self.album_cap, max_bytes=self.fetcher.max_bytes)

        await report(Stage.FETCHING)
        if plan.kind == DeliveryKind.SLIDESHOW:
            photos, audio = await self._fetch_slideshow(plan)
            return Delivery(kind=plan.kind, media_set=media_set, photos=photos, audio=audio)
        if plan.kind == DeliveryKind.VIDEO:
            return Delivery(kind=plan.kind, media_set=media_set, video=await self._fetch_video(plan))
        audio = await self.fetcher.fetch(plan.audio.source_url, headers=plan.media_set.request_headers)
        return Delivery(kind=plan.kind, media_set=media_set, audio=audio)


def build_pipeline() -> MediaPipeline:
    session = build_http_session()
    return MediaPipeline(build_resolver(session=session), MediaFetcher(session=session))
