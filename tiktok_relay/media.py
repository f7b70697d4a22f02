import dataclasses
import enum


class MediaKind(str, enum.Enum):
    VIDEO = "video"
    IMAGE = "image"
    AUDIO = "audio"


UNKNOWN_TITLE = "Unknown Title"


@dataclasses.dataclass(frozen=True)
class MediaItem:
    """One retrievable asset candidate produced by a provider."""

    source_url: str
    kind: MediaKind
    has_video_track: bool
    has_audio_track: bool
    # None when the provider does not say
    is_watermarked: bool | None
    quality_label: str
    size_bytes: int = 0
    extension: str = ""

    def __post_init__(self) -> None:
        if self.kind == MediaKind.IMAGE:
            if self.has_video_track or self.has_audio_track:
                raise ValueError("image items cannot carry video or audio tracks")
        elif not (self.has_video_track or self.has_audio_track):
            raise ValueError(f"{self.kind.value} item needs at least one track")


@dataclasses.dataclass(frozen=True)
class ProviderAttempt:
    provider: str
    order: int
    outcome: str
    reason: str = ""


@dataclasses.dataclass(frozen=True)
class ProviderFailure:
    provider: str
    reason: str


@dataclasses.dataclass(frozen=True)
class MediaSet:
    """Normalized result of resolving one link.

    After orchestration either ``items`` is non-empty or ``error`` is set,
    never both and never neither.
    """

    original_link: str
    title: str = UNKNOWN_TITLE
    author_label: str | None = None
    thumbnail_url: str = ""
    duration_seconds: float | None = None
    items: tuple[MediaItem, ...] = ()
    error: str | None = None
    provider: str | None = None
    attempts: tuple[ProviderAttempt, ...] = ()
    # sent with direct media requests, e.g. cookies set during extraction
    request_headers: dict[str, str] = dataclasses.field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.items) and self.error is None


@dataclasses.dataclass(frozen=True)
class FetchResult:
    data: bytes
    strategy: str
    url: str
    attempt: int = 0


class MediaDownloadError(RuntimeError):
    pass


class AllProvidersExhausted(MediaDownloadError):
    def __init__(self, link: str, reason: str, attempts: tuple[ProviderAttempt, ...] = ()):
        super().__init__(f"all providers failed for {link}: {reason}")
        self.link = link
        self.reason = reason
        self.attempts = attempts


class FetchFailed(MediaDownloadError):
    def __init__(self, url: str, last_reason: str):
        super().__init__(f"fetch failed for {url}: {last_reason}")
        self.url = url
        self.last_reason = last_reason


class MediaTooLarge(FetchFailed):
    pass


class SelectionFailed(MediaDownloadError):
    pass


def normalize_reason(raw_reason: str) -> str:
    reason = " ".join((raw_reason or "").split())
    if not reason:
        return "unknown error"
    return reason[:180]
