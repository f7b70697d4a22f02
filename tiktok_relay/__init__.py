from .media import MediaItem, MediaKind, MediaSet
from .pipeline import Delivery, MediaPipeline, build_pipeline

__all__ = ["Delivery", "MediaItem", "MediaKind", "MediaPipeline", "MediaSet", "build_pipeline"]
