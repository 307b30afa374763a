from .segment_cache import SegmentCachePort

__all__ = ["SegmentCachePort"]
