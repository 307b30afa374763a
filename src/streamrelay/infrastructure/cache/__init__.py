from .segment_cache import InMemorySegmentCache

__all__ = ["InMemorySegmentCache"]
