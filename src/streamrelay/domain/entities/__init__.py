from .media import (
    ByteRange,
    CacheEntry,
    ContentRange,
    ProxyError,
    RangePlan,
    ResourceSize,
    RewrittenPlaylist,
    SegmentOptions,
    TailPrefetchEntry,
    UpstreamStatusError,
)

__all__ = [
    "ByteRange",
    "CacheEntry",
    "ContentRange",
    "ProxyError",
    "RangePlan",
    "ResourceSize",
    "RewrittenPlaylist",
    "SegmentOptions",
    "TailPrefetchEntry",
    "UpstreamStatusError",
]
