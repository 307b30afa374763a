from .media_response import MediaResponse
from .playlist_proxy import PlaylistProxyUseCase
from .segment_proxy import SegmentProxyUseCase
from .subtitle_proxy import SubtitleProxyUseCase

__all__ = [
    "MediaResponse",
    "PlaylistProxyUseCase",
    "SegmentProxyUseCase",
    "SubtitleProxyUseCase",
]
