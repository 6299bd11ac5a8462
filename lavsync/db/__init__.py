from .offset_cache import OffsetCache

__all__ = ["OffsetCache"]
