"""Remote service clients."""

from uploader.clients.opensubtitles import OpenSubtitlesClient

__all__ = ["OpenSubtitlesClient"]
