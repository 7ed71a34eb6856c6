"""Error taxonomy for the media processing pipeline.

Fatal errors end the asset in FAILED with the message captured; the
thumbnail and preview errors are absorbed by the pipeline.
"""


class MediaPipelineError(Exception):
    """Base exception for media pipeline errors."""

    fatal: bool = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnreadableMediaError(MediaPipelineError):
    """Source has no decodable video stream or could not be probed."""
    pass


class RenditionEncodeError(MediaPipelineError):
    """A rendition encode failed, timed out or was interrupted."""

    def __init__(self, message: str, tier_name: str = ""):
        self.tier_name = tier_name
        super().__init__(message)


class EncodeCancelledError(RenditionEncodeError):
    """An in-flight encode was terminated by operator cancellation."""

    def __init__(self, tier_name: str = ""):
        super().__init__("cancelled by operator", tier_name=tier_name)


class ThumbnailGenerationError(MediaPipelineError):
    """Thumbnail extraction failed."""

    fatal = False


class PreviewGenerationError(MediaPipelineError):
    """Preview clip encode failed."""

    fatal = False


class ManifestWriteError(MediaPipelineError):
    """Master playlist could not be built or persisted."""
    pass


class StorageIOError(MediaPipelineError):
    """Reading the source or writing an artifact failed at the filesystem."""
    pass


class InvalidQualityProfileError(MediaPipelineError):
    """A quality tier cannot be planned safely into the asset directory."""
    pass
