"""Application modules.

- asset: Media asset persistence, processing status and retention
- transcoding: FFmpeg-based processing pipeline
- job: Background job retry configuration
"""
