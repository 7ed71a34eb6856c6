"""Transcoding module for lesson video processing.

Implements FFmpeg-based probing, rendition planning, encoding with optional
watermarks, thumbnail/preview generation and HLS master playlist output.
"""
