"""Lesson Media Pipeline.

Background workers that turn uploaded lesson videos into adaptive-bitrate
renditions, thumbnails, a preview clip and an HLS master playlist.

Modules:
    - core: Configuration, database, logging, metrics, Celery setup
    - modules.asset: Media asset records, status state machine, retention
    - modules.transcoding: Probe, planning, encoding and manifest output
    - modules.job: Celery retry/backoff base task
"""

__version__ = "0.1.0"
