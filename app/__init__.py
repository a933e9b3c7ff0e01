"""Media segmenter backend application.

Stores uploaded videos and turns each one into per-resolution chunk sets in
the background.

Modules:
    - core: Configuration, database, logging, metrics, storage, Celery setup
    - modules.video: Video records, upload flow and read operations
    - modules.transcoding: Transcode pipeline, run supervision and Celery tasks
"""

__version__ = "0.1.0"
