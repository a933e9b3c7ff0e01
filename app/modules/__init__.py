"""Application modules.

- video: Video upload and metadata management
- transcoding: Probe, encode and segment pipeline with background runs
"""
