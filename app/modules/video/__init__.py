"""Video module: uploaded media assets and the upload flow.

Only the models are re-exported here; the transcoding package imports them
while it initializes.
"""

from app.modules.video.models import Video, VideoStatus

__all__ = [
    "Video",
    "VideoStatus",
]
