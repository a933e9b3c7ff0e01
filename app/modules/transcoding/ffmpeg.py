"""FFmpeg/FFprobe implementations of the media tools.

Provides the probe, encoder, segmenter and thumbnail grabber used by the
transcode pipeline. Every tool raises a MediaToolError subclass on a
non-zero exit or unusable output.
"""

import glob
import json
import os
import re
import subprocess
from typing import Optional

from app.core.config import settings
from app.modules.transcoding.schemas import (
    MediaInfo,
    TranscodeProfile,
    get_resolution_dimensions,
)


SEGMENT_PLAYLIST_NAME = "playlist.m3u8"

# Tail of stderr kept in error messages
_STDERR_TAIL_CHARS = 2000


class MediaToolError(Exception):
    """Base exception for external media tool failures."""
    pass


class MediaProbeError(MediaToolError):
    """Raised when ffprobe fails or its output cannot be parsed."""
    pass


class EncodeError(MediaToolError):
    """Raised when an ffmpeg encode fails."""
    pass


class SegmentError(MediaToolError):
    """Raised when ffmpeg segmenting fails or produces no chunks."""
    pass


def _run(cmd: list[str], error_cls: type[MediaToolError]) -> subprocess.CompletedProcess:
    """Run a tool and convert failures into ``error_cls``."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise error_cls(f"Failed to start {cmd[0]}: {e}") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()[-_STDERR_TAIL_CHARS:]
        raise error_cls(f"{os.path.basename(cmd[0])} exited with code {result.returncode}: {stderr}")

    return result


class FFprobeMediaProbe:
    """Extracts duration and frame dimensions with ffprobe."""

    def __init__(self, ffprobe_path: str = "ffprobe"):
        self.ffprobe_path = ffprobe_path

    def build_probe_command(self, path: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]

    def inspect(self, path: str) -> MediaInfo:
        """Probe a media file.

        Args:
            path: Local path of the media file

        Returns:
            MediaInfo with duration in seconds and first video stream size

        Raises:
            MediaProbeError: If ffprobe fails or reports no usable video stream
        """
        result = _run(self.build_probe_command(path), MediaProbeError)
        return parse_probe_output(result.stdout)


def parse_probe_output(output: str) -> MediaInfo:
    """Parse ffprobe JSON output into MediaInfo."""
    try:
        info = json.loads(output)
    except json.JSONDecodeError as e:
        raise MediaProbeError(f"Unparseable ffprobe output: {e}") from e

    try:
        duration = float(info["format"]["duration"])
    except (KeyError, TypeError, ValueError) as e:
        raise MediaProbeError("ffprobe output has no format duration") from e

    for stream in info.get("streams", []):
        if stream.get("codec_type") == "video":
            try:
                width = int(stream["width"])
                height = int(stream["height"])
            except (KeyError, TypeError, ValueError) as e:
                raise MediaProbeError("Video stream has no dimensions") from e
            return MediaInfo(duration=duration, width=width, height=height)

    raise MediaProbeError("No video stream found")


class FFmpegEncoder:
    """Produces one scaled rendition of a source file."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        video_codec: str = "libx264",
        audio_codec: str = "aac",
        audio_bitrate: str = "128k",
    ):
        self.ffmpeg_path = ffmpeg_path
        self.video_codec = video_codec
        self.audio_codec = audio_codec
        self.audio_bitrate = audio_bitrate

    def build_encode_command(
        self,
        source_path: str,
        dest_path: str,
        resolution: str,
        fps: int,
    ) -> list[str]:
        width, height = get_resolution_dimensions(resolution)
        return [
            self.ffmpeg_path,
            "-i", source_path,
            "-c:v", self.video_codec,
            "-vf", f"scale={width}:{height}",
            "-r", str(fps),
            "-c:a", self.audio_codec,
            "-b:a", self.audio_bitrate,
            "-movflags", "+faststart",
            "-y",  # Overwrite output
            dest_path,
        ]

    def encode(self, source_path: str, dest_path: str, resolution: str, fps: int) -> None:
        """Encode ``source_path`` into ``dest_path`` at the given resolution.

        Raises:
            EncodeError: If ffmpeg exits non-zero
        """
        _run(self.build_encode_command(source_path, dest_path, resolution, fps), EncodeError)


class FFmpegSegmenter:
    """Splits a rendition into fixed-duration MPEG-TS chunks."""

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self.ffmpeg_path = ffmpeg_path

    def build_segment_command(
        self,
        source_path: str,
        chunk_seconds: int,
        dest_pattern: str,
    ) -> list[str]:
        output_dir = os.path.dirname(dest_pattern)
        return [
            self.ffmpeg_path,
            "-i", source_path,
            "-c", "copy",  # Stream copy, no re-encode
            "-map", "0",
            "-f", "segment",
            "-segment_time", str(chunk_seconds),
            "-segment_format", "mpegts",
            "-segment_list", os.path.join(output_dir, SEGMENT_PLAYLIST_NAME),
            "-segment_list_type", "m3u8",
            dest_pattern,
        ]

    def segment(self, source_path: str, chunk_seconds: int, dest_pattern: str) -> list[str]:
        """Segment ``source_path`` into chunks named after ``dest_pattern``.

        Args:
            source_path: Rendition to split
            chunk_seconds: Nominal chunk length
            dest_pattern: printf-style pattern such as ``dir/segment_%03d.ts``

        Returns:
            Chunk paths in playback order

        Raises:
            SegmentError: If ffmpeg fails or no chunk file matches the pattern
        """
        output_dir = os.path.dirname(dest_pattern)
        os.makedirs(output_dir, exist_ok=True)

        _run(self.build_segment_command(source_path, chunk_seconds, dest_pattern), SegmentError)

        chunks = read_segment_playlist(os.path.join(output_dir, SEGMENT_PLAYLIST_NAME))
        if chunks is None:
            chunks = list_segment_files(dest_pattern)

        if not chunks:
            raise SegmentError(f"No segment files matched {dest_pattern}")
        return chunks


def read_segment_playlist(playlist_path: str) -> Optional[list[str]]:
    """Read chunk paths from an m3u8 chunk list, or None if it is missing."""
    if not os.path.exists(playlist_path):
        return None

    base_dir = os.path.dirname(playlist_path)
    chunks = []
    with open(playlist_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            path = line if os.path.isabs(line) else os.path.join(base_dir, line)
            if os.path.exists(path):
                chunks.append(path)
    return chunks


def list_segment_files(dest_pattern: str) -> list[str]:
    """List files produced for a printf-style pattern, in numeric order."""
    glob_pattern = re.sub(r"%0?\d*d", "*", dest_pattern, count=1)
    return sorted(glob.glob(glob_pattern), key=_segment_sort_key)


def _segment_sort_key(path: str) -> tuple[int, str]:
    numbers = re.findall(r"\d+", os.path.basename(path))
    return (int(numbers[-1]) if numbers else -1, path)


class FFmpegThumbnailer:
    """Grabs a single frame as a JPEG thumbnail."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", at_seconds: float = 1.0):
        self.ffmpeg_path = ffmpeg_path
        self.at_seconds = at_seconds

    def generate(self, source_path: str, dest_path: str) -> None:
        cmd = [
            self.ffmpeg_path,
            "-ss", str(self.at_seconds),
            "-i", source_path,
            "-frames:v", "1",
            "-q:v", "2",
            "-y",
            dest_path,
        ]
        _run(cmd, MediaToolError)


def get_default_probe() -> FFprobeMediaProbe:
    return FFprobeMediaProbe(ffprobe_path=settings.FFPROBE_PATH)


def get_default_encoder(profile: TranscodeProfile) -> FFmpegEncoder:
    return FFmpegEncoder(
        ffmpeg_path=settings.FFMPEG_PATH,
        video_codec=profile.video_codec,
        audio_codec=profile.audio_codec,
        audio_bitrate=profile.audio_bitrate,
    )


def get_default_segmenter() -> FFmpegSegmenter:
    return FFmpegSegmenter(ffmpeg_path=settings.FFMPEG_PATH)


def get_default_thumbnailer(profile: TranscodeProfile) -> Optional[FFmpegThumbnailer]:
    """Thumbnail generation is only wired when a frame offset is configured."""
    if profile.thumbnail_at_seconds is None:
        return None
    return FFmpegThumbnailer(
        ffmpeg_path=settings.FFMPEG_PATH,
        at_seconds=profile.thumbnail_at_seconds,
    )
