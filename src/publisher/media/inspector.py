"""Extract technical metadata from local media files.

Images are read with Pillow; videos are probed with ``ffprobe``. The probe
call goes through an injectable ``runner`` so tests can feed canned JSON
instead of spawning the real tool.
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from PIL import Image, UnidentifiedImageError

from ..domain.models import MediaType
from ..exceptions import MediaInspectionError, UnsupportedMediaError
from .types import MediaInfo, detect_media_type, parse_frame_rate

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str], float], str]


def run_command(command: Sequence[str], timeout: float) -> str:
    """Run ``command`` and return its stdout, raising on non-zero exit."""

    result = subprocess.run(
        list(command),
        capture_output=True,
        text=True,
        check=True,
        timeout=timeout,
    )
    return result.stdout


def _to_int(value: Any) -> int | None:
    if value in (None, "", "N/A"):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float | None:
    if value in (None, "", "N/A"):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class MediaInspector:
    """Read dimensions, duration, codecs, frame rate and size of a file."""

    def __init__(
        self,
        *,
        ffprobe_binary: str = "ffprobe",
        timeout_seconds: float = 30.0,
        runner: CommandRunner | None = None,
    ) -> None:
        self._ffprobe = ffprobe_binary
        self._timeout = timeout_seconds
        self._runner = runner or run_command

    def inspect(self, path: str | Path, media_type: MediaType | None = None) -> MediaInfo:
        file_path = Path(path)
        if not file_path.is_file():
            raise MediaInspectionError(f"Media file not found: {file_path}")
        kind = media_type or detect_media_type(file_path)
        if kind is MediaType.IMAGE:
            return self.inspect_image(file_path)
        return self.inspect_video(file_path)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def inspect_image(self, path: Path) -> MediaInfo:
        try:
            with Image.open(path) as image:
                width, height = image.size
                image_format = (image.format or path.suffix.lstrip(".")).lower()
        except UnidentifiedImageError as exc:
            raise UnsupportedMediaError(f"Not a readable image: {path}") from exc
        except OSError as exc:
            raise MediaInspectionError(f"Failed to read image metadata: {path}: {exc}") from exc

        info = MediaInfo(
            type=MediaType.IMAGE,
            file_size=path.stat().st_size,
            width=width,
            height=height,
            aspect_ratio=(width / height) if height else None,
            format=image_format,
        )
        logger.debug("media.inspect.image", extra={"path": str(path), **info.to_dict()})
        return info

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    def probe(self, path: Path) -> Mapping[str, Any]:
        """Return the raw ffprobe JSON document for ``path``."""

        command = [
            self._ffprobe,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        try:
            output = self._runner(command, self._timeout)
        except FileNotFoundError as exc:
            raise MediaInspectionError(f"{self._ffprobe} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise MediaInspectionError(f"ffprobe timed out after {self._timeout:.0f}s: {path}") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise MediaInspectionError(f"ffprobe failed for {path}: {stderr or exc.returncode}") from exc

        if not output or not output.strip():
            raise MediaInspectionError(f"ffprobe returned no output for {path}")
        try:
            data = json.loads(output)
        except json.JSONDecodeError as exc:
            raise MediaInspectionError(f"Failed to parse ffprobe output: {exc}") from exc
        if not isinstance(data, Mapping):
            raise MediaInspectionError("Unexpected ffprobe output shape")
        return data

    def inspect_video(self, path: Path) -> MediaInfo:
        data = self.probe(path)
        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
        if video is None:
            raise UnsupportedMediaError(f"No video stream found in {path}")

        fmt = data.get("format") or {}
        width = _to_int(video.get("width"))
        height = _to_int(video.get("height"))
        duration = _to_float(fmt.get("duration"))
        if duration is None:
            duration = _to_float(video.get("duration"))
        frame_rate = parse_frame_rate(video.get("r_frame_rate")) or parse_frame_rate(
            video.get("avg_frame_rate")
        )

        info = MediaInfo(
            type=MediaType.VIDEO,
            file_size=path.stat().st_size,
            width=width,
            height=height,
            aspect_ratio=(width / height) if width and height else None,
            duration=duration,
            video_codec=(video.get("codec_name") or None),
            audio_codec=(audio.get("codec_name") if audio else None),
            frame_rate=frame_rate,
            bitrate=_to_int(fmt.get("bit_rate")),
            format=(fmt.get("format_name") or None),
        )
        logger.debug("media.inspect.video", extra={"path": str(path), **info.to_dict()})
        return info


__all__ = ["MediaInspector", "CommandRunner", "run_command"]
