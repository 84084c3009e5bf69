"""Re-encode media so it satisfies a :class:`TargetSpec`.

Images are converted in-process with Pillow; videos are handed to
``ffmpeg``. Output always lands next to the other artifacts of a request as
``converted.<ext>`` and the source file is never modified.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Sequence

from PIL import Image, ImageOps, UnidentifiedImageError

from ..domain.models import MediaType
from ..exceptions import MediaTranscodeError
from .inspector import CommandRunner, run_command
from .types import TargetSpec, parse_aspect_ratio

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_QUALITY = 90
PAD_WIDTH = 1080
DEFAULT_VIDEO_CODEC = "h264"
DEFAULT_CRF = 23
MIN_CRF = 18
MAX_CRF = 51

_VIDEO_ENCODERS = {
    "h264": "libx264",
    "hevc": "libx265",
    "h265": "libx265",
    "vp9": "libvpx-vp9",
}
_PIL_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
}


def _even(value: int) -> int:
    return max(2, (int(value) // 2) * 2)


def image_extension(fmt: str) -> str:
    fmt = fmt.lower()
    return "jpg" if fmt in ("jpg", "jpeg") else fmt


def crf_for_quality(quality: int) -> int:
    """Map a 1-100 quality target onto the x264/x265 CRF scale (lower is better)."""

    quality = min(100, max(1, int(quality)))
    return min(MAX_CRF, round(MIN_CRF + (100 - quality) * 0.66))


def _needs_video_encode(target: TargetSpec) -> bool:
    return any(
        value is not None
        for value in (
            target.video_codec,
            target.width,
            target.height,
            target.aspect_ratio,
            target.frame_rate,
            target.quality,
        )
    )


def build_video_command(
    source: str | Path,
    destination: str | Path,
    target: TargetSpec,
    *,
    ffmpeg_binary: str = "ffmpeg",
    source_codec: str | None = None,
) -> list[str]:
    """Return the ffmpeg argument list that realizes ``target``.

    Scaling, padding, frame-rate and quality changes need decoded frames, so
    any of them selects a real encoder: the target codec when one is set,
    otherwise the encoder of ``source_codec`` (libx264 when unknown). The
    video stream is only copied when the target touches nothing but audio,
    duration or container.
    """

    command: list[str] = [ffmpeg_binary, "-y", "-i", str(source)]

    if _needs_video_encode(target):
        if target.video_codec:
            encoder = _VIDEO_ENCODERS.get(target.video_codec.lower(), target.video_codec)
        else:
            encoder = _VIDEO_ENCODERS.get((source_codec or "").lower(), _VIDEO_ENCODERS[DEFAULT_VIDEO_CODEC])
        crf = crf_for_quality(target.quality) if target.quality is not None else DEFAULT_CRF
        command += ["-c:v", encoder, "-preset", "medium", "-crf", str(crf)]
    else:
        command += ["-c:v", "copy"]

    if target.audio_codec:
        command += ["-c:a", target.audio_codec, "-b:a", "128k"]
    else:
        command += ["-c:a", "copy"]

    if target.frame_rate:
        command += ["-r", f"{target.frame_rate:g}"]

    if target.width and target.height:
        command += ["-s", f"{_even(target.width)}x{_even(target.height)}"]
    elif target.width:
        command += ["-vf", f"scale={_even(target.width)}:-2"]
    elif target.height:
        command += ["-vf", f"scale=-2:{_even(target.height)}"]
    elif target.aspect_ratio:
        ratio = parse_aspect_ratio(target.aspect_ratio)
        if ratio is None:
            raise MediaTranscodeError(f"Invalid target aspect ratio: {target.aspect_ratio!r}")
        height = round(PAD_WIDTH / ratio)
        command += [
            "-vf",
            f"scale=-2:{height},setsar=1,pad={PAD_WIDTH}:{height}:(ow-iw)/2:(oh-ih)/2",
        ]

    if target.max_duration:
        command += ["-t", f"{target.max_duration:g}"]

    command += ["-f", "mp4", str(destination)]
    return command


class MediaTranscoder:
    """Produce ``converted.<ext>`` files from a source and its conversion target."""

    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        timeout_seconds: float = 600.0,
        runner: CommandRunner | None = None,
    ) -> None:
        self._ffmpeg = ffmpeg_binary
        self._timeout = timeout_seconds
        self._runner = runner or run_command

    def transcode(
        self,
        source: str | Path,
        target: TargetSpec,
        output_dir: str | Path,
        media_type: MediaType,
        *,
        source_codec: str | None = None,
    ) -> Path:
        out_dir = Path(output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        if media_type is MediaType.IMAGE:
            return self.transcode_image(Path(source), target, out_dir)
        return self.transcode_video(Path(source), target, out_dir, source_codec=source_codec)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def transcode_image(self, source: Path, target: TargetSpec, output_dir: Path) -> Path:
        fmt = (target.format or "jpeg").lower()
        pil_format = _PIL_FORMATS.get(fmt)
        if pil_format is None:
            raise MediaTranscodeError(f"Unsupported image output format: {fmt}")
        destination = output_dir / f"converted.{image_extension(fmt)}"
        quality = target.quality or DEFAULT_IMAGE_QUALITY

        try:
            with Image.open(source) as opened:
                image = ImageOps.exif_transpose(opened)
                image = self._resize(image, target)
                save_kwargs: dict[str, object] = {}
                if pil_format == "JPEG":
                    if image.mode not in ("RGB", "L"):
                        image = image.convert("RGB")
                    save_kwargs = {"quality": quality, "optimize": True}
                elif pil_format == "PNG":
                    save_kwargs = {"optimize": True, "compress_level": 9}
                else:
                    save_kwargs = {"quality": quality}
                image.save(destination, format=pil_format, **save_kwargs)
        except UnidentifiedImageError as exc:
            raise MediaTranscodeError(f"Cannot decode image {source}") from exc
        except OSError as exc:
            raise MediaTranscodeError(f"Image conversion failed for {source}: {exc}") from exc

        logger.debug(
            "media.transcode.image",
            extra={"source": str(source), "destination": str(destination), "target": target.to_dict()},
        )
        return destination

    @staticmethod
    def _resize(image: Image.Image, target: TargetSpec) -> Image.Image:
        if target.width and target.height:
            # cover the box, cropping around the center
            return ImageOps.fit(image, (target.width, target.height), method=Image.Resampling.LANCZOS)
        if target.width or target.height:
            width, height = image.size
            if target.width:
                scale = target.width / width
            else:
                scale = target.height / height
            size = (max(1, round(width * scale)), max(1, round(height * scale)))
            return image.resize(size, Image.Resampling.LANCZOS)
        return image

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    def transcode_video(
        self,
        source: Path,
        target: TargetSpec,
        output_dir: Path,
        *,
        source_codec: str | None = None,
    ) -> Path:
        destination = output_dir / "converted.mp4"
        command = build_video_command(
            source,
            destination,
            target,
            ffmpeg_binary=self._ffmpeg,
            source_codec=source_codec,
        )
        logger.debug("media.transcode.video.start", extra={"command": " ".join(command)})
        self._run(command)
        if not destination.is_file():
            raise MediaTranscodeError(f"ffmpeg produced no output for {source}")
        logger.debug("media.transcode.video.done", extra={"destination": str(destination)})
        return destination

    def _run(self, command: Sequence[str]) -> None:
        try:
            self._runner(command, self._timeout)
        except FileNotFoundError as exc:
            raise MediaTranscodeError(f"{self._ffmpeg} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise MediaTranscodeError(f"ffmpeg timed out after {self._timeout:.0f}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip().splitlines()
            detail = stderr[-1] if stderr else f"exit code {exc.returncode}"
            raise MediaTranscodeError(f"ffmpeg failed: {detail}") from exc


__all__ = ["MediaTranscoder", "build_video_command", "crf_for_quality", "image_extension"]
