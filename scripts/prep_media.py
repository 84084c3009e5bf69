"""Inspect a media file against a platform's requirements and optionally convert it."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from src.publisher.core.config import PublisherSettings
from src.publisher.exceptions import AppError
from src.publisher.logging import configure_logging
from src.publisher.media import MediaInspector, MediaPrepEngine, MediaTranscoder, validate_media
from src.publisher.media.types import detect_media_type


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check media against platform requirements.")
    parser.add_argument("file", type=Path, help="Local media file.")
    parser.add_argument("--platform", required=True, choices=("instagram", "youtube"))
    parser.add_argument("--upload-type", default=None, help="reels, image, carousel, shorts or standard.")
    parser.add_argument("--convert", action="store_true", help="Transcode when the file does not conform.")
    parser.add_argument("--strict", action="store_true", help="Fail instead of converting.")
    parser.add_argument("--output-dir", type=Path, default=None, help="Work root for converted files.")
    return parser.parse_args(argv)


def build_engine(settings: PublisherSettings, work_root: Path) -> MediaPrepEngine:
    return MediaPrepEngine(
        MediaInspector(ffprobe_binary=settings.ffprobe_binary, timeout_seconds=settings.probe_timeout_seconds),
        MediaTranscoder(ffmpeg_binary=settings.ffmpeg_binary, timeout_seconds=settings.transcode_timeout_seconds),
        work_root,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = PublisherSettings()
    configure_logging(settings.log_level)
    engine = build_engine(settings, args.output_dir or args.file.parent)

    media_type = detect_media_type(args.file)
    try:
        requirements = engine.registry.resolve(args.platform, media_type, args.upload_type)
        if args.convert or args.strict:
            result = engine.prepare(
                args.file,
                requirements,
                args.platform,
                enforce_constraints=args.strict,
                media_type=media_type,
            )
            payload = result.to_payload()
        else:
            info = MediaInspector(
                ffprobe_binary=settings.ffprobe_binary,
                timeout_seconds=settings.probe_timeout_seconds,
            ).inspect(args.file, media_type)
            verdict = validate_media(info, requirements)
            payload = {"media": info.to_dict(), **verdict.to_dict()}
    except AppError as exc:
        print(f"prep failed: {exc}", file=sys.stderr)
        return 2

    print(json.dumps(payload, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
