"""Event names emitted on traces and spans."""

from __future__ import annotations

from enum import Enum


class EventName(str, Enum):
    PUBLISH_REQUEST_RECEIVED = "publish.request.received"
    PUBLISH_REQUEST_VALIDATED = "publish.request.validated"
    PUBLISH_REQUEST_QUEUED = "publish.request.queued"

    MEDIA_DOWNLOADED = "media.downloaded"

    PLATFORM_VALIDATION_STARTED = "platform.validation.started"
    PLATFORM_VALIDATION_SKIPPED = "platform.validation.skipped"
    PLATFORM_VALIDATION_COMPLETED = "platform.validation.completed"
    PLATFORM_VALIDATION_FAILED = "platform.validation.failed"

    PLATFORM_STARTED = "platform.started"
    PLATFORM_FINISHED = "platform.finished"

    PREP_STARTED = "prep.started"
    PREP_DONE = "prep.done"
    PREP_FAILED = "prep.failed"
    PREP_SKIPPED = "prep.skipped"

    UPLOAD_STARTED = "upload.started"
    UPLOAD_RETRY = "upload.retry"
    UPLOAD_DONE = "upload.done"
    UPLOAD_FAILED = "upload.failed"

    PUBLISH_STARTED = "publish.started"
    PUBLISH_DONE = "publish.done"
    PUBLISH_FAILED = "publish.failed"



class StepName(str, Enum):
    PREP = "prep"
    UPLOAD = "upload"
    PUBLISH = "publish"


__all__ = ["EventName", "StepName"]
