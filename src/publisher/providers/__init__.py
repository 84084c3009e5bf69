"""Vendor clients for the supported social platforms."""

from .base import PlatformClient, UploadHandle, UploadMetadata, VendorResource, VerifyResult
from .factory import create_client, create_clients
from .retry import RetryPolicy, call_with_retries, is_retriable_error

__all__ = [
    "PlatformClient",
    "RetryPolicy",
    "UploadHandle",
    "UploadMetadata",
    "VendorResource",
    "VerifyResult",
    "call_with_retries",
    "create_client",
    "create_clients",
    "is_retriable_error",
]
