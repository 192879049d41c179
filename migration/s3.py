"""
S3 Helpers

URI building and parsing for outbound exports, plus boto3 client creation and
single-file upload.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import boto3

from migration.errors import ExportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class S3Location:
    bucket: str
    key: str


def combine_uri(*segments: str) -> str:
    """
    Join URI segments with exactly one slash between them.

    Example:
        combine_uri("s3://bucket/feeds/", "/outbound", "7") -> "s3://bucket/feeds/outbound/7"
    """
    result = ""
    for segment in segments:
        part = str(segment)
        if not part:
            continue
        if result:
            result = result.rstrip("/") + "/" + part.lstrip("/")
        else:
            result = part
    return result if result.endswith("://") else result.rstrip("/")


def parse_s3_uri(uri: str) -> S3Location:
    """
    Split ``s3://bucket/key`` into its bucket and key.

    Raises:
        ExportError: If the URI has no bucket or no key
    """
    if not uri.startswith("s3://"):
        raise ExportError(f"Invalid S3 URI '{uri}': expected s3://bucket/key")
    stripped = uri[len("s3://"):]
    bucket, _, key = stripped.partition("/")
    if not bucket or not key:
        raise ExportError(f"Invalid S3 URI '{uri}': expected s3://bucket/key")
    return S3Location(bucket=bucket, key=key)


def create_s3_client(settings: Any) -> Any:
    """
    Create a boto3 S3 client, honoring the optional AWS_PROFILE and AWS_REGION settings.
    """
    session_kwargs = {}
    if getattr(settings, "AWS_PROFILE", None):
        session_kwargs["profile_name"] = settings.AWS_PROFILE
    if getattr(settings, "AWS_REGION", None):
        session_kwargs["region_name"] = settings.AWS_REGION
    session = boto3.session.Session(**session_kwargs)
    return session.client("s3")


def upload_file(s3_client: Any, local_path: Union[str, Path], uri: str) -> None:
    """
    Upload one local file to an S3 URI.

    Raises:
        ExportError: If the URI is invalid or the upload fails
    """
    location = parse_s3_uri(uri)
    started = time.monotonic()
    logger.debug(f"Uploading {local_path} to {uri}")
    try:
        s3_client.upload_file(str(local_path), location.bucket, location.key)
    except Exception as e:
        raise ExportError(f"Error uploading file {local_path} to {uri}: {e}") from e
    logger.debug(f"Uploaded {Path(local_path).name} in {time.monotonic() - started:.2f} seconds")
