"""Unit tests for the S3 helpers."""

from types import SimpleNamespace

import pytest

from fakes import FakeS3Client
from migration.errors import ExportError
from migration.s3 import combine_uri, create_s3_client, parse_s3_uri, upload_file


@pytest.mark.parametrize("segments,expected", [
    (("s3://bucket/feeds/", "/outbound", "7"), "s3://bucket/feeds/outbound/7"),
    (("s3://bucket", "", "BadRows.txt"), "s3://bucket/BadRows.txt"),
    (("s3://bucket/acme", "outbound/"), "s3://bucket/acme/outbound"),
])
def test_combine_uri(segments: tuple, expected: str) -> None:
    """Segments are joined with exactly one slash."""
    assert combine_uri(*segments) == expected


def test_parse_s3_uri() -> None:
    """S3 URIs split into bucket and key; malformed ones raise ExportError."""
    location = parse_s3_uri("s3://partner-feeds/acme/outbound/BadRows.txt")

    assert (location.bucket, location.key) == ("partner-feeds", "acme/outbound/BadRows.txt")
    for bad in ("https://example.com/file", "s3://bucket-only", "s3:///key"):
        with pytest.raises(ExportError):
            parse_s3_uri(bad)


def test_upload_file_wraps_client_errors(tmp_path) -> None:
    """Client failures surface as ExportError."""
    path = tmp_path / "BadRows.txt"
    path.write_text("header\n", encoding="utf-8")

    upload_file(FakeS3Client(), path, "s3://bucket/key.txt")
    with pytest.raises(ExportError, match="Error uploading file"):
        upload_file(FakeS3Client(error=OSError("denied")), path, "s3://bucket/key.txt")


def test_create_s3_client_uses_configured_region() -> None:
    """The client is created in the configured region."""
    client = create_s3_client(SimpleNamespace(AWS_PROFILE=None, AWS_REGION="eu-west-1"))

    assert client.meta.region_name == "eu-west-1"
