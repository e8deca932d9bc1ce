from __future__ import annotations

from dataclasses import dataclass

import boto3


@dataclass
class S3Location:
    """Bucket plus key prefix artifacts are stored under."""

    bucket: str
    prefix: str

    def key_for(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def uri_for(self, name: str) -> str:
        return f"s3://{self.bucket}/{self.key_for(name)}"


def parse_s3_uri(uri: str | None) -> S3Location | None:
    if not uri:
        return None
    scheme, sep, rest = uri.partition("://")
    if scheme != "s3" or not sep:
        raise ValueError(f"S3 URI must start with s3://, got {uri}")
    bucket, _, prefix = rest.partition("/")
    if not bucket:
        raise ValueError(f"S3 URI has no bucket: {uri}")
    return S3Location(bucket=bucket, prefix=prefix.strip("/"))


def split_object_uri(uri: str) -> tuple[S3Location, str]:
    """s3://bucket/a/b/file.cr -> (S3Location(bucket, "a/b"), "file.cr")"""
    loc = parse_s3_uri(uri)
    if loc is None or not loc.prefix:
        raise ValueError(f"S3 URI does not name an object: {uri}")
    prefix, _, name = loc.prefix.rpartition("/")
    return S3Location(bucket=loc.bucket, prefix=prefix), name


def get_s3_client():
    # credentials come from boto3's default chain
    return boto3.client("s3")


def upload_file(s3, loc: S3Location, local_path: str, dest_name: str) -> str:
    s3.upload_file(local_path, loc.bucket, loc.key_for(dest_name))
    return loc.uri_for(dest_name)


def download_file(s3, loc: S3Location, key_name: str, local_path: str) -> str:
    s3.download_file(loc.bucket, loc.key_for(key_name), local_path)
    return local_path
