"""Staging of report files through S3."""

from __future__ import annotations

import logging
from pathlib import Path
import tempfile
from typing import Any
from urllib.parse import urlparse

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from .errors import BackendError, ConfigError

logger = logging.getLogger("index_violation.storage")

S3_PREFIX = "s3://"


def is_s3_path(path: str | None) -> bool:
    return bool(path) and str(path).startswith(S3_PREFIX)


def split_s3_path(path: str) -> tuple[str, str]:
    parsed = urlparse(path)
    bucket = parsed.netloc
    key = parsed.path.lstrip("/")
    if parsed.scheme != "s3" or not bucket or not key:
        raise ConfigError("S3_PATH_INVALID", path)
    return bucket, key


def staging_path(name: str) -> Path:
    root = Path(tempfile.gettempdir()) / "index_violation"
    root.mkdir(parents=True, exist_ok=True)
    return root / name


class S3Transfer:
    def __init__(self, client: Any | None = None, *, region: str | None = None, profile: str | None = None) -> None:
        if client is None:
            try:
                client = boto3.Session(profile_name=profile, region_name=region).client("s3")
            except ProfileNotFound as exc:
                raise BackendError("CREDENTIALS_INVALID", str(exc)[:256]) from exc
        self._client = client

    def download(self, s3_path: str, local_path: Path) -> Path:
        bucket, key = split_s3_path(s3_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._client.download_file(bucket, key, str(local_path))
        except (ClientError, BotoCoreError) as exc:
            raise BackendError("S3_DOWNLOAD_FAILED", f"failed to download {s3_path}, please check the path") from exc
        logger.info("Downloaded %s to %s", s3_path, local_path)
        return local_path

    def upload(self, local_path: Path, s3_path: str) -> str:
        bucket, key = split_s3_path(s3_path)
        try:
            self._client.upload_file(str(local_path), bucket, key)
        except (ClientError, BotoCoreError, S3UploadFailedError) as exc:
            raise BackendError(
                "S3_UPLOAD_FAILED",
                f"failed to put output file into {s3_path}; temporary output file is at {local_path}",
            ) from exc
        logger.info("Uploaded %s to %s", local_path, s3_path)
        return f"s3://{bucket}/{key}"
