from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.errors import UpstreamUnavailable
from app.logging_utils import sanitize_exception
from app.settings import Settings

logger = logging.getLogger("app.storage")


@dataclass(frozen=True, slots=True)
class S3ObjectCoordinate:
    bucket: str
    key: str


def setup_photo_key(offender_uuid: uuid.UUID) -> str:
    return f"setup-{offender_uuid}"


def checkin_video_key(checkin_uuid: uuid.UUID) -> str:
    return f"checkin-{checkin_uuid}/video"


def checkin_snapshot_key(checkin_uuid: uuid.UUID, index: int) -> str:
    return f"checkin-{checkin_uuid}/{index}"


class ObjectStorage:
    def __init__(self, s3_client: Any, *, image_bucket: str, video_bucket: str):
        self.s3_client = s3_client
        self.image_bucket = image_bucket
        self.video_bucket = video_bucket

    def setup_photo(self, offender_uuid: uuid.UUID) -> S3ObjectCoordinate:
        return S3ObjectCoordinate(self.image_bucket, setup_photo_key(offender_uuid))

    def checkin_video(self, checkin_uuid: uuid.UUID) -> S3ObjectCoordinate:
        return S3ObjectCoordinate(self.video_bucket, checkin_video_key(checkin_uuid))

    def checkin_snapshot(self, checkin_uuid: uuid.UUID, index: int) -> S3ObjectCoordinate:
        return S3ObjectCoordinate(self.video_bucket, checkin_snapshot_key(checkin_uuid, index))

    def exists(self, coordinate: S3ObjectCoordinate) -> bool:
        try:
            self.s3_client.head_object(Bucket=coordinate.bucket, Key=coordinate.key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return False
            logger.warning(
                "object_storage_head_failed",
                extra={"bucket": coordinate.bucket, "key": coordinate.key, "error": sanitize_exception(exc)},
            )
            raise UpstreamUnavailable("object-storage", "Object storage request failed") from exc
        except BotoCoreError as exc:
            logger.warning(
                "object_storage_head_failed",
                extra={"bucket": coordinate.bucket, "key": coordinate.key, "error": sanitize_exception(exc)},
            )
            raise UpstreamUnavailable("object-storage", "Object storage request failed") from exc
        return True

    def presigned_get_url(self, coordinate: S3ObjectCoordinate, ttl: timedelta) -> str:
        return self.s3_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": coordinate.bucket, "Key": coordinate.key},
            ExpiresIn=int(ttl.total_seconds()),
        )

    def presigned_put_url(self, coordinate: S3ObjectCoordinate, content_type: str, ttl: timedelta) -> str:
        return self.s3_client.generate_presigned_url(
            "put_object",
            Params={"Bucket": coordinate.bucket, "Key": coordinate.key, "ContentType": content_type},
            ExpiresIn=int(ttl.total_seconds()),
        )

    def is_setup_photo_uploaded(self, offender_uuid: uuid.UUID) -> bool:
        return self.exists(self.setup_photo(offender_uuid))

    def is_checkin_video_uploaded(self, checkin_uuid: uuid.UUID) -> bool:
        return self.exists(self.checkin_video(checkin_uuid))

    def is_checkin_snapshot_uploaded(self, checkin_uuid: uuid.UUID, index: int) -> bool:
        return self.exists(self.checkin_snapshot(checkin_uuid, index))


def build_aws_client(service_name: str, settings: Settings) -> Any:
    return boto3.client(
        service_name,
        region_name=settings.aws_region,
        endpoint_url=settings.aws_endpoint_url or None,
    )
