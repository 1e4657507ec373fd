from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from app.errors import UpstreamUnavailable
from app.logging_utils import sanitize_exception
from app.models import AutomatedIdVerificationResult
from app.services.resilience import ResilientCaller, build_circuit_breaker, build_retrying
from app.services.storage import S3ObjectCoordinate
from app.settings import Settings

logger = logging.getLogger("app.facial_verification")

NO_FACE_ERROR_CODE = "InvalidParameterException"
RETRYABLE_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "ProvisionedThroughputExceededException",
        "InternalServerError",
        "ServiceUnavailableException",
    }
)


@dataclass(frozen=True, slots=True)
class CheckinVerificationImages:
    reference: S3ObjectCoordinate
    snapshots: list[S3ObjectCoordinate]


@dataclass(frozen=True, slots=True)
class SnapshotComparison:
    index: int
    result: AutomatedIdVerificationResult
    top_similarity: float | None = None


def aggregate_comparisons(comparisons: list[SnapshotComparison]) -> AutomatedIdVerificationResult:
    if not comparisons:
        return AutomatedIdVerificationResult.NO_MATCH
    results = [item.result for item in comparisons]
    if AutomatedIdVerificationResult.MATCH in results:
        return AutomatedIdVerificationResult.MATCH
    if all(result == AutomatedIdVerificationResult.NO_FACE_DETECTED for result in results):
        return AutomatedIdVerificationResult.NO_FACE_DETECTED
    if AutomatedIdVerificationResult.ERROR in results:
        return AutomatedIdVerificationResult.ERROR
    return AutomatedIdVerificationResult.NO_MATCH


def _s3_image(coordinate: S3ObjectCoordinate) -> dict[str, Any]:
    return {"S3Object": {"Bucket": coordinate.bucket, "Name": coordinate.key}}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def is_retryable_rekognition_error(exc: BaseException) -> bool:
    if isinstance(exc, ClientError):
        status_code = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
        return _error_code(exc) in RETRYABLE_ERROR_CODES or status_code >= 500
    return isinstance(exc, (BotoConnectionError, HTTPClientError))


def build_rekognition_caller(settings: Settings) -> ResilientCaller:
    return ResilientCaller(
        service="rekognition",
        breaker=build_circuit_breaker("rekognition", settings),
        retrying=build_retrying(settings, retry_on=is_retryable_rekognition_error),
        failure_types=(ClientError, BotoCoreError),
    )


class FaceComparer:
    """Compares check-in snapshots against the setup photo with Rekognition ``compare_faces``.

    Snapshots are compared concurrently; the returned future resolves to the aggregated result.
    Every call goes through ``caller``, so throttling and 5xx errors are retried and repeated
    failures open the breaker. A snapshot without a face is an answer, not a provider failure.
    """

    def __init__(self, rekognition_client: Any, caller: ResilientCaller, *, max_workers: int = 4):
        self.rekognition_client = rekognition_client
        self.caller = caller
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="face-compare")

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def verify_checkin_images(
        self,
        images: CheckinVerificationImages,
        threshold: float,
    ) -> Future[AutomatedIdVerificationResult]:
        if not images.snapshots:
            logger.warning("facial_verification_no_snapshots", extra={"reference": images.reference.key})
            done: Future[AutomatedIdVerificationResult] = Future()
            done.set_result(AutomatedIdVerificationResult.NO_MATCH)
            return done

        logger.info(
            "facial_verification_started",
            extra={
                "reference": images.reference.key,
                "snapshot_count": len(images.snapshots),
                "threshold": threshold,
            },
        )
        futures = [
            self._executor.submit(self._compare, images.reference, snapshot, threshold, index)
            for index, snapshot in enumerate(images.snapshots)
        ]
        combined: Future[AutomatedIdVerificationResult] = Future()
        remaining = [len(futures)]
        lock = threading.Lock()

        def _on_done(_: Future[SnapshotComparison]) -> None:
            with lock:
                remaining[0] -= 1
                if remaining[0]:
                    return
            try:
                combined.set_result(self._collect(futures))
            except Exception as exc:
                combined.set_exception(exc)

        for future in futures:
            future.add_done_callback(_on_done)
        return combined

    def _collect(self, futures: list[Future[SnapshotComparison]]) -> AutomatedIdVerificationResult:
        comparisons = [future.result() for future in futures]
        result = aggregate_comparisons(comparisons)
        similarities = [item.top_similarity for item in comparisons if item.top_similarity is not None]
        logger.info(
            "facial_verification_completed",
            extra={
                "result": result.value,
                "top_similarity": max(similarities) if similarities else None,
            },
        )
        return result

    def _compare_faces(
        self,
        reference: S3ObjectCoordinate,
        snapshot: S3ObjectCoordinate,
        threshold: float,
    ) -> dict[str, Any] | None:
        try:
            return self.rekognition_client.compare_faces(
                SourceImage=_s3_image(reference),
                TargetImage=_s3_image(snapshot),
                SimilarityThreshold=threshold,
            )
        except ClientError as exc:
            if _error_code(exc) == NO_FACE_ERROR_CODE:
                return None
            raise

    def _compare(
        self,
        reference: S3ObjectCoordinate,
        snapshot: S3ObjectCoordinate,
        threshold: float,
        index: int,
    ) -> SnapshotComparison:
        try:
            response = self.caller.call(self._compare_faces, reference, snapshot, threshold)
        except UpstreamUnavailable as exc:
            logger.error(
                "facial_verification_provider_error",
                extra={"index": index, "snapshot": snapshot.key, "error": sanitize_exception(exc)},
            )
            return SnapshotComparison(index=index, result=AutomatedIdVerificationResult.ERROR)
        if response is None:
            logger.warning(
                "facial_verification_no_face_detected",
                extra={"index": index, "snapshot": snapshot.key},
            )
            return SnapshotComparison(index=index, result=AutomatedIdVerificationResult.NO_FACE_DETECTED)

        matches = [
            float(match.get("Similarity") or 0.0)
            for match in response.get("FaceMatches") or []
        ]
        top_similarity = max(matches) if matches else None
        is_match = top_similarity is not None and top_similarity >= threshold
        logger.info(
            "facial_verification_snapshot_compared",
            extra={
                "index": index,
                "is_match": is_match,
                "face_matches": len(matches),
                "unmatched_faces": len(response.get("UnmatchedFaces") or []),
                "top_similarity": top_similarity,
            },
        )
        return SnapshotComparison(
            index=index,
            result=AutomatedIdVerificationResult.MATCH if is_match else AutomatedIdVerificationResult.NO_MATCH,
            top_similarity=top_similarity,
        )
