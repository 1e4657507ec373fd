from __future__ import annotations

import unittest
import uuid
from datetime import timedelta

from botocore.exceptions import ClientError, EndpointConnectionError

from app.errors import UpstreamUnavailable
from app.models import AutomatedIdVerificationResult
from app.services.facial_verification import (
    CheckinVerificationImages,
    FaceComparer,
    SnapshotComparison,
    aggregate_comparisons,
    build_rekognition_caller,
    is_retryable_rekognition_error,
)
from app.services.resilience import ResilientCaller
from app.services.storage import ObjectStorage, S3ObjectCoordinate
from app.settings import Settings


def _client_error(code: str, status_code: int | None = None) -> ClientError:
    response: dict = {"Error": {"Code": code, "Message": code}}
    if status_code is not None:
        response["ResponseMetadata"] = {"HTTPStatusCode": status_code}
    return ClientError(response, "Operation")


def _rekognition_caller(**overrides) -> ResilientCaller:  # type: ignore[no-untyped-def]
    values = {
        "external_retry_attempts": 2,
        "external_retry_wait_seconds": 0.0,
        "external_retry_max_wait_seconds": 0.0,
        "circuit_breaker_fail_max": 5,
    }
    values.update(overrides)
    return build_rekognition_caller(Settings(**values))


class _FakeRekognition:
    """Answers per target key; a list is consumed one item per call."""

    def __init__(self, responses: dict[str, object]):
        self._responses = responses
        self.calls: list[str] = []

    def compare_faces(self, *, SourceImage, TargetImage, SimilarityThreshold):  # type: ignore[no-untyped-def]
        key = TargetImage["S3Object"]["Name"]
        self.calls.append(key)
        response = self._responses[key]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class _FakeS3:
    def __init__(self, existing: set[str], *, failing_code: str | None = None):
        self._existing = existing
        self._failing_code = failing_code
        self.presign_calls: list[tuple[str, dict[str, str], int]] = []

    def head_object(self, *, Bucket, Key):  # type: ignore[no-untyped-def]
        if self._failing_code:
            raise _client_error(self._failing_code)
        if Key not in self._existing:
            raise _client_error("404")
        return {}

    def generate_presigned_url(self, method, *, Params, ExpiresIn):  # type: ignore[no-untyped-def]
        self.presign_calls.append((method, Params, ExpiresIn))
        return f"https://s3.local/{Params['Bucket']}/{Params['Key']}?method={method}"


class AggregateComparisonTests(unittest.TestCase):
    def test_any_match_wins(self) -> None:
        comparisons = [
            SnapshotComparison(0, AutomatedIdVerificationResult.ERROR),
            SnapshotComparison(1, AutomatedIdVerificationResult.MATCH, 97.0),
        ]
        self.assertEqual(aggregate_comparisons(comparisons), AutomatedIdVerificationResult.MATCH)

    def test_all_no_face_detected(self) -> None:
        comparisons = [
            SnapshotComparison(0, AutomatedIdVerificationResult.NO_FACE_DETECTED),
            SnapshotComparison(1, AutomatedIdVerificationResult.NO_FACE_DETECTED),
        ]
        self.assertEqual(aggregate_comparisons(comparisons), AutomatedIdVerificationResult.NO_FACE_DETECTED)

    def test_error_beats_no_match(self) -> None:
        comparisons = [
            SnapshotComparison(0, AutomatedIdVerificationResult.NO_MATCH),
            SnapshotComparison(1, AutomatedIdVerificationResult.ERROR),
        ]
        self.assertEqual(aggregate_comparisons(comparisons), AutomatedIdVerificationResult.ERROR)

    def test_empty_is_no_match(self) -> None:
        self.assertEqual(aggregate_comparisons([]), AutomatedIdVerificationResult.NO_MATCH)


class FaceComparerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.reference = S3ObjectCoordinate("images", "setup-1")
        self.snapshots = [S3ObjectCoordinate("videos", "checkin-1/0"), S3ObjectCoordinate("videos", "checkin-1/1")]

    def _verify(
        self,
        responses: dict[str, object],
        threshold: float = 90.0,
        *,
        rekognition: _FakeRekognition | None = None,
        caller: ResilientCaller | None = None,
        max_workers: int = 2,
    ) -> AutomatedIdVerificationResult:
        rekognition = rekognition or _FakeRekognition(responses)
        comparer = FaceComparer(rekognition, caller or _rekognition_caller(), max_workers=max_workers)
        try:
            images = CheckinVerificationImages(reference=self.reference, snapshots=self.snapshots)
            return comparer.verify_checkin_images(images, threshold).result(timeout=5)
        finally:
            comparer.close()

    def test_match_above_threshold(self) -> None:
        result = self._verify(
            {
                "checkin-1/0": {"FaceMatches": [{"Similarity": 42.0}]},
                "checkin-1/1": {"FaceMatches": [{"Similarity": 95.5}], "UnmatchedFaces": []},
            }
        )
        self.assertEqual(result, AutomatedIdVerificationResult.MATCH)

    def test_similarity_below_threshold_is_no_match(self) -> None:
        result = self._verify(
            {
                "checkin-1/0": {"FaceMatches": [{"Similarity": 80.0}]},
                "checkin-1/1": {"FaceMatches": []},
            }
        )
        self.assertEqual(result, AutomatedIdVerificationResult.NO_MATCH)

    def test_invalid_parameter_means_no_face(self) -> None:
        result = self._verify(
            {
                "checkin-1/0": _client_error("InvalidParameterException"),
                "checkin-1/1": _client_error("InvalidParameterException"),
            }
        )
        self.assertEqual(result, AutomatedIdVerificationResult.NO_FACE_DETECTED)

    def test_provider_error_is_reported(self) -> None:
        result = self._verify(
            {
                "checkin-1/0": _client_error("AccessDeniedException"),
                "checkin-1/1": {"FaceMatches": []},
            }
        )
        self.assertEqual(result, AutomatedIdVerificationResult.ERROR)

    def test_throttled_comparison_is_retried(self) -> None:
        rekognition = _FakeRekognition(
            {
                "checkin-1/0": [_client_error("ThrottlingException"), {"FaceMatches": [{"Similarity": 99.0}]}],
                "checkin-1/1": {"FaceMatches": []},
            }
        )
        result = self._verify({}, rekognition=rekognition)

        self.assertEqual(result, AutomatedIdVerificationResult.MATCH)
        self.assertEqual(rekognition.calls.count("checkin-1/0"), 2)
        self.assertEqual(rekognition.calls.count("checkin-1/1"), 1)

    def test_persistent_throttling_is_an_error_after_retries(self) -> None:
        rekognition = _FakeRekognition(
            {
                "checkin-1/0": _client_error("ThrottlingException"),
                "checkin-1/1": _client_error("ThrottlingException"),
            }
        )
        result = self._verify({}, rekognition=rekognition, caller=_rekognition_caller(external_retry_attempts=3))

        self.assertEqual(result, AutomatedIdVerificationResult.ERROR)
        self.assertEqual(len(rekognition.calls), 6)

    def test_open_breaker_skips_remaining_comparisons(self) -> None:
        rekognition = _FakeRekognition(
            {
                "checkin-1/0": _client_error("AccessDeniedException"),
                "checkin-1/1": {"FaceMatches": [{"Similarity": 99.0}]},
            }
        )
        caller = _rekognition_caller(circuit_breaker_fail_max=1)
        result = self._verify({}, rekognition=rekognition, caller=caller, max_workers=1)

        self.assertEqual(result, AutomatedIdVerificationResult.ERROR)
        self.assertEqual(rekognition.calls, ["checkin-1/0"])
        self.assertEqual(caller.breaker.current_state, "open")

    def test_no_face_does_not_count_against_breaker(self) -> None:
        rekognition = _FakeRekognition(
            {
                "checkin-1/0": _client_error("InvalidParameterException"),
                "checkin-1/1": _client_error("InvalidParameterException"),
            }
        )
        caller = _rekognition_caller(circuit_breaker_fail_max=1)
        result = self._verify({}, rekognition=rekognition, caller=caller, max_workers=1)

        self.assertEqual(result, AutomatedIdVerificationResult.NO_FACE_DETECTED)
        self.assertEqual(rekognition.calls, ["checkin-1/0", "checkin-1/1"])
        self.assertEqual(caller.breaker.current_state, "closed")

    def test_retryable_error_classification(self) -> None:
        self.assertTrue(is_retryable_rekognition_error(_client_error("ThrottlingException")))
        self.assertTrue(is_retryable_rekognition_error(_client_error("SomethingOdd", status_code=503)))
        self.assertTrue(is_retryable_rekognition_error(EndpointConnectionError(endpoint_url="https://rekognition")))
        self.assertFalse(is_retryable_rekognition_error(_client_error("AccessDeniedException", status_code=400)))
        self.assertFalse(is_retryable_rekognition_error(_client_error("InvalidParameterException")))

    def test_no_snapshots_resolves_immediately(self) -> None:
        rekognition = _FakeRekognition({})
        comparer = FaceComparer(rekognition, _rekognition_caller())
        try:
            future = comparer.verify_checkin_images(CheckinVerificationImages(self.reference, []), 90.0)
            self.assertEqual(future.result(timeout=1), AutomatedIdVerificationResult.NO_MATCH)
            self.assertEqual(rekognition.calls, [])
        finally:
            comparer.close()


class ObjectStorageTests(unittest.TestCase):
    def test_keys_and_existence(self) -> None:
        checkin_uuid = uuid.UUID("11111111-1111-1111-1111-111111111111")
        offender_uuid = uuid.UUID("22222222-2222-2222-2222-222222222222")
        s3 = _FakeS3({f"checkin-{checkin_uuid}/video"})
        storage = ObjectStorage(s3, image_bucket="images", video_bucket="videos")

        self.assertEqual(storage.setup_photo(offender_uuid), S3ObjectCoordinate("images", f"setup-{offender_uuid}"))
        self.assertEqual(storage.checkin_snapshot(checkin_uuid, 2).key, f"checkin-{checkin_uuid}/2")
        self.assertTrue(storage.is_checkin_video_uploaded(checkin_uuid))
        self.assertFalse(storage.is_setup_photo_uploaded(offender_uuid))

    def test_presigned_put_carries_content_type_and_ttl(self) -> None:
        s3 = _FakeS3(set())
        storage = ObjectStorage(s3, image_bucket="images", video_bucket="videos")
        coordinate = S3ObjectCoordinate("videos", "checkin-x/video")

        url = storage.presigned_put_url(coordinate, "video/mp4", timedelta(minutes=10))

        self.assertIn("method=put_object", url)
        method, params, expires = s3.presign_calls[0]
        self.assertEqual(method, "put_object")
        self.assertEqual(params["ContentType"], "video/mp4")
        self.assertEqual(expires, 600)

    def test_unexpected_head_error_is_upstream_failure(self) -> None:
        storage = ObjectStorage(_FakeS3(set(), failing_code="AccessDenied"), image_bucket="i", video_bucket="v")
        with self.assertRaises(UpstreamUnavailable):
            storage.exists(S3ObjectCoordinate("v", "k"))


if __name__ == "__main__":
    unittest.main()
