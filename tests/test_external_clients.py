from __future__ import annotations

import json
import unittest
import uuid
from datetime import date

import httpx
from jose import jwt

from app.errors import UpstreamUnavailable
from app.services.case_directory import (
    MAX_BATCH_SIZE,
    CaseDirectoryClient,
    PersonalDetails,
    PersonName,
    chunked,
)
from app.services.notify_gateway import (
    EmailRecipient,
    NotifyGateway,
    SmsRecipient,
    build_notify_token,
    split_api_key,
)
from app.services.resilience import RateLimiter, ResilientCaller, build_circuit_breaker, build_retrying
from app.settings import Settings

SERVICE_ID = "26785a09-ab16-4eb0-8407-a37497a57506"
SECRET = "3d844edf-8d35-48ac-975b-e847b4f122b0"
API_KEY = f"test_key-{SERVICE_ID}-{SECRET}"


def _settings(**overrides) -> Settings:  # type: ignore[no-untyped-def]
    values = {
        "external_retry_attempts": 2,
        "external_retry_wait_seconds": 0.0,
        "external_retry_max_wait_seconds": 0.0,
        "circuit_breaker_fail_max": 5,
    }
    values.update(overrides)
    return Settings(**values)


def _caller(service: str, settings: Settings | None = None) -> ResilientCaller:
    settings = settings or _settings()
    return ResilientCaller(
        service=service,
        breaker=build_circuit_breaker(f"{service}-{uuid.uuid4()}", settings),
        retrying=build_retrying(settings),
    )


def _contact_payload(crn: str) -> dict[str, object]:
    return {
        "crn": crn,
        "name": {"forename": "Ada", "surname": "Lovelace"},
        "mobile": "07700900000",
        "email": "ada@example.com",
        "practitioner": {
            "name": {"forename": "Pat", "surname": "Smith"},
            "email": "pat@example.com",
            "localAdminUnit": {"code": "LAU1", "description": "North"},
            "probationDeliveryUnit": {"code": "PDU1"},
            "provider": {"code": "N07", "description": "London"},
        },
    }


class CaseDirectoryClientTests(unittest.TestCase):
    def _client(self, handler) -> CaseDirectoryClient:  # type: ignore[no-untyped-def]
        http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://cases.local")
        return CaseDirectoryClient(http_client, _caller("case-directory"))

    def test_get_contact_details_parses_practitioner_units(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/case/X123456")
            return httpx.Response(200, json=_contact_payload("X123456"))

        details = self._client(handler).get_contact_details("X123456")

        self.assertIsNotNone(details)
        assert details is not None
        self.assertEqual(details.name.full_name, "Ada Lovelace")
        self.assertEqual(details.mobile, "07700900000")
        assert details.practitioner is not None
        self.assertEqual(details.practitioner.local_admin_unit.code, "LAU1")  # type: ignore[union-attr]
        self.assertIsNone(details.practitioner.probation_delivery_unit.description)  # type: ignore[union-attr]

    def test_get_contact_details_not_found_returns_none(self) -> None:
        client = self._client(lambda request: httpx.Response(404))
        self.assertIsNone(client.get_contact_details("X000000"))

    def test_server_errors_are_retried_then_surface_as_upstream_unavailable(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(502)

        with self.assertRaises(UpstreamUnavailable):
            self._client(handler).get_contact_details("X123456")
        self.assertEqual(len(calls), 2)

    def test_transient_failure_recovers_on_retry(self) -> None:
        responses = [httpx.Response(503), httpx.Response(200, json=_contact_payload("X123456"))]
        client = self._client(lambda request: responses.pop(0))
        details = client.get_contact_details("X123456")
        self.assertEqual(details.crn, "X123456")  # type: ignore[union-attr]

    def test_non_json_success_body_surfaces_as_upstream_unavailable(self) -> None:
        client = self._client(lambda request: httpx.Response(200, text="<html>gateway</html>"))
        with self.assertRaises(UpstreamUnavailable):
            client.get_contact_details_for_many(["X123456"])
        with self.assertRaises(UpstreamUnavailable):
            client.get_contact_details("X123456")

    def test_batch_lookup_truncates_and_skips_unparseable_items(self) -> None:
        seen_sizes: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            crns = json.loads(request.content)
            seen_sizes.append(len(crns))
            return httpx.Response(200, json=[_contact_payload(crns[0]), {"name": {}}])

        crns = [f"X{index:06d}" for index in range(MAX_BATCH_SIZE + 10)]
        results = self._client(handler).get_contact_details_for_many(crns)

        self.assertEqual(seen_sizes, [MAX_BATCH_SIZE])
        self.assertEqual([item.crn for item in results], ["X000000"])

    def test_batch_lookup_with_no_crns_does_not_call(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        self.assertEqual(self._client(handler).get_contact_details_for_many([]), [])

    def test_validate_personal_details(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["name"]["surname"] == "Lovelace" and body["dateOfBirth"] == "1990-12-10":
                return httpx.Response(200, json={})
            return httpx.Response(400)

        client = self._client(handler)
        good = PersonalDetails("X123456", PersonName("Ada", "Lovelace"), date(1990, 12, 10))
        bad = PersonalDetails("X123456", PersonName("Ada", "Byron"), date(1990, 12, 10))
        self.assertTrue(client.validate_personal_details(good))
        self.assertFalse(client.validate_personal_details(bad))

    def test_open_breaker_rejects_calls(self) -> None:
        settings = _settings(external_retry_attempts=1, circuit_breaker_fail_max=1)
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(500)

        http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://cases.local")
        client = CaseDirectoryClient(http_client, _caller("case-directory", settings))
        with self.assertRaises(UpstreamUnavailable):
            client.get_contact_details("X123456")
        with self.assertRaises(UpstreamUnavailable):
            client.get_contact_details("X123456")
        self.assertEqual(len(calls), 1)

    def test_chunked(self) -> None:
        self.assertEqual(list(chunked([1, 2, 3, 4, 5], 2)), [[1, 2], [3, 4], [5]])
        with self.assertRaises(ValueError):
            list(chunked([1], 0))


class NotifyGatewayTests(unittest.TestCase):
    def _gateway(self, handler) -> NotifyGateway:  # type: ignore[no-untyped-def]
        http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://notify.local")
        return NotifyGateway(
            http_client,
            api_key=API_KEY,
            rate_limiter=RateLimiter(calls=1000, period_seconds=60),
            caller=_caller("notify"),
        )

    def test_split_api_key_and_token(self) -> None:
        self.assertEqual(split_api_key(API_KEY), (SERVICE_ID, SECRET))
        token = build_notify_token(API_KEY, issued_at=1700000000)
        claims = jwt.decode(token, SECRET, algorithms=["HS256"])
        self.assertEqual(claims, {"iss": SERVICE_ID, "iat": 1700000000})
        with self.assertRaises(ValueError):
            split_api_key("short")

    def test_send_sms_and_email_use_channel_paths(self) -> None:
        requests: list[tuple[str, dict[str, object]]] = []
        notification_id = uuid.uuid4()

        def handler(request: httpx.Request) -> httpx.Response:
            self.assertTrue(request.headers["Authorization"].startswith("Bearer "))
            requests.append((request.url.path, json.loads(request.content)))
            return httpx.Response(201, json={"id": str(notification_id)})

        gateway = self._gateway(handler)
        sms_id = gateway.send(SmsRecipient("07700900000"), "tmpl-sms", {"name": "Ada"}, "ref-1")
        email_id = gateway.send(EmailRecipient("ada@example.com"), "tmpl-email", {}, "ref-1")

        self.assertEqual(sms_id, notification_id)
        self.assertEqual(email_id, notification_id)
        self.assertEqual(requests[0][0], "/v2/notifications/sms")
        self.assertEqual(requests[0][1]["phone_number"], "07700900000")
        self.assertEqual(requests[1][0], "/v2/notifications/email")
        self.assertEqual(requests[1][1]["email_address"], "ada@example.com")
        self.assertEqual(requests[1][1]["reference"], "ref-1")

    def test_notification_status_page_cursor(self) -> None:
        first = uuid.uuid4()
        second = uuid.uuid4()

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("older_than"):
                return httpx.Response(200, json={"notifications": [{"id": str(second), "status": "sending"}], "links": {}})
            return httpx.Response(
                200,
                json={
                    "notifications": [{"id": str(first), "status": "delivered"}],
                    "links": {"next": f"http://notify.local/v2/notifications?older_than={first}&reference=ref-1"},
                },
            )

        gateway = self._gateway(handler)
        page = gateway.notification_status("ref-1")
        self.assertTrue(page.has_next_page)
        self.assertEqual(page.next_cursor, str(first))
        self.assertEqual(page.items[0].status, "delivered")

        last = gateway.notification_status("ref-1", page.next_cursor)
        self.assertFalse(last.has_next_page)
        self.assertIsNone(last.next_cursor)
        self.assertEqual(last.items[0].notification_id, second)

    def test_client_error_is_not_retried(self) -> None:
        calls: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(400, json={"errors": []})

        with self.assertRaises(UpstreamUnavailable):
            self._gateway(handler).send(SmsRecipient("07700900000"), "tmpl", {}, "ref")
        self.assertEqual(len(calls), 1)


if __name__ == "__main__":
    unittest.main()
