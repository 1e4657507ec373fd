from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any, TypeVar

import httpx

from app.logging_utils import sanitize_exception
from app.services.resilience import ResilientCaller
from app.settings import Settings

logger = logging.getLogger("app.case_directory")

MAX_BATCH_SIZE = 500

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class PersonName:
    forename: str
    surname: str

    @property
    def full_name(self) -> str:
        return f"{self.forename} {self.surname}".strip()


@dataclass(frozen=True, slots=True)
class OrganisationalUnit:
    code: str
    description: str | None = None


@dataclass(frozen=True, slots=True)
class PractitionerDetails:
    name: PersonName
    email: str | None = None
    local_admin_unit: OrganisationalUnit | None = None
    probation_delivery_unit: OrganisationalUnit | None = None
    provider: OrganisationalUnit | None = None


@dataclass(frozen=True, slots=True)
class ContactDetails:
    crn: str
    name: PersonName
    mobile: str | None = None
    email: str | None = None
    practitioner: PractitionerDetails | None = None


@dataclass(frozen=True, slots=True)
class PersonalDetails:
    crn: str
    name: PersonName
    date_of_birth: date


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size < 1:
        raise ValueError("size must be at least 1")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def _parse_name(payload: dict[str, Any] | None) -> PersonName:
    payload = payload or {}
    return PersonName(
        forename=str(payload.get("forename") or ""),
        surname=str(payload.get("surname") or ""),
    )


def _parse_unit(payload: dict[str, Any] | None) -> OrganisationalUnit | None:
    if not payload or not payload.get("code"):
        return None
    return OrganisationalUnit(code=str(payload["code"]), description=payload.get("description"))


def parse_contact_details(payload: dict[str, Any]) -> ContactDetails:
    practitioner_payload = payload.get("practitioner")
    practitioner = None
    if practitioner_payload:
        practitioner = PractitionerDetails(
            name=_parse_name(practitioner_payload.get("name")),
            email=practitioner_payload.get("email") or None,
            local_admin_unit=_parse_unit(practitioner_payload.get("localAdminUnit")),
            probation_delivery_unit=_parse_unit(practitioner_payload.get("probationDeliveryUnit")),
            provider=_parse_unit(practitioner_payload.get("provider")),
        )
    return ContactDetails(
        crn=str(payload["crn"]),
        name=_parse_name(payload.get("name")),
        mobile=payload.get("mobile") or None,
        email=payload.get("email") or None,
        practitioner=practitioner,
    )


class _ClientCredentialsAuth(httpx.Auth):
    """Bearer auth using an OAuth2 client-credentials token, cached until shortly before expiry."""

    def __init__(self, *, token_url: str, client_id: str, client_secret: str, timeout: float):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def _fetch_token(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._expires_at:
                return self._token
            response = httpx.post(
                self.token_url,
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
            self._token = str(body["access_token"])
            expires_in = int(body.get("expires_in") or 300)
            self._expires_at = time.monotonic() + max(0, expires_in - 30)
            return self._token

    def auth_flow(self, request: httpx.Request):  # type: ignore[no-untyped-def]
        request.headers["Authorization"] = f"Bearer {self._fetch_token()}"
        yield request


def build_case_directory_http_client(settings: Settings) -> httpx.Client:
    auth = None
    if settings.case_directory_token_url and settings.case_directory_client_id:
        auth = _ClientCredentialsAuth(
            token_url=settings.case_directory_token_url,
            client_id=settings.case_directory_client_id,
            client_secret=settings.case_directory_client_secret or "",
            timeout=settings.case_directory_timeout_seconds,
        )
    return httpx.Client(
        base_url=settings.case_directory_base_url.rstrip("/"),
        timeout=settings.case_directory_timeout_seconds,
        auth=auth,
    )


class CaseDirectoryClient:
    def __init__(self, http_client: httpx.Client, caller: ResilientCaller):
        self.http_client = http_client
        self.caller = caller

    def close(self) -> None:
        self.http_client.close()

    def get_contact_details(self, crn: str) -> ContactDetails | None:
        return self.caller.call(self._get_contact_details, crn)

    def _get_contact_details(self, crn: str) -> ContactDetails | None:
        response = self.http_client.get(f"/case/{crn}")
        if response.status_code == 404:
            logger.info("case_directory_contact_not_found", extra={"crn": crn})
            return None
        response.raise_for_status()
        return parse_contact_details(response.json())

    def get_contact_details_for_many(self, crns: Iterable[str]) -> list[ContactDetails]:
        refs = list(crns)
        if not refs:
            return []
        if len(refs) > MAX_BATCH_SIZE:
            logger.warning(
                "case_directory_batch_truncated",
                extra={"requested": len(refs), "max_batch_size": MAX_BATCH_SIZE},
            )
            refs = refs[:MAX_BATCH_SIZE]
        return self.caller.call(self._get_contact_details_for_many, refs)

    def _get_contact_details_for_many(self, crns: list[str]) -> list[ContactDetails]:
        response = self.http_client.post("/cases", json=crns)
        response.raise_for_status()
        items = response.json() or []
        results: list[ContactDetails] = []
        for item in items:
            try:
                results.append(parse_contact_details(item))
            except (KeyError, TypeError, AttributeError) as exc:
                logger.warning(
                    "case_directory_contact_unparseable",
                    extra={"error": sanitize_exception(exc), "batch_size": len(crns)},
                )
        return results

    def validate_personal_details(self, details: PersonalDetails) -> bool:
        return self.caller.call(self._validate_personal_details, details)

    def _validate_personal_details(self, details: PersonalDetails) -> bool:
        response = self.http_client.post(
            f"/case/{details.crn}/validate-details",
            json={
                "crn": details.crn,
                "name": {"forename": details.name.forename, "surname": details.name.surname},
                "dateOfBirth": details.date_of_birth.isoformat(),
            },
        )
        if response.status_code in (400, 404):
            logger.info("case_directory_details_rejected", extra={"crn": details.crn})
            return False
        response.raise_for_status()
        return True
