from __future__ import annotations

import unittest
import uuid
from contextlib import nullcontext
from datetime import date
from unittest.mock import MagicMock, patch

from app.errors import InvalidState, ValidationFailure
from app.models import (
    CheckinInterval,
    ContactPreference,
    LogEntryType,
    Offender,
    OffenderEventLog,
    OffenderSetup,
    OffenderStatus,
)
from app.services.offender_setup import OffenderSetupService
from app.settings import Settings

TODAY = date(2025, 6, 1)


class _FakeSession:
    def __init__(self, added: list[object]):
        self._added = added
        self.flush_count = 0

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def begin(self):  # type: ignore[no-untyped-def]
        return nullcontext(self)

    def add(self, item):  # type: ignore[no-untyped-def]
        self._added.append(item)

    def flush(self) -> None:
        self.flush_count += 1
        for item in self._added:
            if isinstance(item, Offender) and item.id is None:
                item.id = 100


def _offender(status: OffenderStatus = OffenderStatus.INITIAL, first_checkin: date = TODAY) -> Offender:
    return Offender(
        id=5,
        uuid=uuid.UUID("aaaaaaaa-0000-0000-0000-000000000005"),
        crn="X123456",
        practitioner_id="PRAC01",
        status=status,
        first_checkin=first_checkin,
        checkin_interval_days=7,
        contact_preference=ContactPreference.PHONE,
        created_by="PRAC01",
    )


def _setup(offender: Offender) -> OffenderSetup:
    return OffenderSetup(
        id=9,
        uuid=uuid.UUID("dddddddd-0000-0000-0000-000000000009"),
        offender=offender,
        offender_id=offender.id,
        practitioner_id="PRAC01",
    )


class OffenderSetupServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.added: list[object] = []
        self.storage = MagicMock()
        self.storage.is_setup_photo_uploaded.return_value = True
        self.storage.presigned_put_url.return_value = "https://s3.local/put"
        self.orchestrator = MagicMock()
        self.creation_service = MagicMock()
        self.service = OffenderSetupService(
            session_factory=lambda: _FakeSession(self.added),
            storage=self.storage,
            orchestrator=self.orchestrator,
            creation_service=self.creation_service,
            settings=Settings(),
        )
        self.today_patch = patch.object(OffenderSetupService, "today", return_value=TODAY)
        self.today_patch.start()

    def tearDown(self) -> None:
        self.today_patch.stop()

    def test_start_setup_validates_crn_and_date(self) -> None:
        with self.assertRaisesRegex(ValidationFailure, "Invalid CRN"):
            self.service.start_setup(
                crn="12345", practitioner_id="PRAC01", first_checkin=TODAY, interval=CheckinInterval.WEEKLY
            )
        with self.assertRaisesRegex(ValidationFailure, "cannot be in the past"):
            self.service.start_setup(
                crn="X123456",
                practitioner_id="PRAC01",
                first_checkin=date(2025, 5, 31),
                interval=CheckinInterval.WEEKLY,
            )

    def test_start_setup_creates_offender_and_setup(self) -> None:
        with patch("app.services.offender_setup.find_offender_by_crn", return_value=None):
            setup = self.service.start_setup(
                crn=" x123456 ",
                practitioner_id="PRAC01",
                first_checkin=TODAY,
                interval=CheckinInterval.TWO_WEEKS,
                contact_preference=ContactPreference.EMAIL,
            )

        offender = setup.offender
        self.assertEqual(offender.crn, "X123456")
        self.assertEqual(offender.status, OffenderStatus.INITIAL)
        self.assertEqual(offender.checkin_interval_days, 14)
        self.assertEqual(offender.contact_preference, ContactPreference.EMAIL)
        self.assertIn(setup, self.added)

    def test_start_setup_restarts_initial_offender(self) -> None:
        offender = _offender()
        existing = _setup(offender)
        with (
            patch("app.services.offender_setup.find_offender_by_crn", return_value=offender),
            patch("app.services.offender_setup.find_setup_for_offender", return_value=existing),
        ):
            setup = self.service.start_setup(
                crn="X123456",
                practitioner_id="PRAC02",
                first_checkin=date(2025, 6, 3),
                interval=CheckinInterval.FOUR_WEEKS,
            )
        self.assertIs(setup, existing)
        self.assertEqual(setup.practitioner_id, "PRAC02")
        self.assertEqual(offender.checkin_interval_days, 28)

    def test_start_setup_rejects_verified_offender(self) -> None:
        with patch(
            "app.services.offender_setup.find_offender_by_crn",
            return_value=_offender(OffenderStatus.VERIFIED),
        ):
            with self.assertRaises(InvalidState):
                self.service.start_setup(
                    crn="X123456", practitioner_id="PRAC01", first_checkin=TODAY, interval=CheckinInterval.WEEKLY
                )

    def test_photo_upload_location(self) -> None:
        setup = _setup(_offender())
        with patch("app.services.offender_setup.get_setup_by_uuid", return_value=setup):
            location = self.service.photo_upload_location(setup.uuid, "image/jpeg")
        self.assertEqual(location.url, "https://s3.local/put")
        self.assertEqual(location.ttl, "PT10M")

    def test_complete_setup_requires_photo(self) -> None:
        setup = _setup(_offender())
        self.storage.is_setup_photo_uploaded.return_value = False
        with patch("app.services.offender_setup.get_setup_by_uuid", return_value=setup):
            with self.assertRaisesRegex(ValidationFailure, "photo"):
                self.service.complete_setup(setup.uuid)
        self.assertEqual(setup.offender.status, OffenderStatus.INITIAL)

    def test_complete_setup_creates_first_checkin_when_due_today(self) -> None:
        setup = _setup(_offender(first_checkin=TODAY))
        checkin = MagicMock()
        self.creation_service.create_in_session.return_value = checkin
        self.orchestrator.notify_setup_completed.side_effect = RuntimeError("notify down")

        with patch("app.services.offender_setup.get_setup_by_uuid", return_value=setup):
            offender = self.service.complete_setup(setup.uuid)

        self.assertEqual(offender.status, OffenderStatus.VERIFIED)
        logs = [item for item in self.added if isinstance(item, OffenderEventLog)]
        self.assertEqual([item.log_entry_type for item in logs], [LogEntryType.SETUP_COMPLETE])
        self.creation_service.create_in_session.assert_called_once()
        self.creation_service.notify_created.assert_called_once_with(checkin, created_by="PRAC01")

    def test_complete_setup_future_first_checkin_creates_nothing(self) -> None:
        setup = _setup(_offender(first_checkin=date(2025, 6, 10)))
        with patch("app.services.offender_setup.get_setup_by_uuid", return_value=setup):
            self.service.complete_setup(setup.uuid)
        self.creation_service.create_in_session.assert_not_called()
        self.orchestrator.notify_setup_completed.assert_called_once()

    def test_terminate_setup(self) -> None:
        setup = _setup(_offender())
        with patch("app.services.offender_setup.get_setup_by_uuid", return_value=setup):
            offender = self.service.terminate_setup(setup.uuid)
        self.assertEqual(offender.status, OffenderStatus.INACTIVE)

        with patch("app.services.offender_setup.get_setup_by_uuid", return_value=_setup(_offender(OffenderStatus.VERIFIED))):
            with self.assertRaises(InvalidState):
                self.service.terminate_setup(setup.uuid)

    def test_deactivate_and_reactivate(self) -> None:
        offender = _offender(OffenderStatus.VERIFIED)
        with patch("app.services.offender_setup.get_offender_by_uuid", return_value=offender):
            with self.assertRaisesRegex(ValidationFailure, "Reason"):
                self.service.deactivate(offender.uuid, requested_by="PRAC01", reason=" ")
            self.service.deactivate(offender.uuid, requested_by="PRAC01", reason="Moved area")
            self.assertEqual(offender.status, OffenderStatus.INACTIVE)
            with self.assertRaises(InvalidState):
                self.service.deactivate(offender.uuid, requested_by="PRAC01", reason="again")

            self.service.reactivate(offender.uuid, requested_by="PRAC01", reason="Back in area")
            self.assertEqual(offender.status, OffenderStatus.VERIFIED)

        log_types = [item.log_entry_type for item in self.added if isinstance(item, OffenderEventLog)]
        self.assertEqual(log_types, [LogEntryType.DEACTIVATED, LogEntryType.REACTIVATED])

    def test_reactivate_requires_setup_photo(self) -> None:
        offender = _offender(OffenderStatus.INACTIVE)
        self.storage.is_setup_photo_uploaded.return_value = False
        with patch("app.services.offender_setup.get_offender_by_uuid", return_value=offender):
            with self.assertRaisesRegex(InvalidState, "setup photo"):
                self.service.reactivate(offender.uuid, requested_by="PRAC01", reason="Back")
        self.assertEqual(offender.status, OffenderStatus.INACTIVE)

    def test_update_schedule_creates_checkin_for_today(self) -> None:
        offender = _offender(OffenderStatus.VERIFIED, first_checkin=date(2025, 6, 20))
        checkin = MagicMock()
        self.creation_service.create_in_session.return_value = checkin
        with (
            patch("app.services.offender_setup.get_offender_by_uuid", return_value=offender),
            patch("app.services.offender_setup.find_checkin_for_due_date", return_value=None),
        ):
            self.service.update_schedule(
                offender.uuid,
                requested_by="PRAC01",
                first_checkin=TODAY,
                interval=CheckinInterval.EIGHT_WEEKS,
                contact_preference=ContactPreference.EMAIL,
            )

        self.assertEqual(offender.first_checkin, TODAY)
        self.assertEqual(offender.checkin_interval_days, 56)
        self.assertEqual(offender.contact_preference, ContactPreference.EMAIL)
        self.creation_service.notify_created.assert_called_once_with(checkin, created_by="PRAC01")

    def test_update_schedule_rejects_inactive(self) -> None:
        with patch(
            "app.services.offender_setup.get_offender_by_uuid",
            return_value=_offender(OffenderStatus.INACTIVE),
        ):
            with self.assertRaises(InvalidState):
                self.service.update_schedule(
                    uuid.uuid4(), requested_by="PRAC01", first_checkin=TODAY, interval=CheckinInterval.WEEKLY
                )


if __name__ == "__main__":
    unittest.main()
