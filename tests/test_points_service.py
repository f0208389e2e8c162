from __future__ import annotations

import unittest
from datetime import date, time
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from point_engine.errors import (
    AuthorizationError,
    ConsistencyFailure,
    ImmutableRecordError,
    NotFoundError,
    ValidationError,
)
from point_engine.models import AttendancePoint, ExpirationType, NotificationJob, PointType
from point_engine.schemas import ManualPointCreateRequest, ManualPointUpdateRequest
from point_engine.security import PointActor
from point_engine.services.gbro import cascade_recalculate_gbro
from point_engine.services.notifications import MANUAL_POINT_JOB_TYPE
from point_engine.services.points import (
    build_manual_violation_details,
    create_from_attendance,
    create_manual,
    delete_manual,
    excuse_point,
    import_attendance_point,
    rescan_attendance,
    update_manual,
)
from sqlite_support import add_attendance, add_point, add_user, make_session


class PointsServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.admin = add_user(self.db, full_name="HR Admin", role="hr")
        self.employee = add_user(self.db, full_name="Dana Cruz")
        self.hr = PointActor.for_role("hr", user_id=self.admin.id)

    def tearDown(self) -> None:
        self.db.close()

    def _point_count(self) -> int:
        return self.db.scalar(select(func.count(AttendancePoint.id)))

    def test_attendance_import_is_idempotent(self) -> None:
        attendance = add_attendance(
            self.db,
            self.employee,
            date(2024, 1, 5),
            status="tardy",
            tardy_minutes=12,
            scheduled_time_in=time(9, 0),
        )

        first = create_from_attendance(self.db, attendance.id, today=date(2024, 1, 6))
        self.db.commit()
        second = create_from_attendance(self.db, attendance.id, today=date(2024, 1, 6))
        self.db.commit()

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(self._point_count(), 1)
        self.assertEqual(first.point_type, PointType.TARDY)
        self.assertFalse(first.is_manual)
        self.assertEqual(first.expires_at, date(2024, 7, 5))
        self.assertEqual(first.gbro_expires_at, date(2024, 3, 5))
        self.assertEqual(first.expiration_type, ExpirationType.SRO)
        self.assertIn("Tardy: Arrived 12 minutes late", first.violation_details)
        self.assertIn("Scheduled time in: 09:00", first.violation_details)

    def test_unverified_or_non_violating_attendance_is_skipped(self) -> None:
        unverified = add_attendance(self.db, self.employee, date(2024, 1, 5), status="tardy", admin_verified=False)
        on_time = add_attendance(self.db, self.employee, date(2024, 1, 6), status="on_time")

        self.assertIsNone(create_from_attendance(self.db, unverified.id, today=date(2024, 1, 7)))
        self.assertIsNone(create_from_attendance(self.db, on_time.id, today=date(2024, 1, 7)))
        self.assertEqual(self._point_count(), 0)

        with self.assertRaises(NotFoundError):
            create_from_attendance(self.db, 4040, today=date(2024, 1, 7))

    def test_ncns_attendance_gets_twelve_month_fixed_date(self) -> None:
        attendance = add_attendance(self.db, self.employee, date(2024, 2, 29), status="ncns")

        point = import_attendance_point(self.db, attendance.id, actor=self.hr, today=date(2024, 3, 1))

        self.assertEqual(point.point_type, PointType.WHOLE_DAY_ABSENCE_UNADVISED)
        self.assertEqual(float(point.points), 1.0)
        self.assertEqual(point.expires_at, date(2025, 2, 28))
        self.assertFalse(point.eligible_for_gbro)
        self.assertIsNone(point.gbro_expires_at)
        self.assertEqual(point.expiration_type, ExpirationType.NONE)
        self.assertTrue(point.violation_details.startswith("No Call, No Show (NCNS)"))

    def test_manual_create_queues_employee_notification(self) -> None:
        payload = ManualPointCreateRequest(
            user_id=self.employee.id,
            shift_date=date(2024, 1, 10),
            point_type=PointType.UNDERTIME,
            undertime_minutes=25,
        )

        point = create_manual(self.db, payload, actor=self.hr, today=date(2024, 1, 11))

        self.assertTrue(point.is_manual)
        self.assertEqual(point.created_by, self.admin.id)
        self.assertEqual(point.violation_details, "Undertime: Left 25 minutes early (manual entry).")
        jobs = self.db.scalars(select(NotificationJob)).all()
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].job_type, MANUAL_POINT_JOB_TYPE)
        self.assertEqual(jobs[0].user_id, self.employee.id)
        self.assertEqual(jobs[0].payload["event"], "created")
        self.assertEqual(jobs[0].payload["point_id"], str(point.id))
        self.assertEqual(jobs[0].payload["points"], "0.25")

    def test_agent_cannot_create_points(self) -> None:
        payload = ManualPointCreateRequest(
            user_id=self.employee.id,
            shift_date=date(2024, 1, 10),
            point_type=PointType.TARDY,
        )
        agent = PointActor.for_role("agent", user_id=self.employee.id)

        with self.assertRaises(AuthorizationError):
            create_manual(self.db, payload, actor=agent, today=date(2024, 1, 11))
        self.assertEqual(self._point_count(), 0)

    def test_system_points_cannot_be_edited_or_deleted(self) -> None:
        attendance = add_attendance(self.db, self.employee, date(2024, 1, 5), status="tardy", tardy_minutes=3)
        point = import_attendance_point(self.db, attendance.id, actor=self.hr, today=date(2024, 1, 6))
        payload = ManualPointUpdateRequest(shift_date=date(2024, 1, 8), point_type=PointType.HALF_DAY_ABSENCE)

        with self.assertRaises(ImmutableRecordError):
            update_manual(self.db, point.id, payload, actor=self.hr, today=date(2024, 1, 9))
        with self.assertRaises(ImmutableRecordError):
            delete_manual(self.db, point.id, actor=self.hr, today=date(2024, 1, 9))

        self.db.refresh(point)
        self.assertEqual(point.shift_date, date(2024, 1, 5))
        self.assertEqual(point.point_type, PointType.TARDY)
        self.assertEqual(self._point_count(), 1)

    def test_manual_update_reclassifies_and_recascades(self) -> None:
        payload = ManualPointCreateRequest(
            user_id=self.employee.id,
            shift_date=date(2024, 1, 10),
            point_type=PointType.TARDY,
        )
        point = create_manual(self.db, payload, actor=self.hr, today=date(2024, 1, 11))

        updated = update_manual(
            self.db,
            point.id,
            ManualPointUpdateRequest(shift_date=date(2024, 1, 12), point_type=PointType.WHOLE_DAY_ABSENCE_UNADVISED),
            actor=self.hr,
            today=date(2024, 1, 13),
        )

        self.assertEqual(updated.points, 1)
        self.assertFalse(updated.eligible_for_gbro)
        self.assertIsNone(updated.gbro_expires_at)
        self.assertEqual(updated.expires_at, date(2025, 1, 12))
        self.assertEqual(updated.expiration_type, ExpirationType.NONE)
        events = [job.payload["event"] for job in self.db.scalars(select(NotificationJob).order_by(NotificationJob.id))]
        self.assertEqual(events, ["created", "updated"])

    def test_reclassifying_expired_point_as_unadvised_clears_gbro_state(self) -> None:
        point = add_point(self.db, self.employee, date(2024, 1, 1))
        cascade_recalculate_gbro(self.db, self.employee.id, today=date(2024, 6, 1))
        self.db.commit()
        self.assertEqual(point.expiration_type, ExpirationType.GBRO)

        updated = update_manual(
            self.db,
            point.id,
            ManualPointUpdateRequest(shift_date=date(2024, 1, 1), point_type=PointType.WHOLE_DAY_ABSENCE_UNADVISED),
            actor=self.hr,
            today=date(2024, 6, 1),
        )

        self.assertTrue(updated.is_expired)
        self.assertFalse(updated.eligible_for_gbro)
        self.assertIsNone(updated.gbro_expires_at)
        self.assertEqual(updated.expiration_type, ExpirationType.NONE)

    def test_deleting_interrupting_point_releases_earlier_point(self) -> None:
        first = add_point(self.db, self.employee, date(2024, 1, 1))
        second = add_point(self.db, self.employee, date(2024, 2, 15))
        cascade_recalculate_gbro(self.db, self.employee.id, today=date(2024, 2, 20))
        self.db.commit()
        self.assertIsNone(first.gbro_expires_at)

        owner_id = delete_manual(self.db, second.id, actor=self.hr, today=date(2024, 2, 20))

        self.assertEqual(owner_id, self.employee.id)
        self.assertIsNone(self.db.get(AttendancePoint, second.id))
        self.assertEqual(first.gbro_expires_at, date(2024, 3, 1))
        self.assertFalse(first.is_expired)

    def test_excuse_reason_is_validated(self) -> None:
        point = add_point(self.db, self.employee, date(2024, 1, 1))

        with self.assertRaises(ValidationError):
            excuse_point(self.db, point.id, reason="   ", actor=self.hr, today=date(2024, 1, 2))
        with self.assertRaises(ValidationError):
            excuse_point(self.db, point.id, reason="x" * 501, actor=self.hr, today=date(2024, 1, 2))

        self.db.refresh(point)
        self.assertFalse(point.is_excused)

        excused = excuse_point(self.db, point.id, reason="  Approved leave  ", actor=self.hr, today=date(2024, 1, 2))
        self.assertEqual(excused.excuse_reason, "Approved leave")
        self.assertEqual(excused.excused_by, self.admin.id)
        self.assertIsNotNone(excused.excused_at)

    def test_rescan_counts_created_and_skipped_records(self) -> None:
        already = add_attendance(self.db, self.employee, date(2024, 1, 4), status="tardy", tardy_minutes=8)
        create_from_attendance(self.db, already.id, today=date(2024, 1, 4))
        self.db.commit()
        add_attendance(self.db, self.employee, date(2024, 1, 5), status="undertime", undertime_minutes=90)
        add_attendance(self.db, self.employee, date(2024, 1, 6), status="ncns")
        add_attendance(self.db, self.employee, date(2024, 1, 7), status="on_time")
        add_attendance(self.db, self.employee, date(2024, 1, 8), status="tardy", admin_verified=False)
        add_attendance(self.db, self.employee, date(2024, 2, 8), status="tardy")

        result = rescan_attendance(
            self.db,
            date_from=date(2024, 1, 1),
            date_to=date(2024, 1, 31),
            actor=self.hr,
            today=date(2024, 2, 1),
        )

        self.assertEqual(result.total_records, 3)
        self.assertEqual(result.created, 2)
        self.assertEqual(result.skipped, 1)
        self.assertEqual(result.users_affected, 1)
        point_types = set(self.db.scalars(select(AttendancePoint.point_type)).all())
        self.assertIn(PointType.UNDERTIME_SEVERE, point_types)
        self.assertIn(PointType.WHOLE_DAY_ABSENCE_UNADVISED, point_types)

    def test_rescan_rejects_reversed_range(self) -> None:
        with self.assertRaises(ValidationError):
            rescan_attendance(self.db, date_from=date(2024, 2, 1), date_to=date(2024, 1, 1), actor=self.hr)

    def test_manual_violation_details_fallback(self) -> None:
        self.assertEqual(
            build_manual_violation_details(PointType.HALF_DAY_ABSENCE, shift_date=date(2024, 3, 4)),
            "Half Day Absence on 2024-03-04 (manual entry).",
        )

def _storage_error() -> OperationalError:
    return OperationalError("UPDATE attendance_points", {}, Exception("database is locked"))


class PointsTransactionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.admin = add_user(self.db, full_name="HR Admin", role="hr")
        self.employee = add_user(self.db, full_name="Dana Cruz")
        self.hr = PointActor.for_role("hr", user_id=self.admin.id)

    def tearDown(self) -> None:
        self.db.close()

    def _counts(self) -> tuple[int, int]:
        points = self.db.scalar(select(func.count(AttendancePoint.id)))
        jobs = self.db.scalar(select(func.count(NotificationJob.id)))
        return points, jobs

    def _payload(self) -> ManualPointCreateRequest:
        return ManualPointCreateRequest(
            user_id=self.employee.id,
            shift_date=date(2024, 1, 10),
            point_type=PointType.TARDY,
        )

    def test_create_manual_rolls_back_when_cascade_raises(self) -> None:
        with patch(
            "point_engine.services.points.update_user_gbro_expiration_dates",
            side_effect=RuntimeError("cascade crashed"),
        ):
            with self.assertRaises(RuntimeError):
                create_manual(self.db, self._payload(), actor=self.hr, today=date(2024, 1, 11))

        self.db.commit()
        self.assertEqual(self._counts(), (0, 0))

    def test_create_manual_storage_error_surfaces_as_consistency_failure(self) -> None:
        with patch(
            "point_engine.services.points.update_user_gbro_expiration_dates",
            side_effect=_storage_error(),
        ):
            with self.assertRaises(ConsistencyFailure) as ctx:
                create_manual(self.db, self._payload(), actor=self.hr, today=date(2024, 1, 11))

        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(ctx.exception.code, "CONSISTENCY_FAILURE")
        self.assertEqual(self._counts(), (0, 0))

    def test_delete_manual_keeps_point_when_cascade_fails(self) -> None:
        point = add_point(self.db, self.employee, date(2024, 1, 1))

        with patch("point_engine.services.points.cascade_recalculate_gbro", side_effect=_storage_error()):
            with self.assertRaises(ConsistencyFailure):
                delete_manual(self.db, point.id, actor=self.hr, today=date(2024, 1, 2))

        self.db.commit()
        self.assertIsNotNone(self.db.get(AttendancePoint, point.id))
        self.assertEqual(self._counts(), (1, 0))

    def test_excuse_is_undone_when_cascade_raises(self) -> None:
        point = add_point(self.db, self.employee, date(2024, 1, 1))

        with patch(
            "point_engine.services.points.cascade_recalculate_gbro",
            side_effect=RuntimeError("cascade crashed"),
        ):
            with self.assertRaises(RuntimeError):
                excuse_point(self.db, point.id, reason="Approved leave", actor=self.hr, today=date(2024, 1, 2))

        self.db.commit()
        self.db.refresh(point)
        self.assertFalse(point.is_excused)
        self.assertIsNone(point.excuse_reason)
        self.assertIsNone(point.excused_by)



if __name__ == "__main__":
    unittest.main()
