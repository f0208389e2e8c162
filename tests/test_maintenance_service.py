from __future__ import annotations

import unittest
from datetime import date
from unittest.mock import patch

from sqlalchemy import func, select

from point_engine.errors import AuthorizationError, ValidationError
from point_engine.models import AttendancePoint, ExpirationType, PointType
from point_engine.security import PointActor
from point_engine.services import maintenance
from point_engine.services.gbro import cascade_recalculate_gbro
from sqlite_support import add_attendance, add_point, add_user, make_session


class MaintenanceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.employee = add_user(self.db, full_name="Dana Cruz")
        self.system = PointActor.system()

    def tearDown(self) -> None:
        self.db.close()

    def test_remove_duplicates_keeps_lowest_id_and_cascades_owner_once(self) -> None:
        add_attendance(self.db, self.employee, date(2024, 1, 5), status="tardy", attendance_id=77)
        add_point(self.db, self.employee, date(2024, 1, 5), point_id=5, attendance_id=77, is_manual=False)
        add_point(self.db, self.employee, date(2024, 1, 5), point_id=9, attendance_id=77, is_manual=False)

        with patch(
            "point_engine.services.maintenance.cascade_recalculate_gbro",
            wraps=cascade_recalculate_gbro,
        ) as cascade:
            result = maintenance.remove_duplicates(self.db, actor=self.system, today=date(2024, 1, 6))

        cascade.assert_called_once_with(self.db, self.employee.id, today=date(2024, 1, 6))
        self.assertEqual(result.affected, 1)
        self.assertEqual(result.users_processed, 1)
        self.assertIsNotNone(self.db.get(AttendancePoint, 5))
        self.assertIsNone(self.db.get(AttendancePoint, 9))

        again = maintenance.remove_duplicates(self.db, actor=self.system, today=date(2024, 1, 6))
        self.assertEqual(again.affected, 0)

    def test_maintenance_requires_capability(self) -> None:
        team_lead = PointActor.for_role("team_lead", user_id=self.employee.id)

        with self.assertRaises(AuthorizationError):
            maintenance.remove_duplicates(self.db, actor=team_lead)
        with self.assertRaises(AuthorizationError):
            maintenance.reset_expired(self.db, actor=team_lead)

    def test_expire_all_pending_by_scope(self) -> None:
        point = add_point(self.db, self.employee, date(2024, 1, 1))

        sro_only = maintenance.expire_all_pending(self.db, scope="sro", actor=self.system, today=date(2024, 3, 5))
        self.assertEqual(sro_only.affected, 0)
        self.assertFalse(point.is_expired)

        gbro = maintenance.expire_all_pending(self.db, scope="gbro", actor=self.system, today=date(2024, 3, 5))

        self.assertEqual(gbro.affected, 1)
        self.assertEqual(gbro.details, {"sro": 0, "gbro": 1})
        self.assertTrue(point.is_expired)
        self.assertEqual(point.expiration_type, ExpirationType.GBRO)
        self.assertEqual(point.expired_at, date(2024, 3, 1))
        self.assertEqual(point.gbro_expires_at, date(2024, 3, 1))

    def test_expire_all_pending_marks_ineligible_points_without_type(self) -> None:
        point = add_point(self.db, self.employee, date(2024, 1, 1), PointType.WHOLE_DAY_ABSENCE_UNADVISED)

        result = maintenance.expire_all_pending(self.db, actor=self.system, today=date(2025, 1, 1))

        self.assertEqual(result.details, {"sro": 1, "gbro": 0})
        self.assertTrue(point.is_expired)
        self.assertEqual(point.expiration_type, ExpirationType.NONE)
        self.assertEqual(point.expired_at, date(2025, 1, 1))

    def test_cascade_leaves_excused_points_to_the_expiry_sweep(self) -> None:
        point = add_point(
            self.db,
            self.employee,
            date(2024, 1, 1),
            PointType.WHOLE_DAY_ABSENCE_UNADVISED,
            is_excused=True,
            excuse_reason="Hospitalised",
        )

        cascade_recalculate_gbro(self.db, self.employee.id, today=date(2025, 1, 2))
        self.db.commit()
        self.assertFalse(point.is_expired)

        result = maintenance.expire_all_pending(self.db, scope="sro", actor=self.system, today=date(2025, 1, 2))

        self.assertEqual(result.details, {"sro": 1, "gbro": 0})
        self.assertTrue(point.is_expired)
        self.assertEqual(point.expiration_type, ExpirationType.NONE)

    def test_expire_all_pending_rejects_unknown_scope(self) -> None:
        with self.assertRaises(ValidationError):
            maintenance.expire_all_pending(self.db, scope="everything", actor=self.system)

    def test_reset_expired_restores_creation_time_fields(self) -> None:
        other = add_user(self.db, full_name="Lee Santos")
        point = add_point(self.db, self.employee, date(2024, 1, 1))
        untouched = add_point(self.db, other, date(2024, 1, 1))
        for user in (self.employee, other):
            cascade_recalculate_gbro(self.db, user.id, today=date(2024, 3, 5))
        self.db.commit()
        self.assertTrue(point.is_expired)

        result = maintenance.reset_expired(self.db, actor=self.system, user_id=self.employee.id)

        self.assertEqual(result.affected, 1)
        self.assertFalse(point.is_expired)
        self.assertIsNone(point.expired_at)
        self.assertEqual(point.expiration_type, ExpirationType.SRO)
        self.assertEqual(point.expires_at, date(2024, 7, 1))
        self.assertEqual(point.gbro_expires_at, date(2024, 3, 1))
        self.assertTrue(untouched.is_expired)

    def test_regenerate_uses_injected_creator(self) -> None:
        first = add_attendance(self.db, self.employee, date(2024, 1, 5), status="tardy")
        second = add_attendance(self.db, self.employee, date(2024, 1, 6), status="undertime")
        add_attendance(self.db, self.employee, date(2024, 1, 7), status="tardy", admin_verified=False)
        calls: list[tuple[int, date]] = []

        def fake_create(db, attendance_id, *, today):
            calls.append((attendance_id, today))
            return None if attendance_id == first.id else object()

        result = maintenance.regenerate_points(
            self.db,
            actor=self.system,
            date_from=date(2024, 1, 1),
            date_to=date(2024, 1, 31),
            user_id=self.employee.id,
            create_point=fake_create,
            today=date(2024, 2, 1),
        )

        self.assertEqual(calls, [(first.id, date(2024, 2, 1)), (second.id, date(2024, 2, 1))])
        self.assertEqual(result.details, {"created": 1, "skipped": 1})
        self.assertEqual(result.affected, 1)
        self.assertEqual(result.users_processed, 1)

    def test_regenerate_rejects_reversed_range(self) -> None:
        with self.assertRaises(ValidationError):
            maintenance.regenerate_points(
                self.db,
                actor=self.system,
                date_from=date(2024, 2, 1),
                date_to=date(2024, 1, 1),
            )

    def test_fix_gbro_dates_repairs_mislabelled_absences(self) -> None:
        point = add_point(
            self.db,
            self.employee,
            date(2024, 1, 1),
            PointType.WHOLE_DAY_ABSENCE_UNADVISED,
            eligible_for_gbro=True,
            gbro_expires_at=date(2024, 3, 1),
            expiration_type=ExpirationType.SRO,
        )

        result = maintenance.fix_gbro_dates(self.db, actor=self.system, today=date(2024, 1, 15))

        self.assertEqual(result.details["eligibility_fixed"], 1)
        self.assertFalse(point.eligible_for_gbro)
        self.assertIsNone(point.gbro_expires_at)
        self.assertEqual(point.expiration_type, ExpirationType.NONE)

    def test_fix_gbro_dates_clears_stale_date_on_expired_absence(self) -> None:
        point = add_point(
            self.db,
            self.employee,
            date(2024, 1, 1),
            PointType.WHOLE_DAY_ABSENCE_UNADVISED,
            gbro_expires_at=date(2024, 3, 1),
            is_expired=True,
            expired_at=date(2024, 3, 1),
        )
        self.assertEqual(maintenance.management_stats(self.db)["eligibility_violations"], 1)

        result = maintenance.fix_gbro_dates(self.db, actor=self.system, today=date(2024, 6, 1))

        self.assertEqual(result.details["eligibility_fixed"], 1)
        self.assertIsNone(point.gbro_expires_at)
        self.assertEqual(point.expiration_type, ExpirationType.NONE)
        self.assertEqual(maintenance.management_stats(self.db)["eligibility_violations"], 0)

    def test_initialize_gbro_dates_backfills_missing_dates(self) -> None:
        point = add_point(self.db, self.employee, date(2024, 1, 1), gbro_expires_at=None)

        result = maintenance.initialize_gbro_dates(self.db, actor=self.system, today=date(2024, 1, 15))

        self.assertEqual(result.users_processed, 1)
        self.assertEqual(point.gbro_expires_at, date(2024, 3, 1))

    def test_management_stats_counts_anomalies(self) -> None:
        add_attendance(self.db, self.employee, date(2024, 1, 5), status="tardy", attendance_id=77)
        add_attendance(self.db, self.employee, date(2024, 1, 9), status="ncns")
        add_point(self.db, self.employee, date(2024, 1, 5), attendance_id=77, is_manual=False)
        add_point(self.db, self.employee, date(2024, 1, 5), attendance_id=77, is_manual=False)
        add_point(
            self.db,
            self.employee,
            date(2024, 1, 6),
            PointType.WHOLE_DAY_ABSENCE_UNADVISED,
            eligible_for_gbro=True,
        )

        stats = maintenance.management_stats(self.db, today=date(2024, 1, 10))

        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["active"], 3)
        self.assertEqual(stats["duplicates"], 1)
        self.assertEqual(stats["missing_points"], 1)
        self.assertEqual(stats["eligibility_violations"], 1)
        self.assertEqual(stats["pending_gbro"], 0)

    def test_cleanup_runs_dedupe_then_expiry(self) -> None:
        add_point(self.db, self.employee, date(2023, 1, 1))

        results = maintenance.cleanup(self.db, actor=self.system, today=date(2024, 1, 1))

        self.assertEqual(list(results), ["remove_duplicates", "expire_all_pending"])
        self.assertEqual(results["expire_all_pending"].affected, 1)
        self.assertEqual(self.db.scalar(select(func.count(AttendancePoint.id)).where(AttendancePoint.is_expired)), 1)


if __name__ == "__main__":
    unittest.main()
