from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from point_engine.models import AttendancePoint, ExpirationType, PointType
from point_engine.services.gbro import cascade_recalculate_gbro
from point_engine.services.queries import PointFilters, query_points
from point_engine.services.stats import calculate_stats, calculate_totals, get_high_points_employees, get_user_statistics
from sqlite_support import add_point, add_user, make_session


def _point(point_type: PointType, points: str, *, excused: bool = False, expired: bool = False) -> AttendancePoint:
    return AttendancePoint(
        point_type=point_type,
        points=Decimal(points),
        is_excused=excused,
        is_expired=expired,
    )


class CalculateTotalsTests(unittest.TestCase):
    def test_excused_and_expired_points_are_not_active(self) -> None:
        totals = calculate_totals(
            [
                _point(PointType.TARDY, "0.25"),
                _point(PointType.WHOLE_DAY_ABSENCE_UNADVISED, "1.00"),
                _point(PointType.HALF_DAY_ABSENCE, "0.50", excused=True),
                _point(PointType.UNDERTIME, "0.25", expired=True),
                _point(PointType.UNDERTIME_SEVERE, "0.50", excused=True, expired=True),
            ]
        )

        self.assertEqual(totals["total_points"], 2.5)
        self.assertEqual(totals["active_points"], 1.25)
        self.assertEqual(totals["excused_points"], 1.0)
        self.assertEqual(totals["expired_points"], 0.25)
        self.assertEqual(totals["active_count"], 2)
        self.assertEqual(totals["excused_count"], 2)
        self.assertEqual(totals["expired_count"], 1)
        self.assertEqual(totals["by_type"][PointType.WHOLE_DAY_ABSENCE_UNADVISED.value], 1.0)
        self.assertEqual(totals["by_type"][PointType.HALF_DAY_ABSENCE.value], 0.0)
        self.assertEqual(totals["count_by_type"][PointType.TARDY.value], 1)

    def test_empty_input(self) -> None:
        totals = calculate_totals([])

        self.assertEqual(totals["active_points"], 0.0)
        self.assertEqual(set(totals["by_type"]), {point_type.value for point_type in PointType})


class StatsQueryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.heavy = add_user(self.db, full_name="Alex Reyes")
        self.light = add_user(self.db, full_name="Sam Uy")

    def tearDown(self) -> None:
        self.db.close()

    def test_high_points_employees_use_active_points_only(self) -> None:
        for day in (1, 2, 3, 4):
            add_point(self.db, self.heavy, date(2024, 1, day), PointType.WHOLE_DAY_ABSENCE_ADVISED)
        add_point(self.db, self.heavy, date(2024, 1, 5), PointType.WHOLE_DAY_ABSENCE_ADVISED, is_excused=True)
        add_point(self.db, self.light, date(2024, 1, 5), PointType.WHOLE_DAY_ABSENCE_ADVISED)
        add_point(
            self.db,
            self.light,
            date(2023, 1, 5),
            PointType.WHOLE_DAY_ABSENCE_ADVISED,
            is_expired=True,
            expired_at=date(2023, 7, 5),
        )

        rows = get_high_points_employees(self.db, threshold=4.0)

        self.assertEqual(
            rows,
            [{"user_id": self.heavy.id, "full_name": "Alex Reyes", "total_points": 4.0, "violations_count": 4}],
        )
        self.assertEqual(get_high_points_employees(self.db, threshold=4.0, scope_user_id=self.light.id), [])

    def test_filters_and_scope(self) -> None:
        add_point(self.db, self.heavy, date(2024, 1, 1), PointType.TARDY)
        add_point(self.db, self.heavy, date(2024, 2, 1), PointType.UNDERTIME, is_excused=True)
        add_point(self.db, self.light, date(2024, 1, 15), PointType.TARDY)

        active = query_points(self.db, PointFilters(status="active"), today=date(2024, 2, 2))
        scoped = query_points(self.db, PointFilters(), scope_user_id=self.light.id)
        january = query_points(
            self.db,
            PointFilters(date_from=date(2024, 1, 1), date_to=date(2024, 1, 31), point_type=PointType.TARDY),
        )
        stats = calculate_stats(self.db, PointFilters(user_id=self.heavy.id))

        self.assertEqual(len(active), 2)
        self.assertEqual([point.user_id for point in scoped], [self.light.id])
        self.assertEqual([point.shift_date for point in january], [date(2024, 1, 15), date(2024, 1, 1)])
        self.assertEqual(stats["active_points"], 0.25)
        self.assertEqual(stats["excused_count"], 1)
        self.assertEqual(stats["high_points_employees"], [])

    def test_user_statistics_include_gbro_summary(self) -> None:
        add_point(self.db, self.heavy, date(2024, 1, 1))
        add_point(self.db, self.heavy, date(2024, 4, 1))
        cascade_recalculate_gbro(self.db, self.heavy.id, today=date(2024, 4, 2))
        self.db.commit()

        stats = get_user_statistics(self.db, self.heavy.id, today=date(2024, 4, 2))

        self.assertEqual(stats["full_name"], "Alex Reyes")
        self.assertEqual(stats["total_active_points"], 0.25)
        self.assertEqual(stats["expired_count"], 1)
        self.assertEqual(stats["by_expiration_type"], {ExpirationType.GBRO.value: 1})
        self.assertEqual(stats["gbro"]["expired_via_gbro_count"], 1)
        self.assertEqual(stats["gbro"]["last_gbro_date"], date(2024, 3, 1))
        self.assertEqual(stats["gbro"]["next_gbro_expires_at"], date(2024, 5, 31))
        self.assertEqual(stats["gbro"]["gbro_reference_type"], "violation")


if __name__ == "__main__":
    unittest.main()
