from __future__ import annotations

import unittest
from datetime import date, timedelta

from point_engine.models import ExpirationType
from point_engine.services.expiration import add_months
from point_engine.services.gbro import GbroCandidate, compute_gbro_timeline

WINDOW = timedelta(days=60)


def _candidate(point_id: int, shift_date: date, *, months: int = 6) -> GbroCandidate:
    return GbroCandidate(point_id=point_id, shift_date=shift_date, expires_at=add_months(shift_date, months))


class GbroTimelineTests(unittest.TestCase):
    def test_later_point_inside_window_suppresses_earlier(self) -> None:
        states = compute_gbro_timeline(
            [_candidate(1, date(2024, 1, 1)), _candidate(2, date(2024, 2, 15))],
            today=date(2024, 3, 1),
            window=WINDOW,
        )

        self.assertIsNone(states[1].gbro_expires_at)
        self.assertEqual(states[2].gbro_expires_at, date(2024, 4, 15))
        self.assertFalse(states[1].is_expired)
        self.assertFalse(states[2].is_expired)

    def test_point_after_window_does_not_suppress(self) -> None:
        states = compute_gbro_timeline(
            [_candidate(1, date(2024, 1, 1)), _candidate(2, date(2024, 3, 1))],
            today=date(2024, 2, 1),
            window=WINDOW,
        )

        self.assertEqual(states[1].gbro_expires_at, date(2024, 3, 1))
        self.assertEqual(states[2].gbro_expires_at, date(2024, 4, 30))

    def test_clean_window_expires_point_via_gbro(self) -> None:
        states = compute_gbro_timeline([_candidate(1, date(2024, 1, 1))], today=date(2024, 3, 5), window=WINDOW)

        self.assertTrue(states[1].is_expired)
        self.assertEqual(states[1].expiration_type, ExpirationType.GBRO)
        self.assertEqual(states[1].expired_at, date(2024, 3, 1))

    def test_lapse_of_interrupting_point_releases_earlier_point(self) -> None:
        states = compute_gbro_timeline(
            [_candidate(1, date(2024, 1, 1)), _candidate(2, date(2024, 2, 15))],
            today=date(2024, 5, 1),
            window=WINDOW,
        )

        self.assertEqual(states[2].expired_at, date(2024, 4, 15))
        self.assertEqual(states[2].expiration_type, ExpirationType.GBRO)
        # Released on Apr 15, its own window already closed, so it lapses that same day.
        self.assertTrue(states[1].is_expired)
        self.assertEqual(states[1].expired_at, date(2024, 4, 15))
        self.assertEqual(states[1].expiration_type, ExpirationType.GBRO)

    def test_fixed_date_caps_a_permanently_suppressed_point(self) -> None:
        shift_dates = [date(2024, 1, 1) + timedelta(days=30 * index) for index in range(8)]
        candidates = [_candidate(index + 1, shift_date) for index, shift_date in enumerate(shift_dates)]

        states = compute_gbro_timeline(candidates, today=date(2024, 7, 30), window=WINDOW)

        self.assertTrue(states[1].is_expired)
        self.assertEqual(states[1].expiration_type, ExpirationType.SRO)
        self.assertEqual(states[1].expired_at, date(2024, 7, 1))
        for point_id in range(2, 9):
            self.assertFalse(states[point_id].is_expired)
        for point_id in range(2, 8):
            self.assertIsNone(states[point_id].gbro_expires_at)
        self.assertEqual(states[8].gbro_expires_at, shift_dates[-1] + WINDOW)

    def test_same_day_points_are_ordered_by_id(self) -> None:
        states = compute_gbro_timeline(
            [_candidate(7, date(2024, 1, 1)), _candidate(3, date(2024, 1, 1))],
            today=date(2024, 1, 2),
            window=WINDOW,
        )

        self.assertIsNone(states[3].gbro_expires_at)
        self.assertEqual(states[7].gbro_expires_at, date(2024, 3, 1))

    def test_coinciding_dates_record_gbro(self) -> None:
        candidate = GbroCandidate(point_id=1, shift_date=date(2024, 1, 1), expires_at=date(2024, 3, 1))

        states = compute_gbro_timeline([candidate], today=date(2024, 3, 1), window=WINDOW)

        self.assertEqual(states[1].expiration_type, ExpirationType.GBRO)

    def test_replaying_survivors_is_a_no_op(self) -> None:
        candidates = [
            _candidate(1, date(2024, 1, 1)),
            _candidate(2, date(2024, 1, 20)),
            _candidate(3, date(2024, 4, 10)),
            _candidate(4, date(2024, 5, 1)),
        ]
        today = date(2024, 6, 1)
        first = compute_gbro_timeline(candidates, today=today, window=WINDOW)
        survivors = [item for item in candidates if not first[item.point_id].is_expired]

        second = compute_gbro_timeline(survivors, today=today, window=WINDOW)

        self.assertTrue(any(state.is_expired for state in first.values()))
        for candidate in survivors:
            self.assertEqual(second[candidate.point_id], first[candidate.point_id])

    def test_month_arithmetic_clamps_to_month_end(self) -> None:
        self.assertEqual(add_months(date(2024, 8, 31), 6), date(2025, 2, 28))
        self.assertEqual(add_months(date(2023, 8, 31), 6), date(2024, 2, 29))
        self.assertEqual(add_months(date(2024, 1, 15), 12), date(2025, 1, 15))


if __name__ == "__main__":
    unittest.main()
