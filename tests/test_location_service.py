from __future__ import annotations

import unittest
from datetime import datetime, timezone

from punchsync.models import LocationPing, WorkSite
from punchsync.services.location import HeuristicConfidenceScorer, distance_m, is_away_from_work, nearest_site

SITE = WorkSite(name="Head Office", lat=31.5204, lon=74.3587, radius_m=200, is_active=True)
WAREHOUSE = WorkSite(name="Warehouse", lat=31.4504, lon=74.2700, radius_m=300, is_active=True)


def _ping(lat: float, lon: float, accuracy_m: float | None = 15.0) -> LocationPing:
    return LocationPing(
        employee_code="E1",
        ts_utc=datetime(2025, 7, 1, 8, 0, tzinfo=timezone.utc),
        lat=lat,
        lon=lon,
        accuracy_m=accuracy_m,
    )


class LocationServiceTests(unittest.TestCase):
    def test_distance_m_zero_for_same_point(self) -> None:
        value = distance_m(41.0, 29.0, 41.0, 29.0)
        self.assertAlmostEqual(value, 0.0, places=6)

    def test_distance_m_known_reference(self) -> None:
        # Approximate distance for 1 degree longitude on equator.
        value = distance_m(0.0, 0.0, 0.0, 1.0)
        self.assertAlmostEqual(value, 111_195, delta=300)

    def test_nearest_site_picks_closest(self) -> None:
        site, value = nearest_site([SITE, WAREHOUSE], 31.4510, 74.2705)
        self.assertIs(site, WAREHOUSE)
        self.assertLess(value, 100)

        self.assertEqual(nearest_site([], 31.0, 74.0), (None, None))

    def test_ping_inside_any_site_is_not_away(self) -> None:
        away, flags = is_away_from_work(_ping(31.5205, 74.3588), [SITE, WAREHOUSE])
        self.assertFalse(away)
        self.assertEqual(flags["nearest_site"], "Head Office")

    def test_ping_outside_every_site_is_away(self) -> None:
        away, flags = is_away_from_work(_ping(31.6000, 74.5000), [SITE, WAREHOUSE])
        self.assertTrue(away)
        self.assertGreater(flags["distance_m"], flags["radius_m"])

    def test_missing_ping_or_sites_is_not_away(self) -> None:
        self.assertEqual(is_away_from_work(None, [SITE]), (False, {"reason": "no_location_ping"}))
        self.assertEqual(is_away_from_work(_ping(31.6, 74.5), []), (False, {"reason": "no_work_sites"}))


class ConfidenceScorerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.scorer = HeuristicConfidenceScorer()

    def test_no_pings_scores_zero(self) -> None:
        self.assertEqual(self.scorer.score_location_confidence([]), 0)

    def test_many_accurate_pings_score_high(self) -> None:
        pings = [_ping(31.5204, 74.3587, accuracy_m=20.0) for _ in range(10)]
        # accuracy 98, count 100
        self.assertEqual(self.scorer.score_location_confidence(pings), 99)

    def test_missing_accuracy_counts_as_poor(self) -> None:
        pings = [_ping(31.5204, 74.3587, accuracy_m=None) for _ in range(3)]
        # accuracy 0, count 30
        self.assertEqual(self.scorer.score_location_confidence(pings), 15)


if __name__ == "__main__":
    unittest.main()
