from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from math import asin, cos, radians, sin, sqrt
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from punchsync.models import LocationPing, WorkSite

MISSING_ACCURACY_M = 1000.0


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    earth_radius_m = 6371000.0

    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return earth_radius_m * c


def nearest_site(sites: Sequence[WorkSite], lat: float, lon: float) -> tuple[WorkSite | None, float | None]:
    best_site: WorkSite | None = None
    best_distance: float | None = None
    for site in sites:
        value = distance_m(site.lat, site.lon, lat, lon)
        if best_distance is None or value < best_distance:
            best_site, best_distance = site, value
    return best_site, best_distance


def is_away_from_work(
    ping: LocationPing | None,
    sites: Sequence[WorkSite],
) -> tuple[bool, dict[str, float | int | str]]:
    """Whether the ping lies outside the radius of every active work site."""
    if ping is None:
        return False, {"reason": "no_location_ping"}

    if not sites:
        return False, {"reason": "no_work_sites"}

    site, value = nearest_site(sites, ping.lat, ping.lon)
    if site is None or value is None:
        return False, {"reason": "no_work_sites"}

    flags: dict[str, float | int | str] = {
        "nearest_site": site.name,
        "distance_m": round(value, 2),
        "radius_m": site.radius_m,
    }
    return value > site.radius_m, flags


class LocationConfidenceScorer(Protocol):
    def score_location_confidence(self, pings: Sequence[LocationPing]) -> int: ...


class HeuristicConfidenceScorer:
    """Averages an accuracy score and a ping-count score, both 0..100.

    Pings without an accuracy value count as 1000 m; ten or more pings
    give a full count score.
    """

    def score_location_confidence(self, pings: Sequence[LocationPing]) -> int:
        if not pings:
            return 0

        accuracies = [
            float(ping.accuracy_m) if ping.accuracy_m is not None else MISSING_ACCURACY_M
            for ping in pings
        ]
        average_accuracy = sum(accuracies) / len(accuracies)
        accuracy_score = max(0.0, 100.0 - average_accuracy / 10.0)
        count_score = min(100.0, len(pings) * 10.0)
        return int(round((accuracy_score + count_score) / 2))


def active_work_sites(db: Session) -> list[WorkSite]:
    return list(db.scalars(select(WorkSite).where(WorkSite.is_active.is_(True))).all())


def pings_between(
    db: Session,
    *,
    employee_code: str,
    start_utc: datetime,
    end_utc: datetime,
) -> list[LocationPing]:
    stmt = (
        select(LocationPing)
        .where(
            LocationPing.employee_code == employee_code,
            LocationPing.ts_utc >= start_utc,
            LocationPing.ts_utc <= end_utc,
        )
        .order_by(LocationPing.ts_utc.asc(), LocationPing.id.asc())
    )
    return list(db.scalars(stmt).all())
