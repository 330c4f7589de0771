from __future__ import annotations

import argparse
import csv
import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Final

from zoneinfo import ZoneInfo

from path_timeline.geo import haversine_m


TZ: Final[str] = "Asia/Shanghai"


@dataclass(frozen=True, slots=True)
class Place:
    name: str
    lat: float
    lon: float


@dataclass(frozen=True, slots=True)
class Leg:
    """Stay at ``place`` until ``until`` (local time), then travel to the next leg at ``speed_kmh``."""

    place: Place
    until: time
    speed_kmh: float


class _Track:
    def __init__(self, rng: random.Random, spike_rate: float) -> None:
        self.rng = rng
        self.spike_rate = spike_rate
        self.rows: list[dict[str, str]] = []

    def add(self, when: datetime, lat: float, lon: float, hacc: float, speed: float) -> None:
        rng = self.rng
        if rng.random() < self.spike_rate:
            # multipath outlier, a few kilometres off
            lat += rng.choice([-1, 1]) * rng.uniform(0.03, 0.08)
            lon += rng.choice([-1, 1]) * rng.uniform(0.03, 0.08)
        self.rows.append(
            {
                "geoTime": str(int(when.timestamp() * 1000)),
                "latitude": f"{lat:.7f}",
                "longitude": f"{lon:.7f}",
                "altitude": f"{rng.uniform(3, 40):.1f}",
                "course": f"{rng.uniform(0, 360):.1f}",
                "horizontalAccuracy": f"{hacc:.1f}",
                "speed": f"{speed:.1f}",
            }
        )

    def stay(self, place: Place, start: datetime, end: datetime) -> None:
        cur = start
        while cur < end:
            hacc = self.rng.choice([5.0, 8.0, 12.0, 20.0, -1.0])
            self.add(
                cur,
                place.lat + self.rng.uniform(-0.00015, 0.00015),
                place.lon + self.rng.uniform(-0.00015, 0.00015),
                hacc,
                0.0,
            )
            cur += timedelta(seconds=self.rng.uniform(30, 120))

    def travel(self, a: Place, b: Place, start: datetime, speed_kmh: float) -> datetime:
        distance = haversine_m(a.lat, a.lon, b.lat, b.lon)
        seconds = distance / (speed_kmh / 3.6)
        steps = max(2, int(seconds // 15))
        for i in range(1, steps):
            f = i / steps
            self.add(
                start + timedelta(seconds=seconds * f),
                a.lat + (b.lat - a.lat) * f + self.rng.uniform(-0.00005, 0.00005),
                a.lon + (b.lon - a.lon) * f + self.rng.uniform(-0.00005, 0.00005),
                self.rng.choice([5.0, 8.0, 10.0]),
                speed_kmh / 3.6,
            )
        return start + timedelta(seconds=seconds)


def generate_points(*, days: int, seed: int, first_day: date, spike_rate: float) -> list[dict[str, str]]:
    """Generate fake Path.csv rows: nights at home, commutes, office hours and lunch breaks."""

    rng = random.Random(seed)
    tz = ZoneInfo(TZ)
    home = Place("home", 31.2222000, 121.4588000)
    office = Place("office", 31.2304000, 121.4737000)
    canteen = Place("canteen", 31.2331000, 121.4762000)
    gym = Place("gym", 31.2189000, 121.4498000)

    track = _Track(rng, spike_rate)
    for d in range(days):
        day = first_day + timedelta(days=d)
        evening = [Leg(gym, time(20, 30), 15.0)] if day.weekday() in (1, 3) else []
        plan = [
            Leg(home, time(8, 30 + rng.randint(-10, 10)), rng.choice([15.0, 35.0])),
            Leg(office, time(12, 0), 5.0),
            Leg(canteen, time(12, 50), 5.0),
            Leg(office, time(18, 15 + rng.randint(-10, 20)), rng.choice([15.0, 35.0])),
            *evening,
            Leg(home, time(23, 59), 0.0),
        ]
        cur = datetime.combine(day, time(0, 0), tzinfo=tz)
        for leg, nxt in zip(plan, plan[1:] + [None]):
            leave = datetime.combine(day, leg.until, tzinfo=tz)
            track.stay(leg.place, cur, leave)
            cur = leave if nxt is None else track.travel(leg.place, nxt.place, leave, leg.speed_kmh)

    track.rows.sort(key=lambda r: int(r["geoTime"]))
    return track.rows


def main() -> int:
    p = argparse.ArgumentParser(description="Generate a fake Path.csv for demo/testing (privacy-safe).")
    p.add_argument("--out", type=str, default="sample_data/Path.csv", help="Output CSV path")
    p.add_argument("--days", type=int, default=7, help="Number of days")
    p.add_argument("--seed", type=int, default=42, help="Random seed (reproducible)")
    p.add_argument("--start", type=str, default="2025-01-06", help="First local day in Asia/Shanghai, e.g. '2025-01-06'")
    p.add_argument("--spike-rate", type=float, default=0.002, help="Share of points replaced by GPS outliers")
    args = p.parse_args()

    rows = generate_points(
        days=args.days,
        seed=args.seed,
        first_day=date.fromisoformat(args.start),
        spike_rate=args.spike_rate,
    )
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    fieldnames = ["geoTime", "latitude", "longitude", "altitude", "course", "horizontalAccuracy", "speed"]
    with out_path.open("w", encoding="utf-8", newline="") as f:
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        w.writerows(rows)

    print(f"Generated: {out_path} (rows={len(rows)}, days={args.days}, seed={args.seed})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
