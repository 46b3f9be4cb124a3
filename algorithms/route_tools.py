import datetime
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .metric_parser import MetricParser


class RouteTools:
    """Distance and split helpers for recorded GPS routes.

    A route point is a mapping with ``latitude``, ``longitude`` and
    ``timestamp`` keys.  Numeric timestamps are epoch milliseconds, strings
    are ISO 8601.
    """

    EARTH_RADIUS_KM = 6371.0

    # split key -> distance in km
    SPLIT_DISTANCES = {
        "100m": 0.1,
        "500m": 0.5,
        "1k": 1.0,
        "5k": 5.0,
        "10k": 10.0,
        "halfMarathon": 21.0975,
        "marathon": 42.195,
    }

    @classmethod
    def haversine_km(cls, lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        d_lat = math.radians(lat2 - lat1)
        d_lon = math.radians(lon2 - lon1)
        a = (
            math.sin(d_lat / 2) ** 2
            + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
        )
        return cls.EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    @staticmethod
    def _seconds(value: Any) -> Optional[float]:
        if isinstance(value, datetime.datetime):
            return value.timestamp()
        if isinstance(value, str):
            text = value.strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                return datetime.datetime.fromisoformat(text).timestamp()
            except ValueError:
                pass
        millis = MetricParser.classify(value).value
        return millis / 1000 if millis is not None else None

    @classmethod
    def _points(cls, coordinates: Iterable[Any]) -> List[Tuple[float, float, float]]:
        points = []
        for coord in coordinates or []:
            if not isinstance(coord, Mapping):
                continue
            lat = MetricParser.classify(MetricParser.lookup(coord, "latitude", "lat")).value
            lon = MetricParser.classify(MetricParser.lookup(coord, "longitude", "lon", "lng")).value
            ts = cls._seconds(MetricParser.lookup(coord, "timestamp", "time"))
            if lat is None or lon is None or ts is None:
                continue
            points.append((lat, lon, ts))
        return points

    @classmethod
    def calculate_split_times(
        cls, coordinates: Iterable[Any], total_distance: Optional[float] = None
    ) -> Dict[str, Optional[int]]:
        """Return whole seconds from the start at which each split distance
        was reached, interpolating linearly inside the crossing segment.

        Splits longer than ``total_distance`` (defaults to the route length)
        or never reached are ``None``.  Routes with fewer than two usable
        points give an empty dict.
        """
        points = cls._points(coordinates)
        if len(points) < 2:
            return {}
        start = points[0][2]
        splits: Dict[str, Optional[int]] = {key: None for key in cls.SPLIT_DISTANCES}
        covered = 0.0
        for prev, curr in zip(points, points[1:]):
            segment = cls.haversine_km(prev[0], prev[1], curr[0], curr[1])
            if segment <= 0:
                continue
            before = covered
            covered += segment
            for key, distance in cls.SPLIT_DISTANCES.items():
                if splits[key] is None and before < distance <= covered:
                    ratio = (distance - before) / segment
                    at = prev[2] + (curr[2] - prev[2]) * ratio
                    splits[key] = math.floor(at - start)
        if total_distance is None:
            total_distance = covered
        for key, distance in cls.SPLIT_DISTANCES.items():
            if distance > total_distance:
                splits[key] = None
        return splits
