from .metric_parser import MetricKind, MetricParser, MetricValue
from .week_tools import WeekTools
from .route_tools import RouteTools
from .analytics import WorkoutAnalytics
from .weight_converter import WeightConverter

__all__ = [
    "MetricKind",
    "MetricParser",
    "MetricValue",
    "RouteTools",
    "WeekTools",
    "WorkoutAnalytics",
    "WeightConverter",
]
