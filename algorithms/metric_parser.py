import enum
import json
import math
from dataclasses import dataclass
from typing import Any, Mapping

import structlog

from errors import MalformedMetricError

logger = structlog.get_logger(__name__)


class MetricKind(enum.Enum):
    NUMBER = "number"
    STRING_NUMERIC = "string_numeric"
    NESTED = "nested"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class MetricValue:
    """Classified metric value.

    ``value`` is ``None`` only for :attr:`MetricKind.UNPARSEABLE`.
    """

    kind: MetricKind
    value: float | None
    raw: Any = None

    @property
    def parseable(self) -> bool:
        return self.kind is not MetricKind.UNPARSEABLE


class MetricParser:
    """Normalize the untyped values stored in a set's metrics bag."""

    NESTED_KEYS = ("value", "amount")

    @staticmethod
    def _finite(value: float) -> bool:
        return not (math.isnan(value) or math.isinf(value))

    @classmethod
    def classify(cls, raw: Any) -> MetricValue:
        """Return the tagged form of ``raw``."""
        if isinstance(raw, bool) or raw is None:
            return MetricValue(MetricKind.UNPARSEABLE, None, raw)
        if isinstance(raw, (int, float)):
            try:
                value = float(raw)
            except (OverflowError, ValueError):
                return MetricValue(MetricKind.UNPARSEABLE, None, raw)
            if cls._finite(value):
                return MetricValue(MetricKind.NUMBER, value, raw)
            return MetricValue(MetricKind.UNPARSEABLE, None, raw)
        if isinstance(raw, str):
            text = raw.strip()
            try:
                value = float(text)
            except ValueError:
                return MetricValue(MetricKind.UNPARSEABLE, None, raw)
            if cls._finite(value):
                return MetricValue(MetricKind.STRING_NUMERIC, value, raw)
            return MetricValue(MetricKind.UNPARSEABLE, None, raw)
        if isinstance(raw, Mapping):
            inner = cls.lookup(raw, *cls.NESTED_KEYS)
            if inner is not None and not isinstance(inner, Mapping):
                resolved = cls.classify(inner)
                if resolved.parseable:
                    return MetricValue(MetricKind.NESTED, resolved.value, raw)
        return MetricValue(MetricKind.UNPARSEABLE, None, raw)

    @classmethod
    def to_number(cls, raw: Any, default: float = 0.0) -> float:
        """Return ``raw`` as a float or ``default`` when it cannot be parsed."""
        result = cls.classify(raw)
        if result.value is None:
            return default
        return result.value

    @staticmethod
    def lookup(bag: Mapping[str, Any] | None, *names: str) -> Any:
        """Return the first value in ``bag`` matching one of ``names``.

        Keys are compared case-insensitively; an exact match wins over a
        case-folded one.
        """
        if not bag:
            return None
        for name in names:
            if name in bag:
                return bag[name]
        folded = {str(k).strip().lower(): v for k, v in bag.items()}
        for name in names:
            key = name.lower()
            if key in folded:
                return folded[key]
        return None

    @staticmethod
    def parse_bag(serialized: Any) -> dict:
        """Decode a serialized metrics bag into a dict.

        Raises :class:`MalformedMetricError` when the payload is not a JSON
        object.
        """
        if serialized is None or serialized == "":
            return {}
        if isinstance(serialized, Mapping):
            return dict(serialized)
        if isinstance(serialized, (bytes, bytearray)):
            serialized = serialized.decode("utf-8", errors="replace")
        if not isinstance(serialized, str):
            raise MalformedMetricError(
                f"unsupported metrics payload type {type(serialized).__name__}"
            )
        try:
            data = json.loads(serialized)
        except json.JSONDecodeError as exc:
            raise MalformedMetricError(f"invalid metrics JSON: {exc.msg}") from exc
        except ValueError as exc:
            # integers beyond the interpreter digit limit
            raise MalformedMetricError(f"invalid metrics JSON: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise MalformedMetricError("metrics payload is not a JSON object")
        return data

    @classmethod
    def load_bag(cls, serialized: Any, **context: Any) -> dict:
        """Like :meth:`parse_bag` but recovers to an empty bag."""
        try:
            return cls.parse_bag(serialized)
        except MalformedMetricError as exc:
            logger.warning("malformed_metric_recovered", error=str(exc), **context)
            return {}

    @staticmethod
    def parse_list(serialized: Any, **context: Any) -> list:
        """Decode a serialized list (muscle groups, metric definitions)."""
        if serialized is None or serialized == "":
            return []
        if isinstance(serialized, (list, tuple)):
            return list(serialized)
        try:
            data = json.loads(serialized)
        except (TypeError, ValueError):
            logger.warning("malformed_list_recovered", raw=str(serialized), **context)
            return []
        if not isinstance(data, list):
            logger.warning("malformed_list_recovered", raw=str(serialized), **context)
            return []
        return data
