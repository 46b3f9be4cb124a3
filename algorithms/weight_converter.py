from .metric_parser import MetricParser


class WeightConverter:
    """Utility for converting between kg and lbs."""

    KG_TO_LB = 2.20462
    UNITS = ("kg", "lbs")

    @staticmethod
    def kg_to_lbs(kg: float) -> float:
        return round(kg * WeightConverter.KG_TO_LB, 2)

    @staticmethod
    def lbs_to_kg(lbs: float) -> float:
        return round(lbs / WeightConverter.KG_TO_LB, 2)

    @classmethod
    def convert(cls, weight, unit: str) -> float:
        """Return ``weight`` stored in kg expressed in ``unit``.

        Unparseable weights are treated as 0.
        """
        if unit not in cls.UNITS:
            raise ValueError(f"unsupported unit: {unit}")
        kg = MetricParser.to_number(weight)
        if unit == "lbs":
            return cls.kg_to_lbs(kg)
        return round(kg, 2)

    @classmethod
    def to_kg(cls, weight, unit: str) -> float:
        """Inverse of :meth:`convert`."""
        if unit not in cls.UNITS:
            raise ValueError(f"unsupported unit: {unit}")
        value = MetricParser.to_number(weight)
        if unit == "lbs":
            return cls.lbs_to_kg(value)
        return round(value, 2)
