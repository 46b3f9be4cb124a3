import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from algorithms import MetricKind, MetricParser
from errors import MalformedMetricError


class MetricParserTestCase(unittest.TestCase):
    def test_classify_numbers(self) -> None:
        result = MetricParser.classify(5)
        self.assertEqual(result.kind, MetricKind.NUMBER)
        self.assertEqual(result.value, 5.0)
        self.assertEqual(MetricParser.classify(2.5).value, 2.5)

    def test_classify_string_numeric(self) -> None:
        result = MetricParser.classify(" 80 ")
        self.assertEqual(result.kind, MetricKind.STRING_NUMERIC)
        self.assertEqual(result.value, 80.0)

    def test_classify_nested(self) -> None:
        result = MetricParser.classify({"value": "12.5", "unit": "kg"})
        self.assertEqual(result.kind, MetricKind.NESTED)
        self.assertEqual(result.value, 12.5)
        self.assertEqual(MetricParser.classify({"Amount": 3}).value, 3.0)

    def test_classify_unparseable(self) -> None:
        for raw in (None, True, "abc", "", float("nan"), float("inf"), "inf", [], {"unit": "kg"}):
            with self.subTest(raw=raw):
                result = MetricParser.classify(raw)
                self.assertEqual(result.kind, MetricKind.UNPARSEABLE)
                self.assertIsNone(result.value)
                self.assertFalse(result.parseable)

    def test_huge_integer_is_unparseable(self) -> None:
        result = MetricParser.classify(10**400)
        self.assertEqual(result.kind, MetricKind.UNPARSEABLE)
        self.assertEqual(MetricParser.to_number(10**400), 0.0)
        self.assertEqual(MetricParser.to_number("1" * 500), 0.0)

    def test_to_number_defaults(self) -> None:
        self.assertEqual(MetricParser.to_number("oops"), 0.0)
        self.assertEqual(MetricParser.to_number(None, 3.0), 3.0)
        self.assertEqual(MetricParser.to_number("7"), 7.0)

    def test_lookup_case_insensitive(self) -> None:
        self.assertEqual(MetricParser.lookup({"Weight": 100}, "weight"), 100)
        self.assertEqual(MetricParser.lookup({"weight": 1, "WEIGHT": 2}, "weight"), 1)
        self.assertEqual(MetricParser.lookup({"Time": 30}, "reps", "time"), 30)
        self.assertIsNone(MetricParser.lookup({}, "weight"))
        self.assertIsNone(MetricParser.lookup(None, "weight"))

    def test_parse_bag(self) -> None:
        self.assertEqual(MetricParser.parse_bag('{"reps": 5}'), {"reps": 5})
        self.assertEqual(MetricParser.parse_bag(b'{"reps": 5}'), {"reps": 5})
        self.assertEqual(MetricParser.parse_bag({"reps": 5}), {"reps": 5})
        self.assertEqual(MetricParser.parse_bag(None), {})
        self.assertEqual(MetricParser.parse_bag(""), {})
        self.assertEqual(MetricParser.parse_bag("null"), {})

    def test_parse_bag_rejects_malformed(self) -> None:
        for raw in ("{bad json", "[1, 2]", "5", 42):
            with self.subTest(raw=raw):
                with self.assertRaises(MalformedMetricError):
                    MetricParser.parse_bag(raw)

    def test_malformed_error_is_value_error(self) -> None:
        with self.assertRaises(ValueError):
            MetricParser.parse_bag("{bad")

    def test_load_bag_recovers(self) -> None:
        self.assertEqual(MetricParser.load_bag("{bad", set_id=1), {})
        self.assertEqual(MetricParser.load_bag('{"weight": "80"}'), {"weight": "80"})

    def test_oversized_integer_payload(self) -> None:
        payload = '{"weight": ' + "9" * 5000 + "}"
        bag = MetricParser.load_bag(payload)
        self.assertEqual(MetricParser.to_number(MetricParser.lookup(bag, "weight")), 0.0)
        MetricParser.parse_list("[" + "9" * 5000 + "]")

    def test_parse_list(self) -> None:
        self.assertEqual(MetricParser.parse_list('["chest", "triceps"]'), ["chest", "triceps"])
        self.assertEqual(MetricParser.parse_list(["back"]), ["back"])
        self.assertEqual(MetricParser.parse_list(None), [])
        self.assertEqual(MetricParser.parse_list("{bad"), [])
        self.assertEqual(MetricParser.parse_list('{"a": 1}'), [])


if __name__ == "__main__":
    unittest.main()
