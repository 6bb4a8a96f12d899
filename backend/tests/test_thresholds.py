from __future__ import annotations

from unittest import TestCase

from app.services.thresholds import THRESHOLD_PROFILES, evaluate, evaluated_types


def _types(candidates) -> set[tuple[str, str]]:
    return {(candidate.warning_type, candidate.severity) for candidate in candidates}


class ThresholdEvaluationTests(TestCase):
    def test_voltage_far_above_max_is_major(self) -> None:
        candidates = evaluate("display", {"voltage": 300.0})

        self.assertEqual(_types(candidates), {("voltage_high", "major")})
        self.assertAlmostEqual(candidates[0].threshold_value, 288.0)
        self.assertEqual(candidates[0].measured_value, 300.0)

    def test_voltage_slightly_above_max_is_moderate(self) -> None:
        candidates = evaluate("display", {"voltage": 250.0})

        self.assertEqual(_types(candidates), {("voltage_warning", "moderate")})
        self.assertEqual(candidates[0].threshold_value, 240)

    def test_voltage_within_bounds_has_no_candidate(self) -> None:
        self.assertEqual(evaluate("display", {"voltage": 235.0}), [])

    def test_voltage_low_tiers(self) -> None:
        self.assertEqual(_types(evaluate("display", {"voltage": 150.0})), {("voltage_low", "major")})
        self.assertEqual(_types(evaluate("display", {"voltage": 190.0})), {("voltage_warning", "moderate")})

    def test_current_and_power_have_no_low_side_rule(self) -> None:
        candidates = evaluate("image_processor", {"current": 0.5, "power": 100.0})

        self.assertEqual(
            _types(candidates),
            {("current_warning", "moderate"), ("power_warning", "moderate")},
        )
        self.assertEqual(evaluate("image_processor", {"current": 0.0, "power": 0.0}), [])

    def test_only_supplied_fields_are_evaluated(self) -> None:
        self.assertEqual(evaluate("display", {"machine_state": True}), [])
        self.assertEqual(evaluated_types("display", {"machine_state": True}), frozenset())

    def test_unknown_device_type_yields_nothing(self) -> None:
        self.assertEqual(evaluate("coffee_machine", {"voltage": 999.0}), [])
        self.assertEqual(evaluated_types("coffee_machine", {"voltage": 999.0}), frozenset())

    def test_leak_current_fires_only_highest_tier(self) -> None:
        self.assertEqual(_types(evaluate("environment", {"leak_current": 12.0})), {("leak_current_shutdown", "critical")})
        self.assertEqual(_types(evaluate("environment", {"leak_current": 6.0})), {("leak_current_strong", "major")})
        self.assertEqual(_types(evaluate("environment", {"leak_current": 3.0})), {("leak_current_soft", "minor")})
        self.assertEqual(evaluate("environment", {"leak_current": 2.9}), [])

    def test_environment_temperature_and_humidity(self) -> None:
        candidates = evaluate("environment", {"temperature": 41.0, "humidity": 97.0})

        self.assertEqual(
            _types(candidates),
            {("temperature_warning", "moderate"), ("humidity_high", "major")},
        )
        self.assertEqual(_types(evaluate("environment", {"humidity": 85.0})), {("humidity_warning", "moderate")})

    def test_environment_ignores_electrical_fields(self) -> None:
        self.assertEqual(evaluate("environment", {"voltage": 400.0}), [])

    def test_at_most_one_candidate_per_type(self) -> None:
        for device_type in THRESHOLD_PROFILES:
            candidates = evaluate(
                device_type,
                {
                    "voltage": 500.0,
                    "current": 50.0,
                    "power": 5000.0,
                    "temperature": 90.0,
                    "humidity": 120.0,
                    "leak_current": 20.0,
                },
            )
            warning_types = [candidate.warning_type for candidate in candidates]
            self.assertEqual(len(warning_types), len(set(warning_types)), device_type)

    def test_evaluated_types_cover_supplied_fields(self) -> None:
        self.assertEqual(
            evaluated_types("display", {"voltage": 220.0}),
            frozenset({"voltage_high", "voltage_low", "voltage_warning"}),
        )
        self.assertEqual(
            evaluated_types("led_light", {"current": 1.0, "power": 100.0}),
            frozenset({"current_warning", "power_warning"}),
        )
