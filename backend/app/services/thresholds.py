from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from app.services.reading_parser import Reading

VOLTAGE_MAJOR_HIGH_FACTOR = 1.2
VOLTAGE_MAJOR_LOW_FACTOR = 0.8
HUMIDITY_MAJOR_FACTOR = 1.2

WARNING_TYPES_BY_FIELD: dict[str, tuple[str, ...]] = {
    "voltage": ("voltage_high", "voltage_low", "voltage_warning"),
    "current": ("current_warning",),
    "power": ("power_warning",),
    "temperature": ("temperature_warning",),
    "humidity": ("humidity_high", "humidity_warning"),
    "leak_current": ("leak_current_shutdown", "leak_current_strong", "leak_current_soft"),
}


@dataclass(frozen=True)
class ThresholdProfile:
    device_type: str
    label: str
    voltage_min: float | None = None
    voltage_max: float | None = None
    current_max: float | None = None
    power_max: float | None = None
    temperature_max: float | None = None
    humidity_max: float | None = None
    leak_current_soft: float | None = None
    leak_current_strong: float | None = None
    leak_current_shutdown: float | None = None

    def governs(self, field_name: str) -> bool:
        if field_name == "voltage":
            return self.voltage_min is not None or self.voltage_max is not None
        if field_name == "current":
            return self.current_max is not None
        if field_name == "power":
            return self.power_max is not None
        if field_name == "temperature":
            return self.temperature_max is not None
        if field_name == "humidity":
            return self.humidity_max is not None
        if field_name == "leak_current":
            return any(
                value is not None
                for value in (self.leak_current_soft, self.leak_current_strong, self.leak_current_shutdown)
            )
        return False


@dataclass(frozen=True)
class CandidateWarning:
    warning_type: str
    severity: str
    measured_value: float
    threshold_value: float
    message: str
    source_field: str


THRESHOLD_PROFILES: dict[str, ThresholdProfile] = {
    profile.device_type: profile
    for profile in (
        ThresholdProfile(
            device_type="display",
            label="Medical display",
            voltage_min=200,
            voltage_max=240,
            current_max=0.63,
            power_max=150,
        ),
        ThresholdProfile(
            device_type="image_processor",
            label="Image processor",
            voltage_min=200,
            voltage_max=240,
            current_max=0.41,
            power_max=96,
        ),
        ThresholdProfile(
            device_type="co2_pump",
            label="CO2 insufflation pump",
            voltage_min=200,
            voltage_max=240,
            current_max=1.05,
            power_max=250,
        ),
        ThresholdProfile(
            device_type="led_light",
            label="LED surgical light",
            voltage_min=200,
            voltage_max=240,
            current_max=1.9,
            power_max=450,
        ),
        ThresholdProfile(
            device_type="environment",
            label="Room environment sensor",
            temperature_max=40,
            humidity_max=80,
            leak_current_soft=3,
            leak_current_strong=5,
            leak_current_shutdown=10,
        ),
    )
}


def get_profile(
    device_type: str,
    profiles: Mapping[str, ThresholdProfile] | None = None,
) -> ThresholdProfile | None:
    return (profiles if profiles is not None else THRESHOLD_PROFILES).get(device_type)


def evaluate(
    device_type: str,
    reading: Reading | Mapping[str, float | bool],
    profiles: Mapping[str, ThresholdProfile] | None = None,
) -> list[CandidateWarning]:
    """Return the warnings a reading breaches for its device type.

    Only fields present in the reading are checked, and tiered rules emit the
    most severe matching tier only, so each warning type appears at most once.
    """
    profile = get_profile(device_type, profiles)
    if profile is None:
        return []
    values = reading.values if isinstance(reading, Reading) else reading

    candidates: list[CandidateWarning] = []
    voltage = _numeric(values, "voltage")
    if voltage is not None:
        candidate = _voltage_candidate(profile, voltage)
        if candidate is not None:
            candidates.append(candidate)

    current = _numeric(values, "current")
    if current is not None and profile.current_max is not None and current > profile.current_max:
        candidates.append(
            _candidate("current_warning", "moderate", current, profile.current_max, "Current above maximum", "A", "current")
        )

    power = _numeric(values, "power")
    if power is not None and profile.power_max is not None and power > profile.power_max:
        candidates.append(
            _candidate("power_warning", "moderate", power, profile.power_max, "Power above maximum", "W", "power")
        )

    temperature = _numeric(values, "temperature")
    if (
        temperature is not None
        and profile.temperature_max is not None
        and temperature > profile.temperature_max
    ):
        candidates.append(
            _candidate(
                "temperature_warning",
                "moderate",
                temperature,
                profile.temperature_max,
                "Temperature above maximum",
                "C",
                "temperature",
            )
        )

    humidity = _numeric(values, "humidity")
    if humidity is not None and profile.humidity_max is not None:
        major_limit = profile.humidity_max * HUMIDITY_MAJOR_FACTOR
        if humidity > major_limit:
            candidates.append(
                _candidate("humidity_high", "major", humidity, major_limit, "Humidity far above maximum", "%", "humidity")
            )
        elif humidity > profile.humidity_max:
            candidates.append(
                _candidate(
                    "humidity_warning",
                    "moderate",
                    humidity,
                    profile.humidity_max,
                    "Humidity above maximum",
                    "%",
                    "humidity",
                )
            )

    leak_current = _numeric(values, "leak_current")
    if leak_current is not None:
        candidate = _leak_current_candidate(profile, leak_current)
        if candidate is not None:
            candidates.append(candidate)

    return candidates


def evaluated_types(
    device_type: str,
    reading: Reading | Mapping[str, float | bool],
    profiles: Mapping[str, ThresholdProfile] | None = None,
) -> frozenset[str]:
    """Warning types whose rule actually ran for this reading."""
    profile = get_profile(device_type, profiles)
    if profile is None:
        return frozenset()
    values = reading.values if isinstance(reading, Reading) else reading
    types: set[str] = set()
    for field_name, warning_types in WARNING_TYPES_BY_FIELD.items():
        if _numeric(values, field_name) is not None and profile.governs(field_name):
            types.update(warning_types)
    return frozenset(types)


def _voltage_candidate(profile: ThresholdProfile, voltage: float) -> CandidateWarning | None:
    if profile.voltage_max is not None:
        major_limit = profile.voltage_max * VOLTAGE_MAJOR_HIGH_FACTOR
        if voltage > major_limit:
            return _candidate("voltage_high", "major", voltage, major_limit, "Voltage far above maximum", "V", "voltage")
        if voltage > profile.voltage_max:
            return _candidate(
                "voltage_warning",
                "moderate",
                voltage,
                profile.voltage_max,
                "Voltage above maximum",
                "V",
                "voltage",
            )
    if profile.voltage_min is not None:
        major_limit = profile.voltage_min * VOLTAGE_MAJOR_LOW_FACTOR
        if voltage < major_limit:
            return _candidate("voltage_low", "major", voltage, major_limit, "Voltage far below minimum", "V", "voltage")
        if voltage < profile.voltage_min:
            return _candidate(
                "voltage_warning",
                "moderate",
                voltage,
                profile.voltage_min,
                "Voltage below minimum",
                "V",
                "voltage",
            )
    return None


def _leak_current_candidate(profile: ThresholdProfile, leak_current: float) -> CandidateWarning | None:
    tiers = (
        ("leak_current_shutdown", "critical", profile.leak_current_shutdown, "Leak current at shutdown level"),
        ("leak_current_strong", "major", profile.leak_current_strong, "Strong leak current"),
        ("leak_current_soft", "minor", profile.leak_current_soft, "Leak current above soft limit"),
    )
    for warning_type, severity, threshold, label in tiers:
        if threshold is not None and leak_current >= threshold:
            return _candidate(warning_type, severity, leak_current, threshold, label, "mA", "leak_current")
    return None


def _candidate(
    warning_type: str,
    severity: str,
    measured: float,
    threshold: float,
    label: str,
    unit: str,
    source_field: str,
) -> CandidateWarning:
    return CandidateWarning(
        warning_type=warning_type,
        severity=severity,
        measured_value=measured,
        threshold_value=threshold,
        message=f"{label}: {measured:g} {unit} (threshold {threshold:g} {unit})",
        source_field=source_field,
    )


def _numeric(values: Mapping[str, float | bool], name: str) -> float | None:
    value = values.get(name)
    if value is None or isinstance(value, bool):
        return None
    return float(value)
