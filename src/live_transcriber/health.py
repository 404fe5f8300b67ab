import logging
from dataclasses import dataclass

import sounddevice as sd

from live_transcriber.config import TranscriberSettings

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(settings: TranscriberSettings) -> list[HealthCheckResult]:
    results = [
        _check_audio_device(settings),
        _check_api_key(settings),
    ]

    passed = sum(1 for r in results if r.passed)
    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    critical_checks = {"audio_device", "api_key"}
    return any(not r.passed and r.name in critical_checks for r in results)


def _check_audio_device(settings: TranscriberSettings) -> HealthCheckResult:
    name = "audio_device"
    wanted = settings.capture_device
    if not wanted and (settings.echo_cancellation or settings.noise_suppression):
        wanted = settings.echo_cancel_source
    try:
        inputs = [dev for dev in sd.query_devices() if dev["max_input_channels"] > 0]
        if not inputs:
            return HealthCheckResult(name=name, passed=False, detail="No input devices available")

        if not wanted:
            default = sd.query_devices(kind="input")
            return HealthCheckResult(name=name, passed=True, detail=f"Default input: {default['name']}")

        for dev in inputs:
            if wanted.lower() in dev["name"].lower():
                return HealthCheckResult(name=name, passed=True, detail=f"Device '{wanted}' found")

        if settings.pipewire_routing:
            return HealthCheckResult(
                name=name,
                passed=True,
                detail=f"'{wanted}' not in PortAudio (will use PIPEWIRE_NODE)",
            )
        return HealthCheckResult(name=name, passed=False, detail=f"'{wanted}' not found among input devices")
    except Exception as exc:
        return HealthCheckResult(name=name, passed=False, detail=str(exc))


def _check_api_key(settings: TranscriberSettings) -> HealthCheckResult:
    name = "api_key"
    if not settings.read_secret(settings.api_key_file):
        source = settings.api_key_file or "not configured"
        return HealthCheckResult(name=name, passed=False, detail=f"Missing API key ({source})")
    return HealthCheckResult(name=name, passed=True, detail="API key loaded")
