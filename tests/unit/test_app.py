"""Recorder, settings, display and REPL command plumbing without a device."""

import json
from datetime import datetime, timedelta

import pytest
from prompt_toolkit.document import Document
from rich.console import Console

from treadsync.commands import COMMANDS, CommandCompleter, get_command
from treadsync.config import Settings, get_config_file, load_settings
from treadsync.display import DisplayManager
from treadsync.models import Advertisement, DeviceKind, TelemetrySample, TelemetryUpdate
from treadsync.recorder import SessionRecorder, WorkoutSession


class SteppingClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 7, 30, 0)

    def __call__(self) -> datetime:
        return self.now


# ---------- Recorder ----------


def test_recorder_counts_steps_across_session():
    clock = SteppingClock()
    recorder = SessionRecorder(clock=clock)
    recorder.on_telemetry_updated(TelemetrySample(steps=1000))

    recorder.on_session_started()
    recorder.on_telemetry_updated(TelemetrySample(steps=1250))
    assert recorder.current.steps == 250

    clock.now += timedelta(minutes=20)
    recorder.on_telemetry_updated(TelemetrySample(steps=3000))
    recorder.on_session_ended()

    assert recorder.current is None
    [session] = recorder.sessions
    assert session.steps == 2000
    assert session.duration_s == 1200


def test_recorder_end_without_start():
    recorder = SessionRecorder(clock=SteppingClock())
    recorder.on_session_ended()
    assert len(recorder.sessions) == 1
    assert recorder.sessions[0].steps == 0


def test_recorder_listener_errors_are_contained():
    recorder = SessionRecorder()
    seen = []

    def broken(event, sample):
        raise RuntimeError("boom")

    recorder.add_listener(broken)
    recorder.add_listener(lambda event, sample: seen.append(event))
    recorder.on_session_started()
    recorder.on_telemetry_updated(TelemetrySample(steps=5))
    recorder.remove_listener(broken)
    recorder.on_session_ended()
    assert seen == ["started", "telemetry", "ended"]


def test_sample_merge_keeps_missing_fields():
    sample = TelemetrySample(distance_m=10.0, steps=20, duration_s=30, calories=4, speed_kph=5.0)
    merged = sample.merged(TelemetryUpdate(steps=25))
    assert merged.steps == 25
    assert merged.distance_m == 10.0
    assert sample.merged(TelemetryUpdate()) is sample


# ---------- Settings ----------


def test_missing_config_gives_defaults(tmp_path):
    assert load_settings(tmp_path / "nope.json") == Settings()


def test_config_file_values(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"device": "polling_console", "retry_interval_ms": 2000, "colour": "red"}))
    settings = load_settings(path)
    assert settings.device is DeviceKind.POLLING_CONSOLE
    assert settings.retry_interval_ms == 2000
    assert settings.scan_duration_ms == 3000


def test_malformed_config_gives_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_settings(path) == Settings()


def test_bad_device_value_gives_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"device": "rowing_machine"}))
    assert load_settings(path).device is DeviceKind.FTMS


def test_overrides_skip_none():
    settings = Settings().with_overrides(device="serial_snoop", request_port=None, log_level="DEBUG")
    assert settings.device is DeviceKind.SERIAL_SNOOP
    assert settings.request_port is None
    assert settings.log_level == "DEBUG"


def test_config_file_honours_xdg(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert get_config_file() == tmp_path / "treadsync" / "config.json"


# ---------- Display ----------


@pytest.fixture
def display():
    return DisplayManager(Console(record=True, width=120))


def test_status_table(display):
    display.print_status(
        {"status": "IN SESSION", "speed": 4.5, "distance": 1240.0, "time": 3725, "steps": 1560, "calories": 12}
    )
    text = display.console.export_text()
    assert "IN SESSION" in text
    assert "4.5 km/h" in text
    assert "1.24 km" in text
    assert "1:02:05" in text
    assert "1,560" in text


def test_formatters():
    assert DisplayManager.format_time(125) == "2:05"
    assert DisplayManager.format_distance(250.4) == "250 m"
    assert DisplayManager.format_speed(None) == "0.0 km/h"
    assert DisplayManager.format_energy(None) == "0 kcal"


def test_sessions_table(display):
    start = datetime(2024, 5, 1, 7, 0, 0)
    done = WorkoutSession(start=start, stop=start + timedelta(minutes=30), steps=3200)
    running = WorkoutSession(start=start + timedelta(hours=2))
    display.print_sessions([done], running)
    text = display.console.export_text()
    assert "3,200" in text
    assert "running" in text


def test_empty_sessions(display):
    display.print_sessions([])
    assert "No workouts recorded yet" in display.console.export_text()


def test_scan_results(display):
    display.print_scan_results(
        [Advertisement("AA:BB", "KS-AP-RQ3", ("00001826-0000-1000-8000-00805f9b34fb",))]
    )
    text = display.console.export_text()
    assert "KS-AP-RQ3" in text
    assert "1826" in text


def test_live_toggle(display):
    assert display.toggle_live()
    display.update_live({"status": "IDLE", "steps": 10})
    assert display._live_data["steps"] == 10
    assert not display.toggle_live()


# ---------- Commands ----------


def test_command_lookup():
    assert get_command("st").name == "status"
    assert get_command("history").name == "sessions"
    assert get_command("connect") is None
    assert all(cmd.handler.startswith("cmd_") for cmd in COMMANDS)


def test_completer_commands():
    completer = CommandCompleter()
    names = [c.text for c in completer.get_completions(Document("se"), None)]
    assert names == ["sessions"]


def test_completer_device_argument():
    completer = CommandCompleter()
    names = [c.text for c in completer.get_completions(Document("reset p"), None)]
    assert names == ["polling_console", "proprietary"]
    assert list(completer.get_completions(Document("status x"), None)) == []
