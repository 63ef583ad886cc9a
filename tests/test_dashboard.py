"""Tests for the log event buffer, console handlers and the rich dashboard."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterator

import pytest
from rich.console import Console

from bgm_komga import (
    DashboardEventBuffer,
    DashboardEventHandler,
    LiveAwareConsoleHandler,
    LiveLogState,
    PhaseStats,
    SyncDashboard,
    configure_logging,
)


def make_buffer(**overrides: Any) -> DashboardEventBuffer:
    options = {"max_lines": 8, "dedupe_window_seconds": 30, "max_message_length": 60}
    options.update(overrides)
    return DashboardEventBuffer(**options)


def render_text(dashboard: SyncDashboard) -> str:
    console = Console(record=True, width=140, force_terminal=False)
    console.print(dashboard.render())
    return console.export_text()


class TestDashboardEventBuffer:
    def test_repeated_messages_are_collapsed(self) -> None:
        buffer = make_buffer()

        buffer.add(level="warning", message="Komga slow", now_ts=100)
        buffer.add(level="warning", message="Komga  slow", now_ts=110)

        events = buffer.snapshot()
        assert len(events) == 1
        assert events[0].count == 2
        assert events[0].level == "WARNING"

    def test_repeats_outside_window_are_kept_apart(self) -> None:
        buffer = make_buffer(dedupe_window_seconds=5)

        buffer.add(level="WARNING", message="x", now_ts=100)
        buffer.add(level="WARNING", message="x", now_ts=200)

        assert len(buffer.snapshot()) == 2

    def test_long_messages_are_truncated(self) -> None:
        buffer = make_buffer(max_message_length=40)

        buffer.add(level="ERROR", message="a" * 100)

        message = buffer.snapshot()[0].message
        assert len(message) == 40
        assert message.endswith("...")

    def test_oldest_events_fall_off(self) -> None:
        buffer = make_buffer(max_lines=2)

        for i in range(3):
            buffer.add(level="WARNING", message=f"event {i}", now_ts=i)

        assert [e.message for e in buffer.snapshot()] == ["event 1", "event 2"]


class TestHandlers:
    def test_event_handler_appends_exception_summary(self) -> None:
        buffer = make_buffer(max_message_length=160)
        handler = DashboardEventHandler(buffer=buffer)
        try:
            raise ValueError("bad payload")
        except ValueError:
            record = logging.LogRecord(
                "bgm-komga", logging.ERROR, __file__, 1, "[Enrich] Foo failed", None, None
            )
            record.exc_info = sys.exc_info()

        handler.emit(record)

        assert buffer.snapshot()[0].message == "[Enrich] Foo failed (ValueError: bad payload)"

    def test_console_handler_is_muted_while_live(self, capsys: pytest.CaptureFixture) -> None:
        live_state = LiveLogState()
        handler = LiveAwareConsoleHandler(live_state=live_state, allow_while_live=False)
        record = logging.LogRecord("bgm-komga", logging.INFO, __file__, 1, "hello", None, None)

        live_state.set_live_active(True)
        handler.emit(record)
        live_state.set_live_active(False)
        handler.emit(record)

        assert capsys.readouterr().err.count("hello") == 1


class TestSyncDashboard:
    def test_renders_phase_rows_and_events(self) -> None:
        buffer = make_buffer()
        buffer.add(level="WARNING", message="[Link] Foo: search failed")
        dashboard = SyncDashboard(event_buffer=buffer)
        dashboard.track_phase(
            PhaseStats(name="Link", total=10, done=4, written=2, skipped=1, failed=1, current="Foo")
        )

        text = render_text(dashboard)

        assert "phase=Link" in text
        assert "4/10" in text
        assert "Foo" in text
        assert "[Link] Foo: search failed" in text

    def test_renders_before_any_phase(self) -> None:
        text = render_text(SyncDashboard(event_buffer=make_buffer()))

        assert "phase=Starting" in text

    def test_finished_phase_is_labelled_done(self) -> None:
        dashboard = SyncDashboard(event_buffer=make_buffer())
        dashboard.track_phase(PhaseStats(name="Enrich", total=0, finished_at=1))

        assert dashboard.phase_label == "Enrich done"

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self) -> None:
        dashboard = SyncDashboard(event_buffer=make_buffer(), refresh_seconds=0.1)
        stop_event = asyncio.Event()
        task = asyncio.create_task(dashboard.run(stop_event))

        await asyncio.sleep(0.15)
        stop_event.set()

        await asyncio.wait_for(task, timeout=2)


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(False)


class TestConfigureLogging:
    def test_writes_to_rotating_log_file(
        self, tmp_path: Path, config: Dict[str, Any], restore_root_logger: None
    ) -> None:
        config["runtime"]["log_file_path"] = str(tmp_path / "logs" / "sync.log")
        config["runtime"]["console_mode"] = "raw"

        runtime = configure_logging(config)
        logging.getLogger("bgm-komga").warning("hello from the sync job")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert runtime.log_file_path == (tmp_path / "logs" / "sync.log").resolve()
        assert "hello from the sync job" in runtime.log_file_path.read_text(encoding="utf-8")
        assert runtime.event_buffer.snapshot()[0].message == "hello from the sync job"
