"""
Test AgentDriver against a scripted stand-in process.

fake_driver.py is launched with the current interpreter; its first argument
selects the behaviour (see that file).
"""

import asyncio
import json
import sys
import time
from pathlib import Path

import pytest

from agi_sdk.core.actions import ClickAction
from agi_sdk.driver.driver import AgentDriver, DriverOptions, load_mcp_config
from agi_sdk.driver.protocol import DriverState, ThinkingEvent
from agi_sdk.exceptions import AgentExecutionError, AgiTimeoutError

FAKE_DRIVER = Path(__file__).parent / "fake_driver.py"


def fake_options(mode: str, **kwargs) -> DriverOptions:
    kwargs.setdefault("ready_timeout", 10.0)
    kwargs.setdefault("stop_timeout", 2.0)
    return DriverOptions(binary_path=sys.executable, args=[str(FAKE_DRIVER), mode], **kwargs)


async def wait_until(predicate, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def capture_processes(monkeypatch):
    """Record every process the driver spawns."""
    spawned = []
    real_exec = asyncio.create_subprocess_exec

    async def tracking_exec(*args, **kwargs):
        process = await real_exec(*args, **kwargs)
        spawned.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", tracking_exec)
    return spawned


def start_command_from(thoughts):
    """The finish script echoes the start command back as its first thought."""
    return json.loads(thoughts[0])


class TestStart:
    """Handshake, start command and the finished outcome."""

    def test_finish(self):
        thoughts = []
        actions = []
        states = []
        events = []
        driver = AgentDriver(
            fake_options("finish", voice=True),
            on_thinking=thoughts.append,
            on_action=actions.append,
            on_state_change=states.append,
            on_event=events.append,
        )

        result = asyncio.run(driver.start("Open the calculator", mode="local"))

        assert result.success is True
        assert result.reason == "done"
        assert result.summary == "ok"
        assert result.step == 4
        assert driver.state == DriverState.FINISHED
        assert driver.driver_version == "0.9.1"
        assert driver.protocol_version == "1"
        assert actions == [ClickAction(5, 6)]
        assert states[0] == DriverState.RUNNING
        assert states[-1] == DriverState.FINISHED
        assert any(isinstance(e, ThinkingEvent) for e in events)

        start = start_command_from(thoughts)
        assert start["command"] == "start"
        assert start["goal"] == "Open the calculator"
        assert start["session_id"].startswith("session_")
        assert start["session_id"] == driver.session_id
        assert start["mode"] == "local"
        assert start["model"] == "claude-sonnet"
        assert start["platform"] == "desktop"
        assert start["audio_input_enabled"] is True
        assert start["turn_detection_enabled"] is True
        assert start["speech_output_enabled"] is True
        assert start["speech_voice"] == "alloy"
        assert "camera_enabled" not in start
        assert "mcp_servers" not in start

    def test_legacy_mode_omitted(self):
        thoughts = []
        driver = AgentDriver(fake_options("finish"), on_thinking=thoughts.append)

        asyncio.run(driver.start("goal", screenshot="c2NyZWVu", screen_width=1280, screen_height=800))

        start = start_command_from(thoughts)
        assert "mode" not in start
        assert "speech_voice" not in start
        assert start["screenshot"] == "c2NyZWVu"
        assert (start["screen_width"], start["screen_height"]) == (1280, 800)

    def test_mcp_servers_from_config(self, tmp_path):
        config = tmp_path / "mcp.json"
        config.write_text(json.dumps({
            "files": {"command": "npx", "args": ["-y", "server-files"], "env": {"ROOT": "/tmp"}},
        }))
        thoughts = []
        driver = AgentDriver(fake_options("finish", mcp=True, mcp_config=str(config)), on_thinking=thoughts.append)

        asyncio.run(driver.start("goal"))

        assert start_command_from(thoughts)["mcp_servers"] == [
            {"name": "files", "command": "npx", "args": ["-y", "server-files"], "env": {"ROOT": "/tmp"}},
        ]

    def test_ready_timeout_kills_process(self, monkeypatch):
        spawned = capture_processes(monkeypatch)
        driver = AgentDriver(fake_options("silent", ready_timeout=0.3, stop_timeout=0.3))

        with pytest.raises(AgiTimeoutError) as exc_info:
            asyncio.run(driver.start("goal"))

        assert "timeout waiting for ready event" in str(exc_info.value)
        assert len(spawned) == 1
        assert spawned[0].returncode is not None

    def test_ready_timeout_sets_error_state(self):
        states = []
        driver = AgentDriver(fake_options("silent", ready_timeout=0.3, stop_timeout=0.3), on_state_change=states.append)

        with pytest.raises(AgiTimeoutError):
            asyncio.run(driver.start("goal"))

        assert driver.state == DriverState.ERROR
        assert states == [DriverState.ERROR]

    def test_stop_during_handshake(self, monkeypatch):
        spawned = capture_processes(monkeypatch)

        async def run():
            driver = AgentDriver(fake_options("silent", ready_timeout=5.0, stop_timeout=0.3))
            task = asyncio.ensure_future(driver.start("goal"))
            await asyncio.sleep(0.3)
            began = time.monotonic()
            await driver.stop("user abort")
            result = await asyncio.wait_for(task, timeout=2.0)
            return driver, result, time.monotonic() - began

        driver, result, elapsed = asyncio.run(run())

        assert result.success is False
        assert result.reason == "stopped"
        assert result.summary == "user abort"
        assert elapsed < 1.5
        assert driver.state == DriverState.STOPPED
        assert driver.driver_version is None
        assert spawned[0].returncode is not None

    def test_start_twice(self):
        async def run():
            driver = AgentDriver(fake_options("interactive"))
            task = asyncio.ensure_future(driver.start("goal"))
            await wait_until(lambda: driver.is_running)
            with pytest.raises(RuntimeError):
                await driver.start("again")
            await driver.stop()
            return await task

        assert asyncio.run(run()).reason == "stopped"


class TestEventStream:
    """Malformed lines, driver errors and process exits."""

    def test_malformed_line_skipped(self):
        thoughts = []
        errors = []
        driver = AgentDriver(fake_options("malformed"), on_thinking=thoughts.append, on_error=errors.append)

        result = asyncio.run(driver.start("goal"))

        assert result.success is True
        assert thoughts == ["one", "two"]
        assert len(errors) == 1
        assert errors[0].startswith("Error parsing event")

    def test_fatal_error(self):
        errors = []
        driver = AgentDriver(fake_options("error"), on_error=errors.append)

        with pytest.raises(AgentExecutionError) as exc_info:
            asyncio.run(driver.start("goal"))

        assert "E1: boom" in str(exc_info.value)
        assert exc_info.value.code == "E1"
        assert exc_info.value.step == 5
        assert exc_info.value.session_id == driver.session_id
        assert driver.state == DriverState.ERROR
        assert errors == ["E1: boom"]

    def test_recoverable_error_continues(self):
        errors = []
        driver = AgentDriver(fake_options("recoverable"), on_error=errors.append)

        result = asyncio.run(driver.start("goal"))

        assert result.success is True
        assert result.summary == "recovered"
        assert errors == ["W1: retrying"]

    def test_unexpected_exit(self):
        errors = []
        driver = AgentDriver(fake_options("crash"), on_error=errors.append)

        with pytest.raises(AgentExecutionError) as exc_info:
            asyncio.run(driver.start("goal"))

        assert "exit code 3" in str(exc_info.value)
        assert driver.state == DriverState.ERROR
        assert any("exit code 3" in e for e in errors)

    def test_callback_errors_do_not_break_stream(self):
        def broken(*args):
            raise ValueError("observer bug")

        driver = AgentDriver(fake_options("finish"), on_thinking=broken, on_action=broken, on_event=broken)
        assert asyncio.run(driver.start("goal")).success is True


class TestConfirmAndQuestion:
    """Waiting states, automatic handlers and manual responses."""

    def test_auto_handlers(self):
        confirms = []

        async def on_confirm(reason, action):
            confirms.append((reason, action))
            return True

        driver = AgentDriver(
            fake_options("gated"),
            on_confirm=on_confirm,
            on_ask_question=lambda question: "personal",
        )

        result = asyncio.run(driver.start("Buy the book"))

        assert confirms == [("Submit order?", ClickAction(1, 2))]
        assert json.loads(result.summary) == [
            {"command": "confirm", "approved": True},
            {"command": "answer", "text": "personal", "question_id": "q1"},
        ]

    def test_manual_responses_after_handler_failure(self):
        errors = []

        def on_confirm(reason, action):
            raise RuntimeError("no terminal")

        async def run():
            driver = AgentDriver(fake_options("gated"), on_confirm=on_confirm, on_error=errors.append)
            task = asyncio.ensure_future(driver.start("Buy the book"))

            await wait_until(lambda: driver.state == DriverState.WAITING_CONFIRMATION and errors)
            assert driver.is_waiting
            await driver.respond_confirm(False, "not today")

            await wait_until(lambda: driver.state == DriverState.WAITING_ANSWER)
            with pytest.raises(RuntimeError):
                await driver.respond_confirm(True)
            await driver.respond_answer("work", question_id="q1")

            return await task

        result = asyncio.run(run())

        assert errors == ["Confirm handler failed: no terminal"]
        assert json.loads(result.summary) == [
            {"command": "confirm", "approved": False, "message": "not today"},
            {"command": "answer", "text": "work", "question_id": "q1"},
        ]

    def test_respond_when_not_running(self):
        driver = AgentDriver(fake_options("finish"))
        with pytest.raises(RuntimeError):
            asyncio.run(driver.respond_confirm(True))
        with pytest.raises(RuntimeError):
            asyncio.run(driver.respond_answer("x"))


class TestEnvironment:
    """Only the allow-list and explicit variables reach the process."""

    def test_allow_list(self, monkeypatch):
        monkeypatch.setenv("AGI_TEST_SECRET", "parent-secret")
        driver = AgentDriver(fake_options("env", env={"FAKE_TOKEN": "tok"}))

        result = asyncio.run(driver.start("goal"))

        assert json.loads(result.summary) == {"secret": None, "token": "tok"}

    def test_inherit_env(self, monkeypatch):
        monkeypatch.setenv("AGI_TEST_SECRET", "parent-secret")
        driver = AgentDriver(fake_options("env", inherit_env=True))

        result = asyncio.run(driver.start("goal"))

        assert json.loads(result.summary) == {"secret": "parent-secret", "token": None}


class TestInteractive:
    """Commands sent while the run is in progress."""

    def test_stop(self):
        async def run():
            driver = AgentDriver(fake_options("interactive"))
            task = asyncio.ensure_future(driver.start("goal"))
            await wait_until(lambda: driver.is_running)
            await driver.stop("user abort")
            return driver, await task

        driver, result = asyncio.run(run())

        assert result.success is False
        assert result.reason == "stopped"
        assert result.summary == "user abort"
        assert driver.state == DriverState.STOPPED

    def test_stop_kills_unresponsive_process(self, monkeypatch):
        spawned = capture_processes(monkeypatch)

        async def run():
            driver = AgentDriver(fake_options("stubborn", stop_timeout=0.3))
            task = asyncio.ensure_future(driver.start("goal"))
            await wait_until(lambda: driver.is_running)
            began = time.monotonic()
            await driver.stop()
            return time.monotonic() - began, await task

        elapsed, result = asyncio.run(run())

        assert result.reason == "stopped"
        assert elapsed < 5.0
        assert spawned[0].returncode is not None

    def test_media_requests(self):
        async def run():
            driver = AgentDriver(fake_options("interactive"))
            task = asyncio.ensure_future(driver.start("goal"))
            await wait_until(lambda: driver.is_running)

            transcript = await driver.request_audio_transcript(seconds_ago=3, duration=2, timeout=5.0)
            frame = await driver.request_video_frame(source="camera", timeout=5.0)

            await driver.stop()
            await task
            return driver, transcript, frame

        driver, transcript, frame = asyncio.run(run())

        assert transcript.transcript == "heard 3"
        assert transcript.duration == 2
        assert driver.last_transcript == "heard 3"
        assert frame.source == "camera"
        assert driver.last_video_frame == "QUJD"

    def test_pause_and_resume(self):
        states = []

        async def run():
            driver = AgentDriver(fake_options("interactive"), on_state_change=states.append)
            task = asyncio.ensure_future(driver.start("goal"))
            await wait_until(lambda: driver.is_running)

            await driver.pause()
            await wait_until(lambda: driver.state == DriverState.PAUSED)
            await driver.resume()
            await wait_until(lambda: driver.state == DriverState.RUNNING)

            await driver.stop()
            await task

        asyncio.run(run())
        assert states == [DriverState.RUNNING, DriverState.PAUSED, DriverState.RUNNING, DriverState.STOPPED]

    def test_commands_require_process(self):
        driver = AgentDriver(fake_options("interactive"))
        with pytest.raises(RuntimeError):
            asyncio.run(driver.send_screenshot("c2NyZWVu"))
        with pytest.raises(RuntimeError):
            asyncio.run(driver.request_audio_transcript())
        # pause/resume/stop are no-ops without a process
        asyncio.run(driver.pause())
        asyncio.run(driver.stop())
        assert driver.state == DriverState.IDLE


class TestLoadMcpConfig:
    def test_missing_file(self, tmp_path):
        assert load_mcp_config(str(tmp_path / "nope.json")) is None

    def test_wrapper_and_bad_entries(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text(json.dumps({
            "mcpServers": {
                "search": {"command": "search-server"},
                "broken": "not an object",
                "bad-args": {"command": "x", "args": "not a list"},
            }
        }))

        servers = load_mcp_config(str(path))

        assert [s.name for s in servers] == ["search"]
        assert servers[0].command == "search-server"
        assert servers[0].args == []
        assert servers[0].env is None

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text("{not json")
        assert load_mcp_config(str(path)) is None
