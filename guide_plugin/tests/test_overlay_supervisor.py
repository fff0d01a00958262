from __future__ import annotations

from pathlib import Path

from guide_plugin.control_channel import INTERRUPTED, INVALIDATED, TIMEOUT
from guide_plugin.errors import TransportError
from guide_plugin.models import LOGICAL, PHYSICAL, PredictedStep, ScreenContext, ScreenRect
from guide_plugin.overlay_supervisor import OverlayState, OverlaySupervisor
from guide_plugin.render_transport import (
    CHANNEL_PATH,
    FALLBACK_MODULE,
    FALLBACK_PATH,
    ProcessSpawnTransport,
)

CTX = ScreenContext(1920, 1080, 2.0)
STEP = PredictedStep("step_1", "Close", ScreenRect(200, 400, 100, 60, PHYSICAL), "red button")


class DummyChannel:
    """Stands in for ControlChannel; ``script`` lists what each show call does."""

    def __init__(self, *, connect_error=None, show_script=None):
        self.connect_error = connect_error
        self.show_script = list(show_script or [])
        self.connects = 0
        self.calls = []
        self.is_connected = False
        self.is_invalidated = False
        self.closed = False
        self.invalidated_hooks = []
        self.interrupted_hooks = []

    def add_invalidated_hook(self, hook):
        self.invalidated_hooks.append(hook)

    def add_interrupted_hook(self, hook):
        self.interrupted_hooks.append(hook)

    def connect(self):
        if self.is_connected:
            return
        self.connects += 1
        if self.connect_error is not None:
            if self.connect_error == INVALIDATED:
                self.invalidate("port file missing")
            raise TransportError("connect failed", reason=self.connect_error)
        self.is_connected = True

    def call(self, method, params=None, timeout=None):
        self.calls.append((method, params))
        if method == "show" and self.show_script:
            action = self.show_script.pop(0)
            if action == INTERRUPTED:
                self.interrupt("host went away")
                raise TransportError("dropped", reason=INTERRUPTED)
            if action == TIMEOUT:
                raise TransportError("slow", reason=TIMEOUT)
        return "screen-guide-host/test" if method == "ping" else True

    def interrupt(self, reason):
        self.is_connected = False
        for hook in self.interrupted_hooks:
            hook(reason)

    def invalidate(self, reason):
        if self.is_invalidated:
            return
        self.is_invalidated = True
        self.is_connected = False
        for hook in self.invalidated_hooks:
            hook(reason)

    def close(self):
        self.closed = True
        self.invalidate("closed")


class ChannelFactory:
    def __init__(self, *channels):
        self.channels = list(channels)
        self.created = []

    def __call__(self):
        channel = self.channels.pop(0) if self.channels else DummyChannel()
        self.created.append(channel)
        return channel


class DummyWatchdog:
    def __init__(self, command, working_dir, env=None, started=True):
        self.command = command
        self.working_dir = working_dir
        self.env = env
        self._started = started

    def start(self):
        return self._started


class WatchdogFactory:
    def __init__(self, started=True):
        self.started = started
        self.launched = []

    def __call__(self, command, working_dir, env=None):
        watchdog = DummyWatchdog(command, working_dir, env=env, started=self.started)
        self.launched.append(watchdog)
        return watchdog


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _supervisor(factory, watchdogs=None, clock=None):
    fallback = ProcessSpawnTransport(python_executable="python", watchdog_factory=watchdogs or WatchdogFactory())
    return OverlaySupervisor(
        Path("unused-port.json"),
        channel_factory=factory,
        fallback=fallback,
        clock=clock or FakeClock(),
    )


def test_missing_host_spawns_fallback_with_clamped_rect():
    watchdogs = WatchdogFactory()
    factory = ChannelFactory(DummyChannel(connect_error=INVALIDATED))
    supervisor = _supervisor(factory, watchdogs)

    outcome = supervisor.render(STEP, CTX)

    assert outcome.shown
    assert outcome.path == FALLBACK_PATH
    assert outcome.rect == ScreenRect(100, 200, 50, 30, LOGICAL)
    assert supervisor.state == OverlayState.DISPLAYING
    assert len(watchdogs.launched) == 1
    assert watchdogs.launched[0].command == [
        "python",
        "-m",
        FALLBACK_MODULE,
        "--",
        "Close",
        "100",
        "200",
        "50",
        "30",
        "red button",
    ]
    # No interruption happened, so no reconnect was attempted.
    assert len(factory.created) == 1


def test_live_channel_receives_logical_request():
    channel = DummyChannel()
    supervisor = _supervisor(ChannelFactory(channel))

    outcome = supervisor.render(STEP, CTX, duration=3.0)

    assert outcome.path == CHANNEL_PATH
    method, params = channel.calls[-1]
    assert method == "show"
    assert params["duration"] == 3.0
    assert params["steps"][0] == {
        "id": "step_1",
        "text": "Close",
        "description": "red button",
        "x": 100,
        "y": 200,
        "width": 50,
        "height": 30,
    }


def test_interruption_gets_exactly_one_reconnect():
    channel = DummyChannel(show_script=[INTERRUPTED])
    supervisor = _supervisor(ChannelFactory(channel))

    outcome = supervisor.render(STEP, CTX)

    assert outcome.path == CHANNEL_PATH
    assert channel.connects == 2
    assert [method for method, _ in channel.calls] == ["show", "show"]


def test_second_interruption_falls_back_instead_of_looping():
    watchdogs = WatchdogFactory()
    channel = DummyChannel(show_script=[INTERRUPTED, INTERRUPTED, INTERRUPTED])
    supervisor = _supervisor(ChannelFactory(channel), watchdogs)

    outcome = supervisor.render(STEP, CTX)

    assert outcome.path == FALLBACK_PATH
    assert [method for method, _ in channel.calls] == ["show", "show"]
    assert len(watchdogs.launched) == 1


def test_timeout_goes_straight_to_fallback():
    watchdogs = WatchdogFactory()
    channel = DummyChannel(show_script=[TIMEOUT])
    supervisor = _supervisor(ChannelFactory(channel), watchdogs)

    outcome = supervisor.render(STEP, CTX)

    assert outcome.path == FALLBACK_PATH
    assert channel.connects == 1


def test_invalidation_clears_channel_until_next_request():
    first = DummyChannel()
    second = DummyChannel()
    factory = ChannelFactory(first, second)
    supervisor = _supervisor(factory)
    supervisor.render(STEP, CTX)

    first.invalidate("host exited")
    assert supervisor.poll() == OverlayState.IDLE
    assert supervisor.channel_transport.channel is None
    assert first.closed

    outcome = supervisor.render(STEP, CTX)
    assert outcome.path == CHANNEL_PATH
    assert factory.created == [first, second]


def test_new_render_hides_previous_overlay_first():
    channel = DummyChannel()
    supervisor = _supervisor(ChannelFactory(channel))

    supervisor.render(STEP, CTX)
    supervisor.render(STEP.with_rect(ScreenRect(10, 10, 80, 80, PHYSICAL)), CTX)

    assert [method for method, _ in channel.calls] == ["show", "hide", "show"]


def test_poll_expires_overlay_after_duration():
    clock = FakeClock()
    channel = DummyChannel()
    supervisor = _supervisor(ChannelFactory(channel), clock=clock)
    supervisor.render(STEP, CTX, duration=5.0)

    clock.now += 4.9
    assert supervisor.poll() == OverlayState.DISPLAYING
    clock.now += 0.2
    assert supervisor.poll() == OverlayState.IDLE
    assert channel.calls[-1][0] == "hide"
    assert supervisor.active_path is None


def test_hide_on_fallback_path_is_a_no_op():
    supervisor = _supervisor(ChannelFactory(DummyChannel(connect_error=INVALIDATED)))
    supervisor.render(STEP, CTX)

    assert supervisor.hide() is False
    assert supervisor.state == OverlayState.IDLE
    assert supervisor.hide() is False


def test_both_paths_failing_is_reported_not_raised():
    supervisor = _supervisor(
        ChannelFactory(DummyChannel(connect_error=INVALIDATED)),
        WatchdogFactory(started=False),
    )

    outcome = supervisor.render(STEP, CTX)

    assert not outcome.shown
    assert outcome.message
    assert outcome.rect == ScreenRect(100, 200, 50, 30, LOGICAL)
    assert supervisor.state == OverlayState.IDLE


def test_render_steps_sends_all_markers_over_channel():
    channel = DummyChannel()
    supervisor = _supervisor(ChannelFactory(channel))
    steps = [
        PredictedStep("step_1", "A", ScreenRect(100, 100, 200, 50, LOGICAL)),
        PredictedStep("step_2", "B", ScreenRect(400, 300, 150, 80, LOGICAL)),
    ]

    outcome = supervisor.render_steps(steps, CTX)

    assert outcome.shown
    _method, params = channel.calls[-1]
    assert [item["id"] for item in params["steps"]] == ["step_1", "step_2"]


def test_empty_step_list_shows_nothing():
    supervisor = _supervisor(ChannelFactory())
    outcome = supervisor.render_steps([], CTX)
    assert not outcome.shown
    assert supervisor.state == OverlayState.IDLE


def test_shutdown_closes_channel():
    channel = DummyChannel()
    supervisor = _supervisor(ChannelFactory(channel))
    supervisor.render(STEP, CTX)

    supervisor.shutdown()

    assert channel.closed
    assert supervisor.state == OverlayState.IDLE
    assert supervisor.channel_transport.channel is None


def test_ping_reports_host_token_or_none():
    supervisor = _supervisor(ChannelFactory(DummyChannel()))
    assert supervisor.ping() == "screen-guide-host/test"

    supervisor = _supervisor(ChannelFactory(DummyChannel(connect_error=INVALIDATED)))
    assert supervisor.ping() is None
