"""Provisioning run ordering, cleanup guarantee and outcome reporting."""

import pytest

import provisionvm.network as network
from provisionvm.errors import (
    ConfigRenderError,
    ConfigWriteError,
    LockError,
    NotDirect,
    StartTimeout,
    StepError,
    StillDirect,
    StopTimeout,
)
from provisionvm.markers import FINISHED, STARTED, SUCCEEDED, RunMarkers
from provisionvm.orchestrator import Provisioner, run_lock
from provisionvm.types import Stage
from provisionvm.wgconf import setup_wireguard

DIRECT = {"ip": "203.0.113.5", "country": "JP"}
TUNNELED = {"ip": "198.51.100.9", "country": "US"}


class FakeService:
    def __init__(self, events, *, running=False, stop_error=None, start_error=None):
        self.events = events
        self.running = running
        self.stop_error = stop_error
        self.start_error = start_error

    def is_running(self):
        return self.running

    def stop(self):
        self.events.append("stop")
        if self.stop_error:
            raise self.stop_error
        self.running = False

    def start(self):
        self.events.append("start")
        if self.start_error:
            raise self.start_error
        self.running = True


class FakeOracle:
    """Answers with the direct identity while the tunnel is down."""

    def __init__(self, events, service, *, direct=DIRECT, tunneled=TUNNELED):
        self.events = events
        self.service = service
        self.direct = direct
        self.tunneled = tunneled

    def check_dns(self):
        return "34.117.59.81"

    def observe(self):
        if self.service.running:
            self.events.append("verify")
            return dict(self.tunneled)
        self.events.append("precondition")
        return dict(self.direct)


class FakeReporter:
    name = "fake"

    def __init__(self):
        self.statuses = []

    def report(self, status):
        self.statuses.append(status)


@pytest.fixture(autouse=True)
def endpoint_resolves(monkeypatch):
    monkeypatch.setattr(network, "resolve_dns_a", lambda domain, nameserver=None: "198.51.100.1")


@pytest.fixture
def events():
    return []


@pytest.fixture
def markers(settings):
    markers = RunMarkers(settings.markers_dir)
    markers.create_all()
    return markers


def _provisioner(settings, events, markers, *, service=None, oracle=None, fail=None):
    service = service or FakeService(events)
    oracle = oracle or FakeOracle(events, service)

    def step(name):
        def run(_settings):
            events.append(name)
            if fail == name:
                raise StepError(name, "exit status 100")

        return run

    def configure(_settings):
        events.append("configure")
        if fail == "configure":
            raise ConfigRenderError("No default route in the main routing table")

    return Provisioner(
        settings,
        service=service,
        oracle=oracle,
        steps={"packages": step("packages"), "user": step("user")},
        reporter=FakeReporter(),
        markers=markers,
        configure=configure,
    )


def test_happy_path(settings, events, markers):
    provisioner = _provisioner(settings, events, markers)
    result = provisioner.run()

    assert result.ok
    assert result.stage is Stage.DONE
    assert result.error is None
    assert events == ["precondition", "stop", "configure", "packages", "user", "start", "verify"]
    assert result.direct == DIRECT
    assert result.tunneled == TUNNELED
    assert markers.present() == {STARTED: False, FINISHED: False, SUCCEEDED: False}
    assert provisioner.reporter.statuses == ["running", "done"]
    assert settings.motd_path.read_text() == ""


@pytest.mark.parametrize("fail", ["configure", "packages", "user"])
def test_setup_failure_still_starts_tunnel(settings, events, markers, fail):
    provisioner = _provisioner(settings, events, markers, fail=fail)
    result = provisioner.run()

    assert not result.ok
    assert result.stage is Stage.TUNNEL_STOPPED
    assert events.count("start") == 1
    assert events[events.index(fail) + 1] == "start"
    assert result.start_attempts == 1
    assert markers.present() == {STARTED: False, FINISHED: False, SUCCEEDED: True}
    assert provisioner.reporter.statuses == ["running", "failed"]
    assert "failed" in settings.motd_path.read_text()


def test_failed_step_is_recorded(settings, events, markers):
    result = _provisioner(settings, events, markers, fail="packages").run()
    assert isinstance(result.error, StepError)
    assert result.failed_steps == ["packages"]
    assert "user" not in events


def test_precondition_failure_changes_nothing(settings, events, markers):
    service = FakeService(events)
    oracle = FakeOracle(events, service, direct={"ip": "198.51.100.9", "country": "US"})
    result = _provisioner(settings, events, markers, service=service, oracle=oracle).run()

    assert isinstance(result.error, NotDirect)
    assert result.stage is Stage.INIT
    assert events[:2] == ["precondition", "start"]
    assert "stop" not in events and "configure" not in events
    assert markers.present()[SUCCEEDED]


def test_stop_failure_still_starts_tunnel(settings, events, markers):
    service = FakeService(events, stop_error=StopTimeout("still active"))
    result = _provisioner(settings, events, markers, service=service).run()

    assert isinstance(result.error, StopTimeout)
    assert result.stage is Stage.PRECONDITION_CHECKED
    assert events.count("start") == 1
    assert "configure" not in events


def test_start_failure_skips_verification(settings, events, markers):
    service = FakeService(events, start_error=StartTimeout("not active"))
    result = _provisioner(settings, events, markers, service=service).run()

    assert not result.ok
    assert isinstance(result.error, StartTimeout)
    assert result.cleanup_error is result.error
    assert result.stage is Stage.CONFIGURED
    assert "verify" not in events
    assert markers.present() == {STARTED: False, FINISHED: False, SUCCEEDED: True}


def test_start_failure_keeps_first_error(settings, events, markers):
    service = FakeService(events, start_error=StartTimeout("not active"))
    result = _provisioner(settings, events, markers, service=service, fail="user").run()

    assert isinstance(result.error, StepError)
    assert isinstance(result.cleanup_error, StartTimeout)
    assert result.start_attempts == 1


def test_verification_failure(settings, events, markers):
    service = FakeService(events)
    oracle = FakeOracle(events, service, tunneled=DIRECT)
    provisioner = _provisioner(settings, events, markers, service=service, oracle=oracle)
    result = provisioner.run()

    assert isinstance(result.error, StillDirect)
    assert result.verify_error is result.error
    assert result.stage is Stage.TUNNEL_STARTED
    assert markers.present() == {STARTED: False, FINISHED: False, SUCCEEDED: True}
    assert provisioner.reporter.statuses == ["running", "failed"]


def test_rerun_with_tunnel_up_checks_after_stop(settings, events, markers):
    service = FakeService(events, running=True)
    result = _provisioner(settings, events, markers, service=service).run()

    assert result.ok
    assert events == ["stop", "precondition", "configure", "packages", "user", "start", "verify"]


def test_rerun_precondition_failure_still_restarts(settings, events, markers):
    service = FakeService(events, running=True)
    oracle = FakeOracle(events, service, direct={"ip": "192.0.2.44", "country": "JP"})
    result = _provisioner(settings, events, markers, service=service, oracle=oracle).run()

    assert isinstance(result.error, NotDirect)
    assert events == ["stop", "precondition", "start"]
    assert service.running


def test_region_falls_back_to_observed_country(settings, events, markers):
    settings.region = None
    service = FakeService(events)
    oracle = FakeOracle(events, service, tunneled={"ip": "198.51.100.9", "country": "JP"})
    result = _provisioner(settings, events, markers, service=service, oracle=oracle).run()
    assert not result.ok
    assert result.verify_error is not None


def test_run_lock_is_exclusive(tmp_path):
    lock = tmp_path / "run" / "provisionvm.lock"
    with run_lock(lock):
        with pytest.raises(LockError):
            with run_lock(lock):
                pass
    with run_lock(lock):
        assert lock.read_text().strip().isdigit()


def test_unreadable_routing_registry_is_reported(settings, events, markers):
    def routes(*args):
        return "default via 192.168.2.1 dev eth0 proto static\n"

    settings.rt_tables_path.mkdir(parents=True)
    provisioner = _provisioner(settings, events, markers)
    provisioner.configure = lambda s: setup_wireguard(s, runner=routes)
    result = provisioner.run()

    assert isinstance(result.error, ConfigWriteError)
    assert events == ["precondition", "stop", "start", "verify"]
    assert provisioner.reporter.statuses == ["running", "failed"]
    assert "failed" in settings.motd_path.read_text()
    assert markers.present() == {STARTED: False, FINISHED: False, SUCCEEDED: True}


def test_unexpected_setup_error_is_reported(settings, events, markers):
    def configure(_settings):
        events.append("configure")
        raise RuntimeError("disk on fire")

    provisioner = _provisioner(settings, events, markers)
    provisioner.configure = configure
    result = provisioner.run()

    assert not result.ok
    assert "RuntimeError" in str(result.error)
    assert events == ["precondition", "stop", "configure", "start", "verify"]
    assert provisioner.reporter.statuses == ["running", "failed"]
    assert not markers.present()[FINISHED]


def test_unexpected_verification_error_is_reported(settings, events, markers):
    service = FakeService(events)

    class BrokenOracle(FakeOracle):
        def observe(self):
            if self.service.running:
                raise ValueError("bad oracle state")
            return super().observe()

    oracle = BrokenOracle(events, service)
    provisioner = _provisioner(settings, events, markers, service=service, oracle=oracle)
    result = provisioner.run()

    assert result.verify_error is result.error
    assert result.stage is Stage.TUNNEL_STARTED
    assert provisioner.reporter.statuses == ["running", "failed"]
