"""Operator-side SSH helpers, with the SSH layer replaced."""

import pytest

import provisionvm.remote as remote
from provisionvm.markers import FINISHED, MARKER_NAMES, STARTED, SUCCEEDED


class Calls(list):
    """Recorded SSH commands plus queued stdout replies."""

    def __init__(self):
        super().__init__()
        self.replies = []


@pytest.fixture
def ssh_calls(monkeypatch):
    calls = Calls()
    replies = calls.replies

    def fake_ssh(ip, cmd, user="ubuntu", port=22, show_output=False):
        calls.append((ip, cmd, user, port))
        return replies.pop(0) if replies else ""

    monkeypatch.setattr(remote, "ssh", fake_ssh)
    monkeypatch.setattr(remote, "wait_for_ssh", lambda ip, user="ubuntu", port=22: None)
    return calls


def test_push_settings(tmp_path, ssh_calls):
    settings_file = tmp_path / "provision.json"
    settings_file.write_text('{"wireguard": {}}')

    path = remote.push_settings("203.0.113.5", settings_file, port=10022)

    assert path == "/home/ubuntu/provision.json"
    upload, touch = ssh_calls
    assert upload[3] == 10022
    assert "base64 -d > /home/ubuntu/provision.json" in upload[1]
    assert "umask 077" in upload[1]
    for name in MARKER_NAMES:
        assert f"/home/ubuntu/{name}" in touch[1]


def test_push_settings_custom_dir(tmp_path, ssh_calls):
    settings_file = tmp_path / "provision.json"
    settings_file.write_text("{}")
    path = remote.push_settings("203.0.113.5", settings_file, user="admin", markers_dir="/srv/pv")
    assert path == "/srv/pv/provision.json"
    assert all(call[2] == "admin" for call in ssh_calls)


@pytest.mark.parametrize(
    "reply, expected",
    [
        (f"{STARTED}\n{FINISHED}\n{SUCCEEDED}\n", "pending"),
        (f"process\n{FINISHED}\n{SUCCEEDED}\n", "running"),
        (f"{FINISHED}\n{SUCCEEDED}\n", "stopped"),
        (f"{SUCCEEDED}\n", "failed"),
        ("", "succeeded"),
    ],
)
def test_remote_outcome(ssh_calls, reply, expected):
    ssh_calls.replies.append(reply)
    assert remote.remote_outcome("203.0.113.5") == expected
    assert remote.RUNNER_PATTERN in ssh_calls[0][1]


def test_wait_for_done_polls_until_finished(monkeypatch):
    outcomes = ["pending", "running", "running", "succeeded"]
    sleeps = []
    monkeypatch.setattr(remote, "remote_outcome", lambda ip, **kwargs: outcomes.pop(0))
    monkeypatch.setattr(remote.time, "sleep", sleeps.append)

    assert remote.wait_for_done("203.0.113.5") == "succeeded"
    assert sleeps == [remote.WAIT_INTERVAL] * 3


def test_wait_for_done_times_out(monkeypatch):
    clock = iter(range(0, 10000, 300))
    monkeypatch.setattr(remote, "remote_outcome", lambda ip, **kwargs: "running")
    monkeypatch.setattr(remote.time, "sleep", lambda _: None)
    monkeypatch.setattr(remote.time, "time", lambda: next(clock))

    with pytest.raises(SystemExit):
        remote.wait_for_done("203.0.113.5", timeout=600)
