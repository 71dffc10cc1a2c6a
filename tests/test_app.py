import json

import pytest

from perfstream import app as app_module
from perfstream.core import session as session_module

from fakes import FakeBridge, make_frame


@pytest.fixture
def cli(tmp_path, monkeypatch, profile):
    profiles_dir = tmp_path / "profiles"
    profiles_dir.mkdir()
    from perfstream.core.profiles import ProfileManager
    ProfileManager(str(profiles_dir)).save_profile(profile)

    bridge = FakeBridge()
    monkeypatch.setattr(session_module, "make_bridge", lambda p: bridge)
    monkeypatch.setattr(app_module, "setup_logger", lambda *args, **kwargs: None)

    def run(*argv):
        return app_module.main(["--profiles-dir", str(profiles_dir), *argv])

    run.bridge = bridge
    return run


def test_install_prints_calibration(cli, capsys):
    assert cli("install", "--profile", "test-device") == 0

    out = capsys.readouterr().out
    assert "CPU clock tick: 100" in out
    assert "RAM page size:  4096" in out
    assert cli.bridge.closed


def test_install_on_unsupported_device_fails(cli):
    cli.bridge.responses["getprop ro.build.version.sdk"] = "21"

    assert cli("install", "--profile", "test-device") == 1
    assert cli.bridge.pushes == []


def test_poll_prints_json_samples(cli, capsys):
    cli.bridge.stdout_script = [make_frame(timestamp=1), make_frame(timestamp=2)]

    assert cli("poll", "--profile", "test-device", "--pid", "12", "--count", "2") == 0

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [line['timestamp'] for line in lines] == [1, 2]
    assert cli.bridge.poll_processes()[0].killed


def test_poll_ends_when_remote_process_exits(cli, capsys):
    cli.bridge.stdout_script = [make_frame(timestamp=1), None]

    assert cli("poll", "--profile", "test-device", "--pid", "12") == 0

    assert len(capsys.readouterr().out.splitlines()) == 1


def test_unknown_profile_exits(cli):
    with pytest.raises(SystemExit):
        cli("install", "--profile", "missing")
