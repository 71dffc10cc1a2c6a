import pytest

from perfstream.core import session as session_module
from perfstream.core.events import Calibration
from perfstream.core.poller import start_polling
from perfstream.core.profiles import DeviceProfile, ProfileManager
from perfstream.core.session import SessionManager

from fakes import FakeBridge


def test_calibration_is_immutable_once_set(session):
    session.set_calibration(Calibration(clock_tick=100, page_size=4096))

    with pytest.raises(RuntimeError):
        session.set_calibration(Calibration(clock_tick=250, page_size=16384))

    assert session.calibration.clock_tick == 100


def test_session_close_stops_polling_and_bridge(session, bridge):
    handle = start_polling(session, "12")

    session.close()

    assert not handle.is_active
    assert not session.tracer.is_active
    assert bridge.closed


@pytest.fixture
def manager(tmp_path, monkeypatch):
    profiles = ProfileManager(str(tmp_path))
    profiles.save_profile(DeviceProfile.from_dict({'name': 'phone'}))
    bridges = []

    def fake_make_bridge(profile):
        bridges.append(FakeBridge())
        return bridges[-1]

    monkeypatch.setattr(session_module, "make_bridge", fake_make_bridge)
    mgr = SessionManager(profiles)
    mgr.bridges = bridges
    return mgr


def test_session_manager_keeps_one_session_per_device(manager):
    first = manager.get_session("phone")

    assert first is manager.get_session("phone")
    assert first.profile.name == "phone"
    assert len(manager.bridges) == 1


def test_session_manager_unknown_profile(manager):
    assert manager.get_session("missing") is None


def test_close_all_releases_sessions(manager):
    session = manager.get_session("phone")

    manager.close_all()

    assert manager.bridges[0].closed
    assert manager.get_session("phone") is not session
