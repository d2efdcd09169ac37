"""Tests for the device session registry."""

from datetime import timedelta

import pytest

from xserver.service.sessions import SessionRegistry
from xserver.storage.models import DeviceInfo


@pytest.fixture
def registry(fake_clock):
    return SessionRegistry(clock=fake_clock)


def _device(name: str) -> DeviceInfo:
    return DeviceInfo(device_id=f"{name}-id", device_name=name, ip_address="192.0.2.1")


class TestOpenAndList:
    """Tests for opening and listing sessions."""

    def test_open_sets_timestamps(self, registry, fake_clock):
        session = registry.open("alice", _device("phone"))

        assert session.login_time == fake_clock()
        assert session.last_activity == fake_clock()
        assert session.ip_address == "192.0.2.1"

    def test_explicit_ip_wins_over_device_ip(self, registry):
        session = registry.open("alice", _device("phone"), ip_address="198.51.100.7")
        assert session.ip_address == "198.51.100.7"

    def test_list_newest_first_and_marks_current(self, registry, fake_clock):
        old = registry.open("alice", _device("old"))
        fake_clock.advance(minutes=1)
        new = registry.open("alice", _device("new"))

        listed = registry.list_active("alice", current_session_id=old.id)
        assert [s.id for s in listed] == [new.id, old.id]
        assert [s.current_device for s in listed] == [False, True]

    def test_listing_returns_copies(self, registry):
        session = registry.open("alice", _device("phone"))
        registry.list_active("alice", current_session_id=session.id)[0].current_device = False

        assert registry.get(session.id).current_device is False
        assert registry.list_active("alice", session.id)[0].current_device is True

    def test_sessions_are_per_user(self, registry):
        registry.open("alice", _device("a"))
        registry.open("bob", _device("b"))

        assert len(registry.list_active("alice")) == 1
        assert len(registry.list_active("bob")) == 1
        assert registry.list_active("carol") == []


class TestRevocation:
    """Tests for revoking and pruning sessions."""

    def test_revoke(self, registry):
        session = registry.open("alice", _device("phone"))

        assert registry.revoke("alice", session.id) is True
        assert registry.get(session.id) is None
        assert registry.revoke("alice", session.id) is False

    def test_revoke_requires_owner(self, registry):
        session = registry.open("alice", _device("phone"))

        assert registry.revoke("bob", session.id) is False
        assert registry.get(session.id) is not None

    def test_revoke_all(self, registry):
        a = registry.open("alice", _device("a"))
        b = registry.open("alice", _device("b"))
        registry.open("bob", _device("c"))

        assert sorted(registry.revoke_all("alice")) == sorted([a.id, b.id])
        assert registry.list_active("alice") == []
        assert len(registry) == 1

    def test_touch_updates_last_activity(self, registry, fake_clock):
        session = registry.open("alice", _device("phone"))
        fake_clock.advance(minutes=3)

        assert registry.touch(session.id) is True
        assert registry.get(session.id).last_activity == fake_clock()
        assert registry.touch("missing") is False

    def test_prune_idle(self, registry, fake_clock):
        idle = registry.open("alice", _device("idle"))
        active = registry.open("alice", _device("active"))
        fake_clock.advance(hours=2)
        registry.touch(active.id)

        pruned = registry.prune_idle(timedelta(hours=1))

        assert [s.id for s in pruned] == [idle.id]
        assert [s.id for s in registry.list_active("alice")] == [active.id]
