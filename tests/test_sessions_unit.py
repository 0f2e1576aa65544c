"""Unit tests for login tracking and new-network alerts."""

from datetime import timedelta

import pytest

from sentinel_auth.service.email import MessageKind
from sentinel_auth.service.sessions import SessionTracker, dormant_network_policy
from sentinel_auth.storage.models import LoginHistory

IP_A = "198.51.100.10"
IP_B = "203.0.113.20"
USER = "user-1"
EMAIL = "owner@example.com"


def _track(tracker, ip, agent="Mozilla/5.0"):
    return tracker.track_login(USER, ip, agent, EMAIL)


class TestDormantNetworkPolicy:
    """Tests for the threshold rule on its own."""

    def _row(self, login_at):
        return LoginHistory(
            id="row", user_id=USER, ip_address=IP_A, user_agent=None, login_at=login_at
        )

    def test_no_other_network_never_alerts(self, clock):
        policy = dormant_network_policy()

        assert policy(None, clock()) is False

    def test_threshold_is_exclusive(self, clock):
        policy = dormant_network_policy(timedelta(days=7))
        row = self._row(clock())

        assert policy(row, clock() + timedelta(days=7)) is False
        assert policy(row, clock() + timedelta(days=7, seconds=1)) is True

    def test_custom_threshold(self, clock):
        policy = dormant_network_policy(timedelta(hours=1))
        row = self._row(clock())

        assert policy(row, clock() + timedelta(hours=2)) is True


class TestSessionTracker:
    """Tests for SessionTracker.track_login."""

    def test_first_login_is_recorded_without_alert(self, tracker, memory_store, notifier):
        record = _track(tracker, IP_A)

        assert record is not None
        assert record.was_notified is False
        assert memory_store.list_login_history(USER) == [record]
        assert notifier.messages == []

    def test_same_network_never_alerts(self, tracker, notifier, clock):
        _track(tracker, IP_A)
        clock.advance(days=60)

        record = _track(tracker, IP_A)

        assert record.was_notified is False
        assert notifier.messages == []

    def test_alternating_networks_do_not_alert(self, tracker, notifier, clock):
        for day in range(10):
            _track(tracker, IP_A if day % 2 == 0 else IP_B)
            clock.advance(days=1)

        assert notifier.of_kind(MessageKind.LOGIN_ALERT) == []

    def test_long_gap_scenario(self, tracker, memory_store, notifier, clock):
        start = clock()

        # Day 0 and day 10 from A: nothing to compare against
        assert _track(tracker, IP_A).was_notified is False
        clock.now = start + timedelta(days=10)
        assert _track(tracker, IP_A).was_notified is False

        # Day 11 from B: last login elsewhere was A on day 10
        clock.now = start + timedelta(days=11)
        assert _track(tracker, IP_B).was_notified is False

        # Day 12 from A: last login elsewhere was B on day 11
        clock.now = start + timedelta(days=12)
        assert _track(tracker, IP_A).was_notified is False

        # Day 30 from B: last login elsewhere was A on day 12, 18 days ago
        clock.now = start + timedelta(days=30)
        record = _track(tracker, IP_B, agent="curl/8.0")

        assert record.was_notified is True
        alerts = notifier.of_kind(MessageKind.LOGIN_ALERT)
        assert len(alerts) == 1
        assert alerts[0]["to"] == EMAIL
        assert alerts[0]["ip_address"] == IP_B
        assert alerts[0]["user_agent"] == "curl/8.0"
        assert alerts[0]["login_at"] == record.login_at
        flags = [row.was_notified for row in memory_store.list_login_history(USER)]
        assert flags == [True, False, False, False, False]

    def test_missing_ip_never_alerts(self, tracker, notifier, clock):
        _track(tracker, IP_A)
        clock.advance(days=30)

        record = _track(tracker, None)

        assert record.was_notified is False
        assert record.ip_address is None
        assert notifier.messages == []

    def test_policy_is_swappable(self, memory_store, notifier, clock):
        always = SessionTracker(
            memory_store, notifier, policy=lambda last, now: True, clock=clock
        )

        record = always.track_login(USER, IP_A, None, EMAIL)

        assert record.was_notified is True
        assert len(notifier.of_kind(MessageKind.LOGIN_ALERT)) == 1

    def test_recording_failure_is_swallowed(self, tracker, memory_store, notifier, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("database is gone")

        monkeypatch.setattr(memory_store, "last_login_from_other_ip", _boom)

        assert _track(tracker, IP_A) is None
        assert notifier.messages == []

    @pytest.mark.parametrize("mode", ["undelivered", "raises"])
    def test_alert_failure_keeps_record(self, memory_store, notifier, clock, mode):
        tracker = SessionTracker(
            memory_store, notifier, policy=lambda last, now: True, clock=clock
        )
        if mode == "raises":
            notifier.raising = True
        else:
            notifier.failing.add(MessageKind.LOGIN_ALERT)

        record = tracker.track_login(USER, IP_A, None, EMAIL)

        assert record is not None
        assert record.was_notified is True
        assert memory_store.list_login_history(USER)[0].was_notified is True
