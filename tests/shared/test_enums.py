import pytest

from delivery_shared.enums import (
    NOTIFICATION_PREDECESSORS,
    Channel,
    NotificationStatus,
    Priority,
    ReminderType,
)


class TestChannel:
    def test_values(self):
        assert Channel.EMAIL == "email"
        assert Channel.SMS == "sms"
        assert Channel.CHAT == "chat"

    def test_members_count(self):
        assert len(Channel) == 3


class TestPriority:
    def test_rank_orders_by_urgency(self):
        ranks = [p.rank for p in (Priority.LOW, Priority.NORMAL, Priority.HIGH, Priority.URGENT)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4


class TestNotificationStatus:
    def test_terminal_statuses(self):
        assert {s for s in NotificationStatus if s.is_terminal} == {
            NotificationStatus.SENT,
            NotificationStatus.FAILED,
        }

    @pytest.mark.parametrize("target", list(NotificationStatus))
    def test_terminal_statuses_are_never_predecessors(self, target):
        predecessors = NOTIFICATION_PREDECESSORS.get(target, frozenset())
        assert not {s for s in predecessors if s.is_terminal}


class TestReminderType:
    def test_lead_times(self):
        assert ReminderType.SEVEN_DAYS.hours_before == 168
        assert ReminderType.TWENTY_FOUR_HOURS.hours_before == 24
        assert ReminderType.ONE_HOUR.hours_before == 1
