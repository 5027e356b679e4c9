"""
Tests for Notification Rule Resolver.

Covers:
- Date rules: before/on/after offsets, missing reference dates, inactive rules
- Stage rules: entry/exit matching
- Client request reminders
- Recipient fan-out
"""
import pytest
from datetime import date, datetime, timezone

from stageflow.models.enums import (
    Channel,
    DateReference,
    NotificationCategory,
    OffsetType,
    StageTrigger,
    TriggerKind,
)
from stageflow.models.schemas import (
    DateOffsetRule,
    Project,
    ReminderRule,
    StageRule,
)
from stageflow.services.contacts import ContactDirectory
from stageflow.services.rule_resolver import NotificationRuleResolver, offset_date


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def date_rule(**overrides) -> DateOffsetRule:
    data = {
        "id": "rule-date",
        "project_type_id": "type-1",
        "channel": Channel.EMAIL,
        "date_reference": DateReference.DUE_DATE,
        "offset_type": OffsetType.BEFORE,
        "offset_days": 3,
    }
    data.update(overrides)
    return DateOffsetRule(**data)


def stage_rule(stage_id: str, trigger: StageTrigger, **overrides) -> StageRule:
    data = {
        "id": f"rule-{stage_id}-{trigger.value}",
        "project_type_id": "type-1",
        "channel": Channel.SMS,
        "stage_id": stage_id,
        "trigger": trigger,
    }
    data.update(overrides)
    return StageRule(**data)


@pytest.fixture
def resolver(fresh_mock_client) -> NotificationRuleResolver:
    return NotificationRuleResolver(ContactDirectory(fresh_mock_client))


@pytest.fixture
def project() -> Project:
    return Project(
        id="project-1",
        project_type_id="type-1",
        start_date=date(2024, 6, 3),
        due_date=date(2024, 6, 10),
    )


class TestOffsetDate:
    """Tests for applying rule offsets."""

    @pytest.mark.unit
    @pytest.mark.parametrize("offset_type,days,expected", [
        (OffsetType.BEFORE, 3, date(2024, 6, 7)),
        (OffsetType.ON, 0, date(2024, 6, 10)),
        (OffsetType.AFTER, 2, date(2024, 6, 12)),
        (OffsetType.BEFORE, 10, date(2024, 5, 31)),
    ])
    def test_offsets(self, offset_type, days, expected):
        assert offset_date(date(2024, 6, 10), offset_type, days) == expected

    @pytest.mark.unit
    def test_on_rule_forces_zero_offset(self):
        """An 'on' rule ignores any configured offset."""
        rule = date_rule(offset_type=OffsetType.ON, offset_days=5)

        assert rule.offset_days == 0


class TestDateRules:
    """Tests for date-offset rule resolution."""

    @pytest.mark.unit
    def test_due_date_before(self, resolver, project):
        """3 days before a 2024-06-10 due date fires 2024-06-07 at midnight UTC."""
        occurrences = resolver.resolve_date_rules([date_rule()], project)

        assert len(occurrences) == 1
        occurrence = occurrences[0]
        assert occurrence.scheduled_for == utc(2024, 6, 7, 0, 0)
        assert occurrence.trigger_kind == TriggerKind.DATE_OFFSET
        assert occurrence.date_reference == DateReference.DUE_DATE
        assert occurrence.offset_type == OffsetType.BEFORE
        assert occurrence.offset_days == 3
        assert occurrence.recipient_candidate is None

    @pytest.mark.unit
    def test_start_date_after(self, resolver, project):
        rule = date_rule(date_reference=DateReference.START_DATE, offset_type=OffsetType.AFTER, offset_days=1)

        occurrences = resolver.resolve_date_rules([rule], project)

        assert occurrences[0].scheduled_for == utc(2024, 6, 4, 0, 0)

    @pytest.mark.edge
    def test_missing_reference_date_skipped(self, resolver):
        """A project without the referenced date gets no occurrence."""
        project = Project(id="project-2", project_type_id="type-1", start_date=date(2024, 6, 3))

        occurrences = resolver.resolve_date_rules([date_rule()], project)

        assert occurrences == []

    @pytest.mark.unit
    def test_inactive_and_stage_rules_ignored(self, resolver, project):
        rules = [
            date_rule(id="inactive", is_active=False),
            stage_rule("review", StageTrigger.ENTRY),
            date_rule(id="active"),
        ]

        occurrences = resolver.resolve_date_rules(rules, project)

        assert [o.rule_id for o in occurrences] == ["active"]

    @pytest.mark.unit
    def test_one_occurrence_per_related_person(self, resolver):
        """Each related person gets their own occurrence, duplicates collapse."""
        project = Project(
            id="project-3",
            project_type_id="type-1",
            due_date=date(2024, 6, 10),
            related_people=["person-a", "person-b", "person-a"],
        )

        occurrences = resolver.resolve_date_rules([date_rule()], project)

        assert [o.recipient_candidate for o in occurrences] == ["person-a", "person-b"]

    @pytest.mark.unit
    def test_template_id_used_as_notification_type(self, resolver, project):
        occurrences = resolver.resolve_date_rules([date_rule(template_id="due-soon")], project)

        assert occurrences[0].notification_type_id == "due-soon"


class TestStageRules:
    """Tests for stage entry/exit rule resolution."""

    @pytest.fixture
    def rules(self):
        return [
            stage_rule("review", StageTrigger.EXIT),
            stage_rule("review", StageTrigger.ENTRY),
            stage_rule("approved", StageTrigger.ENTRY),
            stage_rule("approved", StageTrigger.EXIT),
        ]

    @pytest.mark.unit
    def test_exit_and_entry_fire_at_transition(self, resolver, rules):
        at = utc(2024, 6, 1, 10, 0)

        occurrences = resolver.resolve_stage_rules(rules, "review", "approved", at)

        kinds = {o.rule_id: o.trigger_kind for o in occurrences}
        assert kinds == {
            "rule-review-exit": TriggerKind.STAGE_EXIT,
            "rule-approved-entry": TriggerKind.STAGE_ENTRY,
        }
        assert all(o.scheduled_for == at for o in occurrences)

    @pytest.mark.unit
    def test_first_transition_has_no_exit(self, resolver, rules):
        occurrences = resolver.resolve_stage_rules(rules, None, "review", utc(2024, 6, 1, 10, 0))

        assert [o.rule_id for o in occurrences] == ["rule-review-entry"]

    @pytest.mark.unit
    def test_naive_transition_time_is_utc(self, resolver, rules):
        occurrences = resolver.resolve_stage_rules(rules, None, "review", datetime(2024, 6, 1, 10, 0))

        assert occurrences[0].scheduled_for == utc(2024, 6, 1, 10, 0)

    @pytest.mark.unit
    def test_recipients_from_project(self, resolver, rules):
        project = Project(id="project-1", project_type_id="type-1", related_people=["person-a", "person-b"])

        occurrences = resolver.resolve_stage_rules(
            rules, None, "review", utc(2024, 6, 1, 10, 0), project=project
        )

        assert sorted(o.recipient_candidate for o in occurrences) == ["person-a", "person-b"]


class TestReminders:
    """Tests for client request reminder resolution."""

    @pytest.mark.unit
    def test_reminders_after_task_creation(self, resolver):
        rule = stage_rule(
            "approved",
            StageTrigger.ENTRY,
            has_client_task=True,
            reminders=[
                ReminderRule(id="reminder-1", days_after_creation=2, channel=Channel.EMAIL),
                ReminderRule(id="reminder-2", days_after_creation=5, channel=Channel.SMS),
                ReminderRule(id="reminder-off", days_after_creation=1, channel=Channel.SMS, is_active=False),
            ],
        )
        created = utc(2024, 6, 3, 14, 30)

        occurrences = resolver.resolve_reminders(rule, created, client_task_id="task-1", recipient_id="person-a")

        assert [o.rule_id for o in occurrences] == ["reminder-1", "reminder-2"]
        assert occurrences[0].scheduled_for == utc(2024, 6, 5, 14, 30)
        assert occurrences[1].scheduled_for == utc(2024, 6, 8, 14, 30)
        for occurrence in occurrences:
            assert occurrence.category == NotificationCategory.CLIENT_REQUEST_REMINDER
            assert occurrence.trigger_kind == TriggerKind.TASK_REMINDER
            assert occurrence.client_task_id == "task-1"
            assert occurrence.recipient_candidate == "person-a"

    @pytest.mark.unit
    def test_rule_without_client_task_has_no_reminders(self, resolver):
        rule = stage_rule(
            "approved",
            StageTrigger.ENTRY,
            reminders=[ReminderRule(id="reminder-1", days_after_creation=2, channel=Channel.EMAIL)],
        )

        assert resolver.resolve_reminders(rule, utc(2024, 6, 3, 14, 30)) == []
