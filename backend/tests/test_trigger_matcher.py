"""Tests for trigger config matching."""

import pytest

from tasks.trigger_matcher import matches_trigger, threshold_passes


class TestStageChange:
    """stage_change configs."""

    def test_exact_stages(self):
        config = {"from_stage_id": "s1", "to_stage_id": "s2"}
        assert matches_trigger("stage_change", config, {"from_stage_id": "s1", "to_stage_id": "s2"})
        assert not matches_trigger("stage_change", config, {"from_stage_id": "s3", "to_stage_id": "s2"})

    def test_wildcard_and_absent(self):
        """'any' or a missing stage id matches every stage."""
        assert matches_trigger("stage_change", {"from_stage_id": "any", "to_stage_id": "s2"},
                               {"from_stage_id": "s9", "to_stage_id": "s2"})
        assert matches_trigger("stage_change", {}, {"from_stage_id": "s9", "to_stage_id": "s4"})


class TestDispositionSet:
    """disposition_set configs."""

    def test_disposition_lists(self):
        config = {"disposition_ids": ["d1", "d2"], "sub_disposition_ids": ["sd1"]}
        assert matches_trigger("disposition_set", config, {"disposition_id": "d2", "sub_disposition_id": "sd1"})
        assert not matches_trigger("disposition_set", config, {"disposition_id": "d3", "sub_disposition_id": "sd1"})
        assert not matches_trigger("disposition_set", config, {"disposition_id": "d1"})

    def test_empty_lists_match_everything(self):
        assert matches_trigger("disposition_set", {"disposition_ids": []}, {"disposition_id": "dX"})


class TestActivityLogged:
    """activity_logged configs."""

    def test_activity_types(self):
        config = {"activity_types": ["call", "meeting"]}
        assert matches_trigger("activity_logged", config, {"activity_type": "call"})
        assert not matches_trigger("activity_logged", config, {"activity_type": "note"})

    def test_min_call_duration(self):
        config = {"activity_types": ["call"], "min_call_duration_seconds": 60}
        assert matches_trigger("activity_logged", config, {"activity_type": "call", "call_duration": 90})
        assert not matches_trigger("activity_logged", config, {"activity_type": "call", "call_duration": 30})

    def test_missing_duration_fails_closed(self):
        """A minimum duration cannot be satisfied by an event without one."""
        config = {"min_call_duration_seconds": 60}
        assert not matches_trigger("activity_logged", config, {"activity_type": "call"})


class TestFieldUpdated:
    """field_updated configs."""

    def test_field_id(self):
        config = {"field_id": "cf1"}
        assert matches_trigger("field_updated", config, {"custom_field_id": "cf1", "new_value": "x"})
        assert not matches_trigger("field_updated", config, {"custom_field_id": "cf2", "new_value": "x"})

    def test_change_types(self):
        assert matches_trigger("field_updated", {"change_type": "set"}, {"new_value": "x"})
        assert not matches_trigger("field_updated", {"change_type": "set"}, {"new_value": ""})
        assert matches_trigger("field_updated", {"change_type": "cleared"}, {"new_value": None})
        assert not matches_trigger("field_updated", {"change_type": "cleared"}, {"new_value": "x"})
        assert matches_trigger("field_updated", {"change_type": "any"}, {"new_value": ""})

    def test_value_threshold(self):
        """Threshold compares the new value numerically."""
        config = {"field_id": "cf1", "value_threshold": ">100"}
        assert matches_trigger("field_updated", config, {"custom_field_id": "cf1", "new_value": "150"})
        assert not matches_trigger("field_updated", config, {"custom_field_id": "cf1", "new_value": "50"})

    def test_threshold_non_numeric_value_does_not_match(self):
        config = {"value_threshold": "<5"}
        assert not matches_trigger("field_updated", config, {"new_value": "many"})

    def test_threshold_ignored_for_empty_value(self):
        """Threshold is only applied when a new value is present."""
        assert matches_trigger("field_updated", {"value_threshold": ">100"}, {"new_value": ""})

    @pytest.mark.parametrize("threshold,value,expected", [
        (">10", 11, True),
        (">10", 10, False),
        ("<10", 9.5, True),
        ("<10", 10, False),
        ("=10", 1, True),
        (">abc", 1, True),
    ])
    def test_threshold_passes(self, threshold, value, expected):
        assert threshold_passes(threshold, value) is expected


class TestAssignmentChanged:
    """assignment_changed configs."""

    def test_user_and_team(self):
        config = {"assigned_to_user_ids": ["u1"], "assigned_to_team_ids": ["t1"]}
        assert matches_trigger("assignment_changed", config, {"new_user_id": "u1", "new_team_id": "t1"})
        assert not matches_trigger("assignment_changed", config, {"new_user_id": "u2", "new_team_id": "t1"})
        assert not matches_trigger("assignment_changed", config, {"new_user_id": "u1", "new_team_id": "t2"})


class TestEmailEngagement:
    """email_engagement configs."""

    def test_engagement_type(self):
        config = {"engagement_type": "clicked"}
        assert matches_trigger("email_engagement", config, {"engagement_type": "clicked"})
        assert not matches_trigger("email_engagement", config, {"engagement_type": "opened"})

    def test_within_hours(self):
        """Engagement must happen inside the window after the send."""
        config = {"engagement_type": "opened", "within_hours": 24}
        inside = {"engagement_type": "opened", "sent_at": "2024-03-01T10:00:00Z", "opened_at": "2024-03-02T09:00:00Z"}
        outside = {"engagement_type": "opened", "sent_at": "2024-03-01T10:00:00Z", "opened_at": "2024-03-02T11:00:00Z"}
        assert matches_trigger("email_engagement", config, inside)
        assert not matches_trigger("email_engagement", config, outside)

    def test_within_hours_uses_click_time(self):
        config = {"within_hours": 1}
        data = {"engagement_type": "clicked", "sent_at": "2024-03-01T10:00:00", "clicked_at": "2024-03-01T10:30:00"}
        assert matches_trigger("email_engagement", config, data)


class TestScanDrivenAndInvalid:
    """Pass-through types, unknown types and malformed configs."""

    def test_inactivity_and_time_based_pass_through(self):
        """Candidates for these types are chosen by the periodic scan."""
        assert matches_trigger("inactivity", {"days_inactive": 30}, {})
        assert matches_trigger("time_based", {"date_field": "renewal_date", "offset_days": 3}, {})

    def test_unknown_trigger_type(self):
        assert not matches_trigger("birthday", {}, {})

    def test_malformed_config_never_matches(self):
        assert not matches_trigger("activity_logged", {"min_call_duration_seconds": "long"}, {})
        assert not matches_trigger("inactivity", {"days_inactive": "many"}, {})

    def test_none_config_and_payload(self):
        assert matches_trigger("stage_change", None, None)
