# models/automation.py
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime
from enum import Enum


class TriggerType(str, Enum):
    STAGE_CHANGE = "stage_change"
    DISPOSITION_SET = "disposition_set"
    ACTIVITY_LOGGED = "activity_logged"
    FIELD_UPDATED = "field_updated"
    INACTIVITY = "inactivity"
    TIME_BASED = "time_based"
    ASSIGNMENT_CHANGED = "assignment_changed"
    EMAIL_ENGAGEMENT = "email_engagement"
    TEST = "test"


class ConditionLogic(str, Enum):
    AND = "AND"
    OR = "OR"


# ===========================
# TRIGGER CONFIGURATION
# One model per trigger type, discriminated on trigger_type
# ===========================

class _TriggerConfigBase(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StageChangeConfig(_TriggerConfigBase):
    trigger_type: Literal["stage_change"] = "stage_change"
    from_stage_id: Optional[str] = None
    to_stage_id: Optional[str] = None


class DispositionSetConfig(_TriggerConfigBase):
    trigger_type: Literal["disposition_set"] = "disposition_set"
    disposition_ids: List[str] = Field(default_factory=list)
    sub_disposition_ids: List[str] = Field(default_factory=list)


class ActivityLoggedConfig(_TriggerConfigBase):
    trigger_type: Literal["activity_logged"] = "activity_logged"
    activity_types: List[str] = Field(default_factory=list)
    min_call_duration_seconds: Optional[float] = None


class FieldUpdatedConfig(_TriggerConfigBase):
    trigger_type: Literal["field_updated"] = "field_updated"
    field_id: Optional[str] = None
    change_type: Optional[Literal["set", "cleared", "any"]] = None
    value_threshold: Optional[str] = None  # ">100", "<5"


class InactivityConfig(_TriggerConfigBase):
    trigger_type: Literal["inactivity"] = "inactivity"
    days_inactive: int = 30


class TimeBasedConfig(_TriggerConfigBase):
    trigger_type: Literal["time_based"] = "time_based"
    date_field: Optional[str] = None
    offset_days: int = 0


class AssignmentChangedConfig(_TriggerConfigBase):
    trigger_type: Literal["assignment_changed"] = "assignment_changed"
    assigned_to_user_ids: List[str] = Field(default_factory=list)
    assigned_to_team_ids: List[str] = Field(default_factory=list)


class EmailEngagementConfig(_TriggerConfigBase):
    trigger_type: Literal["email_engagement"] = "email_engagement"
    engagement_type: Optional[Literal["opened", "clicked"]] = None
    within_hours: Optional[float] = None


TriggerConfig = Annotated[
    Union[
        StageChangeConfig,
        DispositionSetConfig,
        ActivityLoggedConfig,
        FieldUpdatedConfig,
        InactivityConfig,
        TimeBasedConfig,
        AssignmentChangedConfig,
        EmailEngagementConfig,
    ],
    Field(discriminator="trigger_type"),
]

_trigger_config_adapter = TypeAdapter(TriggerConfig)


def parse_trigger_config(trigger_type: str, raw: Optional[Dict[str, Any]]) -> TriggerConfig:
    """Build the typed config for a rule's stored trigger_config map.

    Raises pydantic.ValidationError for unknown trigger types or bad values.
    """
    data = dict(raw or {})
    data["trigger_type"] = trigger_type
    return _trigger_config_adapter.validate_python(data)


# ===========================
# CONDITIONS
# ===========================

class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"


class _ConditionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None


class ContactFieldCondition(_ConditionBase):
    type: Literal["contact_field"] = "contact_field"
    field: str
    operator: Operator = Operator.EQUALS
    value: Any = None


class CustomFieldCondition(_ConditionBase):
    type: Literal["custom_field"] = "custom_field"
    field_name: str
    operator: Operator = Operator.EQUALS
    value: Any = None


class ActivityHistoryCondition(_ConditionBase):
    type: Literal["activity_history"] = "activity_history"
    activity_type: str
    operator: Operator = Operator.GREATER_THAN_OR_EQUAL
    value: Any = 1
    days_ago: int = 30


class TimeCondition(_ConditionBase):
    type: Literal["time_condition"] = "time_condition"
    time_type: Literal["day_of_week", "time_of_day", "month"]
    values: List[str] = Field(default_factory=list)  # "Mon", "Jan"
    start_time: Optional[str] = None  # "09:00"
    end_time: Optional[str] = None


class UserTeamCondition(_ConditionBase):
    type: Literal["user_team"] = "user_team"
    check_type: Literal["assigned_user", "assigned_team"]
    user_ids: List[str] = Field(default_factory=list)
    team_ids: List[str] = Field(default_factory=list)


Condition = Annotated[
    Union[
        ContactFieldCondition,
        CustomFieldCondition,
        ActivityHistoryCondition,
        TimeCondition,
        UserTeamCondition,
    ],
    Field(discriminator="type"),
]

condition_adapter = TypeAdapter(Condition)


# ===========================
# RULES
# ===========================

class AutomationRule(BaseModel):
    """Tenant-configured automation rule as stored in email_automation_rules"""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str
    org_id: str
    name: str = ""
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.AND
    email_template_id: Optional[str] = None
    send_delay_minutes: int = 0
    max_sends_per_contact: Optional[int] = None
    cooldown_period_days: Optional[float] = None
    priority: int = 0
    is_active: bool = True
    ab_test_enabled: bool = False
    enforce_business_hours: bool = False
    total_triggered: int = 0
    total_sent: int = 0
    total_failed: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AutomationRuleCreate(BaseModel):
    org_id: str
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[Condition] = Field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.AND
    email_template_id: str
    send_delay_minutes: int = Field(default=0, ge=0)
    max_sends_per_contact: Optional[int] = Field(default=None, ge=1)
    cooldown_period_days: Optional[float] = Field(default=None, ge=0)
    priority: int = 0
    is_active: bool = False
    ab_test_enabled: bool = False
    enforce_business_hours: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        """Validate automation name"""
        if not v or not v.strip():
            raise ValueError('Automation name is required')
        if len(v) > 200:
            raise ValueError('Name must be less than 200 characters')
        return v.strip()

    @field_validator("trigger_type")
    @classmethod
    def validate_trigger_type(cls, v):
        if v == TriggerType.TEST:
            raise ValueError("'test' is not a configurable trigger type")
        return v

    def validated_trigger_config(self) -> Dict[str, Any]:
        """Trigger config checked against its trigger type, stored without the tag"""
        typed = parse_trigger_config(self.trigger_type.value, self.trigger_config)
        return typed.model_dump(exclude={"trigger_type"}, exclude_none=True)


class AutomationRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_config: Optional[Dict[str, Any]] = None
    conditions: Optional[List[Condition]] = None
    condition_logic: Optional[ConditionLogic] = None
    email_template_id: Optional[str] = None
    send_delay_minutes: Optional[int] = Field(default=None, ge=0)
    max_sends_per_contact: Optional[int] = Field(default=None, ge=1)
    cooldown_period_days: Optional[float] = Field(default=None, ge=0)
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    ab_test_enabled: Optional[bool] = None
    enforce_business_hours: Optional[bool] = None


# ===========================
# INBOUND EVENTS
# ===========================

class TriggerEvent(BaseModel):
    """CRM event emitted towards the automation engine"""
    model_config = ConfigDict(populate_by_name=True)

    org_id: str = Field(alias="orgId")
    trigger_type: TriggerType = Field(alias="triggerType")
    contact_id: str = Field(alias="contactId")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, alias="triggerData")
    rule_id: Optional[str] = Field(default=None, alias="ruleId")
    preview: bool = False
