from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# -----------------------------
# alias generator
# -----------------------------

def to_camel_case(s: str) -> str:
    head, *rest = s.split('_')
    return head + ''.join(word.capitalize() for word in rest)

class DSLBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel_case,
        populate_by_name=True,
    )

# -----------------------------
# Enums
# -----------------------------

class StepType(str, Enum):
    ACTION = "Action"
    DECISION = "Decision"
    AUTO_CHECK = "AutoCheck"
    MANUAL = "Manual"
    TERMINAL = "Terminal"

class ActionType(str, Enum):
    COMPLETE = "Complete"
    DECIDE = "Decide"
    SKIP = "Skip"
    RESTART = "Restart"
    CUSTOM = "Custom"

class ConditionOperator(str, Enum):
    EQUALS = "Equals"
    NOT_EQUALS = "NotEquals"
    GREATER_THAN = "GreaterThan"
    LESS_THAN = "LessThan"
    GREATER_THAN_OR_EQUAL = "GreaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "LessThanOrEqual"
    CONTAINS = "Contains"
    NOT_CONTAINS = "NotContains"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    IN = "In"
    NOT_IN = "NotIn"
    IS_NULL = "IsNull"
    IS_NOT_NULL = "IsNotNull"

class ConditionLogic(str, Enum):
    AND = "And"
    OR = "Or"

class ValidationType(str, Enum):
    REQUIRED = "Required"
    MIN_LENGTH = "MinLength"
    MAX_LENGTH = "MaxLength"
    PATTERN = "Pattern"
    RANGE = "Range"
    CUSTOM = "Custom"

# -----------------------------
# Conditions & validation rules
# -----------------------------

class Condition(DSLBase):
    condition_id: str = ""
    field: str = ""
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Any = None
    # joins this condition to its predecessor
    logic: ConditionLogic = ConditionLogic.AND

class ValidationRule(DSLBase):
    rule_id: str = ""
    field: str = ""
    type: ValidationType
    value: Any = None
    error_message: str = ""

# -----------------------------
# Steps, actions, transitions
# -----------------------------

class ActionDefinition(DSLBase):
    action_id: str
    name: str = ""
    label: str = ""
    type: ActionType = ActionType.COMPLETE
    is_enabled: bool = True
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

class StepConfig(DSLBase):
    requires_note: bool = False
    auto_execute: bool = False
    timeout_minutes: Optional[int] = None
    validation_rules: List[ValidationRule] = Field(default_factory=list)
    custom_properties: Dict[str, Any] = Field(default_factory=dict)

class StepDefinition(DSLBase):
    step_id: str
    name: str = ""
    description: str = ""
    type: StepType = StepType.ACTION
    is_terminal: bool = False
    config: StepConfig = Field(default_factory=StepConfig)
    actions: List[ActionDefinition] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_action(self, action_id: str) -> Optional[ActionDefinition]:
        return next((a for a in self.actions if a.action_id == action_id), None)

    @property
    def enabled_actions(self) -> List[ActionDefinition]:
        return [a for a in self.actions if a.is_enabled]

class Transition(DSLBase):
    transition_id: str = ""
    from_step_id: str
    to_step_id: str
    trigger_action: str = ""
    conditions: List[Condition] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

# -----------------------------
# Workflow schema root
# -----------------------------

class WorkflowMetadata(DSLBase):
    category: str = ""
    tags: List[str] = Field(default_factory=list)
    custom_properties: Dict[str, Any] = Field(default_factory=dict)

class WorkflowSchema(DSLBase):
    workflow_id: str = ""
    name: str = ""
    description: str = ""
    initial_step_id: str = ""
    steps: List[StepDefinition] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)

    def get_step(self, step_id: Optional[str]) -> Optional[StepDefinition]:
        if step_id is None:
            return None
        return next((s for s in self.steps if s.step_id == step_id), None)

    def transitions_from(self, step_id: str) -> List[Transition]:
        """Outgoing transitions in declaration order."""
        return [t for t in self.transitions if t.from_step_id == step_id]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def parse_workflow_schema(text: str) -> WorkflowSchema:
    return WorkflowSchema.model_validate_json(text)

# -----------------------------
# Validation results
# -----------------------------

class ValidationIssue(DSLBase):
    field: str
    code: str
    message: str
    value: Any = None

class ValidationResult(DSLBase):
    is_valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)

    def add_error(self, field: str, code: str, message: str, value: Any = None) -> None:
        self.errors.append(ValidationIssue(field=field, code=code, message=message, value=value))
        self.is_valid = False

    def add_warning(self, field: str, code: str, message: str) -> None:
        self.warnings.append(ValidationIssue(field=field, code=code, message=message))

    def merge(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.is_valid = self.is_valid and other.is_valid

    @property
    def messages(self) -> List[str]:
        return [e.message for e in self.errors]
