"""
Playback Models

Intent specification models (as produced by the recording side) and the
result types handed back to the playback driver.

Specifications arrive as JSON written by the generator, so the pydantic
models accept both the generator's camelCase keys and snake_case names.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class StepPreference(str, Enum):
    SNIPPET = "snippet"
    AI = "ai"


class FallbackPolicy(str, Enum):
    NONE = "none"
    AI = "ai"
    SNIPPET = "snippet"


class SkipConditionType(str, Enum):
    URL_MATCH = "url_match"
    ELEMENT_EXISTS = "element_exists"
    TEXT_PRESENT = "text_present"


class ExecutionMethod(str, Enum):
    SNIPPET = "snippet"
    AI = "ai"
    HYBRID = "hybrid"


class ActionKind(str, Enum):
    """Closed set of scripted action kinds"""
    NAVIGATE = "navigate"
    FILL = "fill"
    CLICK = "click"
    SELECT = "select"
    WAIT = "wait"


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    SELECTOR_NOT_FOUND = "selector_not_found"
    NAVIGATION = "navigation"
    NETWORK = "network"
    CLICK_FAILED = "click_failed"
    INPUT_FAILED = "input_failed"
    UNKNOWN = "unknown"


# Spellings accepted in the "action" field
ACTION_ALIASES: Dict[str, ActionKind] = {
    "navigate": ActionKind.NAVIGATE,
    "goto": ActionKind.NAVIGATE,
    "open": ActionKind.NAVIGATE,
    "fill": ActionKind.FILL,
    "input": ActionKind.FILL,
    "type": ActionKind.FILL,
    "click": ActionKind.CLICK,
    "tap": ActionKind.CLICK,
    "select": ActionKind.SELECT,
    "choose": ActionKind.SELECT,
    "wait": ActionKind.WAIT,
    "pause": ActionKind.WAIT,
}


# Keywords in free-text instructions, checked in order
_INSTRUCTION_KINDS = [
    (ActionKind.NAVIGATE, re.compile(r"\b(navigate|go to)\b")),
    (ActionKind.CLICK, re.compile(r"\bclick\b")),
    (ActionKind.FILL, re.compile(r"\b(enter|type|fill)\b")),
    (ActionKind.SELECT, re.compile(r"\bselect\b")),
    (ActionKind.WAIT, re.compile(r"\bwait\b")),
]

# ==================== Skip Conditions ====================

class SkipCondition(BaseModel):
    """Condition under which a step is already satisfied and can be skipped"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: SkipConditionType
    value: str = Field(validation_alias=AliasChoices("value", "pattern"))
    skip_reason: Optional[str] = Field(
        None, validation_alias=AliasChoices("skip_reason", "skipReason", "reason")
    )


# ==================== Success Criteria ====================

class _Criteria(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    description: Optional[str] = None


class ElementExistsCriteria(_Criteria):
    type: Literal["element_exists"] = "element_exists"
    selector: str


class ElementHasValueCriteria(_Criteria):
    type: Literal["element_has_value"] = "element_has_value"
    selector: str
    expected_value: str = Field(
        validation_alias=AliasChoices("expected_value", "expectedValue")
    )


class NavigationCriteria(_Criteria):
    type: Literal["navigation"] = "navigation"
    url_pattern: str = Field(validation_alias=AliasChoices("url_pattern", "urlPattern"))
    wait_for_element: Optional[str] = Field(
        None, validation_alias=AliasChoices("wait_for_element", "waitForElement")
    )


class CustomCriteria(_Criteria):
    type: Literal["custom"] = "custom"
    custom_check: str = Field(
        validation_alias=AliasChoices("custom_check", "customCheck", "predicateCode")
    )


class AIVerifyCriteria(_Criteria):
    type: Literal["ai_verify"] = "ai_verify"
    description: Optional[str] = "Verify the action completed successfully"


SuccessCriteria = Annotated[
    Union[
        ElementExistsCriteria,
        ElementHasValueCriteria,
        NavigationCriteria,
        CustomCriteria,
        AIVerifyCriteria,
    ],
    Field(discriminator="type"),
]


# ==================== Steps & Specs ====================

class Step(BaseModel):
    """
    One unit of an intent specification.

    Immutable once loaded; the playback driver owns it for one run.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = ""
    snippet: Optional[str] = None
    ai_instruction: Optional[str] = Field(
        None, validation_alias=AliasChoices("ai_instruction", "aiInstruction")
    )
    action: Optional[str] = None
    selectors: List[str] = Field(default_factory=list)
    value: Optional[str] = None
    prefer: StepPreference = StepPreference.SNIPPET
    fallback: FallbackPolicy = FallbackPolicy.NONE
    skip_conditions: List[SkipCondition] = Field(
        default_factory=list,
        validation_alias=AliasChoices("skip_conditions", "skipConditions")
    )
    success_criteria: Optional[SuccessCriteria] = Field(
        None, validation_alias=AliasChoices("success_criteria", "successCriteria")
    )
    timeout_ms: Optional[int] = Field(
        None, validation_alias=AliasChoices("timeout_ms", "timeoutMs")
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        # Legacy single selector joins the candidate list
        selectors = list(data.get("selectors") or [])
        legacy = data.pop("selector", None)
        if legacy and legacy not in selectors:
            selectors.append(legacy)
        data["selectors"] = selectors

        if data.get("value") is not None and not isinstance(data["value"], str):
            data["value"] = str(data["value"])
        if data.get("fallback") is None:
            data["fallback"] = FallbackPolicy.NONE
        if data.get("prefer") is None:
            data["prefer"] = StepPreference.SNIPPET
        return data

    @property
    def criteria(self) -> _Criteria:
        """Declared success criteria, or a generic AI verification"""
        return self.success_criteria or AIVerifyCriteria()

    @property
    def goal(self) -> str:
        """Best natural-language description of what the step should achieve"""
        if self.ai_instruction:
            return self.ai_instruction
        if self.name:
            return self.name
        if self.success_criteria is not None and self.success_criteria.description:
            return self.success_criteria.description
        return ""

    def has_goal(self) -> bool:
        return bool(self.ai_instruction or self.name or self.success_criteria is not None)

    def has_scripted_content(self) -> bool:
        return bool(self.snippet or self.selectors or self.action or self.value)

    def action_kind(self) -> Optional[ActionKind]:
        """
        Resolve the scripted action kind.

        Explicit action first, then the snippet, then keywords in the
        instruction text.
        """
        if self.action:
            kind = ACTION_ALIASES.get(self.action.strip().lower())
            if kind:
                return kind

        if self.snippet:
            snippet = self.snippet
            if ".goto(" in snippet:
                return ActionKind.NAVIGATE
            if ".click(" in snippet:
                return ActionKind.CLICK
            if ".fill(" in snippet or ".type(" in snippet:
                return ActionKind.FILL
            if ".selectOption(" in snippet or ".select_option(" in snippet:
                return ActionKind.SELECT
            if ".wait" in snippet:
                return ActionKind.WAIT

        instruction = (self.ai_instruction or "").lower()
        for kind, pattern in _INSTRUCTION_KINDS:
            if pattern.search(instruction):
                return kind

        return None


class IntentSpec(BaseModel):
    """A replayable intent specification"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    start_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("start_url", "startUrl", "url")
    )
    variables: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize_variables(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        variables = data.get("variables")
        if isinstance(variables, dict):
            data = {**data, "variables": list(variables.keys())}
        elif isinstance(variables, list):
            names = []
            for item in variables:
                if isinstance(item, dict):
                    if item.get("name"):
                        names.append(item["name"])
                else:
                    names.append(str(item))
            data = {**data, "variables": names}
        return data


# ==================== Error Classification ====================

def classify_error(message: Optional[str]) -> ErrorKind:
    """Map a raw error message onto an ErrorKind"""
    text = (message or "").lower()

    if re.search(r"\btimeout", text):
        return ErrorKind.TIMEOUT
    if any(msg in text for msg in ("not found", "no element", "unable to locate")):
        return ErrorKind.SELECTOR_NOT_FOUND
    if re.search(r"\bnavigat(e|ion|ing)\b", text):
        return ErrorKind.NAVIGATION
    if "net::" in text or re.search(r"\bnetwork\b", text):
        return ErrorKind.NETWORK
    if re.search(r"\bclick", text):
        return ErrorKind.CLICK_FAILED
    if re.search(r"\b(fill|type|input)\b", text):
        return ErrorKind.INPUT_FAILED

    return ErrorKind.UNKNOWN


# ==================== Results ====================

@dataclass
class ExecutionResult:
    """Outcome of one step, as returned to the playback driver"""
    success: bool
    execution_method: ExecutionMethod
    data: Any = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    all_actions: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "executionMethod": self.execution_method.value,
            "data": self.data,
            "skipped": self.skipped,
            "allActions": list(self.all_actions),
        }
        if self.skipped:
            result["skipReason"] = self.skip_reason
        if not self.success:
            result["error"] = self.error or "Step failed"
            result["errorKind"] = (self.error_kind or ErrorKind.UNKNOWN).value
        return result


@dataclass
class ExecutionStatistics:
    """Per-controller execution counters"""
    snippet_success: int = 0
    snippet_failure: int = 0
    ai_success: int = 0
    ai_failure: int = 0
    skipped_steps: int = 0
    total_steps: int = 0

    def reset(self):
        self.snippet_success = 0
        self.snippet_failure = 0
        self.ai_success = 0
        self.ai_failure = 0
        self.skipped_steps = 0
        self.total_steps = 0

    def as_dict(self) -> Dict[str, Any]:
        attempted = (
            self.snippet_success + self.snippet_failure
            + self.ai_success + self.ai_failure
        )
        return {
            "snippet_success": self.snippet_success,
            "snippet_failure": self.snippet_failure,
            "ai_success": self.ai_success,
            "ai_failure": self.ai_failure,
            "skipped_steps": self.skipped_steps,
            "total_steps": self.total_steps,
            "snippet_success_rate": self.snippet_success / attempted if attempted else 0,
            "ai_success_rate": self.ai_success / attempted if attempted else 0,
            "skip_rate": self.skipped_steps / self.total_steps if self.total_steps else 0,
        }
