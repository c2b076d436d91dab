"""Pydantic shapes for the JSON blobs stored on a connection.

Stored JSON is parsed here rather than read by ad hoc keys. Loaders raise
``ValueError`` (pydantic's ``ValidationError`` is a subclass) on malformed
input; callers decide whether to degrade or fail.
"""

import json
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Keys whose presence means behaviour has been tuned
TUNING_KEYS = ("role", "tone", "response_length", "temperature")


class HardConstraints(BaseModel):
    """Non-negotiable limits on what the assistant may claim."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    never_claim: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("never_claim", "neverClaim")
    )
    escalation_path: str | None = Field(
        default=None, validation_alias=AliasChoices("escalation_path", "escalationPath")
    )


class BehaviorProfile(BaseModel):
    """How the assistant should act for a tenant."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    role: str | None = Field(default=None, validation_alias=AliasChoices("role", "assistantRole"))
    tone: str | None = None
    response_length: str | None = Field(
        default=None, validation_alias=AliasChoices("response_length", "responseLength")
    )
    temperature: float | None = None
    sales_intensity: float | None = Field(
        default=None, validation_alias=AliasChoices("sales_intensity", "salesIntensity")
    )
    primary_goal: str | None = Field(
        default=None, validation_alias=AliasChoices("primary_goal", "primaryGoal")
    )
    hard_constraints: HardConstraints = Field(
        default_factory=HardConstraints,
        validation_alias=AliasChoices("hard_constraints", "hardConstraints"),
    )

    def configured_keys(self) -> list[str]:
        """Return the tuning keys that hold a non-empty value."""
        configured = []
        for key in TUNING_KEYS:
            value = getattr(self, key)
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            configured.append(key)
        return configured


class BehaviorOverride(BaseModel):
    """Page-level behaviour applied when the page path contains ``match``."""

    model_config = ConfigDict(extra="ignore")

    match: str = Field(..., min_length=1)
    overrides: dict[str, Any] = Field(default_factory=dict)
    instruction: str | None = None


class WidgetConfig(BaseModel):
    """Front-end widget settings relevant to prompt assembly."""

    model_config = ConfigDict(extra="ignore")

    tone: str | None = None


class OnboardingMeta(BaseModel):
    """Onboarding event log plus per-step timings.

    Extra keys are caller-supplied transition metadata and are kept as-is.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    events: list[dict[str, Any]] = Field(default_factory=list)
    step_timings: dict[str, float] = Field(default_factory=dict, alias="stepTimings")

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), default=str)


# Keys callers may not overwrite through transition metadata
RESERVED_META_KEYS = frozenset({"events", "stepTimings", "step_timings"})


def _loads(raw: str | None, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    if not isinstance(raw, str):
        return raw
    return json.loads(raw)


def load_behavior_profile(raw: str | None) -> BehaviorProfile:
    data = _loads(raw, {})
    if not isinstance(data, dict):
        raise ValueError(f"Behavior profile must be an object, got {type(data).__name__}")
    return BehaviorProfile.model_validate(data)


def load_behavior_overrides(raw: str | None) -> list[BehaviorOverride]:
    data = _loads(raw, [])
    if not isinstance(data, list):
        raise ValueError(f"Behavior overrides must be a list, got {type(data).__name__}")
    return [BehaviorOverride.model_validate(item) for item in data]


def load_policies(raw: str | None) -> list[str]:
    data = _loads(raw, [])
    if not isinstance(data, list):
        raise ValueError(f"Policies must be a list, got {type(data).__name__}")
    return [str(p) for p in data if str(p).strip()]


def load_widget_config(raw: str | None) -> WidgetConfig:
    data = _loads(raw, {})
    if not isinstance(data, dict):
        raise ValueError(f"Widget config must be an object, got {type(data).__name__}")
    return WidgetConfig.model_validate(data)


def load_onboarding_meta(raw: str | None) -> OnboardingMeta:
    """Parse onboarding meta, falling back to an empty log on bad JSON.

    The event log is observability data; a corrupt blob must not block
    onboarding, so it is reset instead of raising.
    """
    try:
        data = _loads(raw, {})
    except (json.JSONDecodeError, TypeError):
        return OnboardingMeta()
    if not isinstance(data, dict):
        return OnboardingMeta()
    try:
        return OnboardingMeta.model_validate(data)
    except ValueError:
        return OnboardingMeta()
