"""Feature state registry.

Maintains feature toggle state and resolves conditional rules
deterministically. The registry works on a private copy of the feature map;
callers read the updated records back and hand them to the session store.

Hard dependency invariant: a feature may be enabled only while every feature
it depends on is enabled, unless an enable/require rule targeting it is
currently satisfied.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from cvsession.core.errors import (
    DependencyError,
    ExpressionError,
    SessionError,
    ValidationError,
)
from cvsession.models.features import (
    Complexity,
    ConditionalRule,
    FeatureMetadata,
    FeatureState,
    RuleAction,
)
from cvsession.models.session import EnhancedSessionState
from cvsession.models.steps import CVStep
from cvsession.services.rule_expressions import evaluate_condition

logger = logging.getLogger(__name__)

_OVERRIDE_ACTIONS = frozenset({RuleAction.ENABLE, RuleAction.REQUIRE})
_STEP_IDS = frozenset(step.value for step in CVStep)

# =============================================================================
# Default Feature Catalog
# =============================================================================


def default_feature_states() -> dict[str, FeatureState]:
    """Build the feature catalog a new session starts with."""
    features = [
        FeatureState(
            feature_id="cv-analysis",
            enabled=True,
            metadata=FeatureMetadata(
                estimated_duration_minutes=2,
                complexity=Complexity.MEDIUM,
                category="analysis",
            ),
        ),
        FeatureState(
            feature_id="podcast-generation",
            dependencies=["cv-analysis"],
            conditional_logic=[
                ConditionalRule(
                    id="podcast-requires-analysis",
                    condition='"analysis" in session.completed_steps',
                    action=RuleAction.ENABLE,
                    target="podcast-generation",
                    priority=1,
                    description="Offer the podcast once the CV has been analyzed",
                ),
            ],
            metadata=FeatureMetadata(
                estimated_duration_minutes=5,
                complexity=Complexity.HIGH,
                category="multimedia",
            ),
        ),
        FeatureState(
            feature_id="video-introduction",
            dependencies=["cv-analysis"],
            metadata=FeatureMetadata(
                estimated_duration_minutes=3,
                complexity=Complexity.MEDIUM,
                category="multimedia",
            ),
        ),
        FeatureState(
            feature_id="portfolio-gallery",
            enabled=True,
            metadata=FeatureMetadata(
                estimated_duration_minutes=2,
                complexity=Complexity.LOW,
                category="visual",
            ),
        ),
        FeatureState(
            feature_id="skills-visualization",
            enabled=True,
            dependencies=["cv-analysis"],
            metadata=FeatureMetadata(
                estimated_duration_minutes=1,
                complexity=Complexity.LOW,
                category="visual",
            ),
        ),
        FeatureState(
            feature_id="certification-badges",
            dependencies=["cv-analysis"],
            metadata=FeatureMetadata(
                estimated_duration_minutes=2,
                complexity=Complexity.MEDIUM,
                category="credentials",
            ),
        ),
    ]
    return {feature.feature_id: feature for feature in features}


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ResolvedAction:
    """Winning rule outcome for one target.

    Attributes:
        target: Feature id or step id.
        action: Action to apply.
        rule_id: Rule that produced the action.
        priority: Priority of that rule.
    """

    target: str
    action: RuleAction
    rule_id: str
    priority: int


@dataclass(frozen=True)
class RuleFailure:
    """A rule whose condition could not be evaluated."""

    rule_id: str
    error: ExpressionError


@dataclass
class RuleEvaluation:
    """Result of one evaluation pass.

    Attributes:
        actions: One action per target, in evaluation order.
        errors: Rules that failed to evaluate. They never abort the pass.
    """

    actions: list[ResolvedAction] = field(default_factory=list)
    errors: list[RuleFailure] = field(default_factory=list)


@dataclass
class ApplyOutcome:
    """Result of applying resolved actions.

    Attributes:
        applied: Actions that took effect.
        errors: Actions rejected with the reason (DependencyError for
            unsatisfiable require/disable, ValidationError for unknown targets).
        step_directives: Directives for step targets.
    """

    applied: list[ResolvedAction] = field(default_factory=list)
    errors: list[SessionError] = field(default_factory=list)
    step_directives: dict[CVStep, RuleAction] = field(default_factory=dict)


# =============================================================================
# Rule Context
# =============================================================================


def build_rule_context(state: EnhancedSessionState) -> dict[str, Any]:
    """Build the read-only view rule conditions are evaluated against.

    Names:
        session: JSON dump of the whole session.
        features: feature id -> JSON feature state.
        steps: step id -> JSON step progress.
    """
    session = state.model_dump(mode="json")
    return {
        "session": session,
        "features": session["feature_states"],
        "steps": session["step_progress"],
    }


# =============================================================================
# Registry
# =============================================================================


class FeatureStateRegistry:
    """Feature toggles, hard dependencies and conditional rule resolution.

    Args:
        features: Feature map to work on. Copied; the caller's map is never
            mutated.
        context: Rule evaluation context (see build_rule_context).
    """

    def __init__(
        self,
        features: Mapping[str, FeatureState],
        context: Mapping[str, Any] | None = None,
    ) -> None:
        self._features = {
            feature_id: feature.model_copy(deep=True)
            for feature_id, feature in features.items()
        }
        self._context: Mapping[str, Any] = context or {}

    @classmethod
    def from_session(cls, state: EnhancedSessionState) -> "FeatureStateRegistry":
        return cls(state.feature_states, build_rule_context(state))

    @property
    def features(self) -> dict[str, FeatureState]:
        """Copy of the current feature map."""
        return {
            feature_id: feature.model_copy(deep=True)
            for feature_id, feature in self._features.items()
        }

    def get(self, feature_id: str) -> FeatureState:
        """Copy of one feature.

        Raises:
            ValidationError: If the feature is unknown.
        """
        return self._require(feature_id).model_copy(deep=True)

    def rules(self) -> list[ConditionalRule]:
        """All rules owned by all features."""
        return [
            rule
            for feature in self._features.values()
            for rule in feature.conditional_logic
        ]

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    def unmet_dependencies(self, feature_id: str) -> list[str]:
        """Dependencies of a feature that are unknown or disabled."""
        feature = self._require(feature_id)
        return [
            dep
            for dep in feature.dependencies
            if dep not in self._features or not self._features[dep].enabled
        ]

    def has_override(self, feature_id: str) -> bool:
        """True when a satisfied enable/require rule targets the feature."""
        for rule in self.rules():
            if rule.target != feature_id or rule.action not in _OVERRIDE_ACTIONS:
                continue
            try:
                if evaluate_condition(rule.condition, self._context):
                    return True
            except ExpressionError as e:
                logger.warning("Skipping rule %s: %s", rule.id, e.reason)
        return False

    def enabled_dependents(self, feature_id: str) -> list[str]:
        """Enabled features that list feature_id as a hard dependency."""
        return [
            other.feature_id
            for other in self._features.values()
            if other.enabled and feature_id in other.dependencies
        ]

    def set_enabled(self, feature_id: str, enabled: bool) -> FeatureState:
        """Enable or disable a feature.

        Args:
            feature_id: Feature to toggle.
            enabled: Target state.

        Returns:
            Copy of the updated feature.

        Raises:
            ValidationError: If the feature is unknown.
            DependencyError: If enabling with unmet dependencies and no
                satisfied override, or disabling a feature that enabled
                dependents still need.
        """
        feature = self._require(feature_id)
        if feature.enabled == enabled:
            return feature.model_copy(deep=True)

        if enabled:
            unmet = self.unmet_dependencies(feature_id)
            if unmet and not self.has_override(feature_id):
                raise DependencyError(feature_id, unmet)
        else:
            blocking = [
                dependent
                for dependent in self.enabled_dependents(feature_id)
                if not self.has_override(dependent)
            ]
            if blocking:
                raise DependencyError(
                    feature_id,
                    blocking,
                    message=(
                        f"'{feature_id}' is required by enabled features: "
                        f"{', '.join(blocking)}"
                    ),
                )

        feature.enabled = enabled
        return feature.model_copy(deep=True)

    def configure(
        self, feature_id: str, configuration: Mapping[str, Any]
    ) -> FeatureState:
        """Replace a feature's configuration and mark it configured."""
        feature = self._require(feature_id)
        feature.configuration = dict(configuration)
        feature.progress.configured = True
        return feature.model_copy(deep=True)

    def validate_invariants(self) -> list[str]:
        """Enabled features with unmet dependencies and no satisfied override."""
        return [
            feature_id
            for feature_id, feature in self._features.items()
            if feature.enabled
            and self.unmet_dependencies(feature_id)
            and not self.has_override(feature_id)
        ]

    def recommended_features(self) -> list[str]:
        """Disabled features that could be enabled right now."""
        return [
            feature_id
            for feature_id, feature in self._features.items()
            if not feature.enabled and not self.unmet_dependencies(feature_id)
        ]

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def evaluate(
        self,
        rules: Iterable[ConditionalRule] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> RuleEvaluation:
        """Evaluate rules in descending priority; first match per target wins.

        Rules with equal priority keep their declaration order. A rule whose
        condition fails to evaluate is reported in errors and skipped.

        Args:
            rules: Rules to evaluate. Defaults to every feature's rules.
            context: Evaluation context. Defaults to the registry context.

        Returns:
            RuleEvaluation with resolved actions and per-rule errors.
        """
        ordered = sorted(
            self.rules() if rules is None else list(rules),
            key=lambda rule: -rule.priority,
        )
        context = self._context if context is None else context
        result = RuleEvaluation()
        decided: set[str] = set()
        for rule in ordered:
            if rule.target in decided:
                continue
            try:
                matched = evaluate_condition(rule.condition, context)
            except ExpressionError as e:
                logger.warning("Rule %s failed to evaluate: %s", rule.id, e.reason)
                result.errors.append(RuleFailure(rule_id=rule.id, error=e))
                continue
            if matched:
                decided.add(rule.target)
                result.actions.append(
                    ResolvedAction(
                        target=rule.target,
                        action=rule.action,
                        rule_id=rule.id,
                        priority=rule.priority,
                    )
                )
        return result

    def apply_resolved_actions(
        self, actions: Iterable[ResolvedAction]
    ) -> ApplyOutcome:
        """Apply rule outcomes to feature state.

        - enable: switch the feature on (the satisfied rule is its override)
        - require: switch on and flag as required; rejected with a
          DependencyError when dependencies are unmet
        - disable: switch off unless enabled dependents still need it
        - recommend: set user_preferences recommended / recommended_by
        - hide / show: set user_preferences visible
        - step targets: recorded as step directives

        Returns:
            ApplyOutcome with applied actions, collected errors and step
            directives.
        """
        outcome = ApplyOutcome()
        for resolved in actions:
            if resolved.target in _STEP_IDS:
                outcome.step_directives[CVStep(resolved.target)] = resolved.action
                outcome.applied.append(resolved)
                continue
            feature = self._features.get(resolved.target)
            if feature is None:
                outcome.errors.append(
                    ValidationError(
                        f"Rule '{resolved.rule_id}' targets unknown feature "
                        f"'{resolved.target}'",
                    )
                )
                continue
            try:
                self._apply_one(feature, resolved)
            except DependencyError as e:
                logger.info(
                    "Rule %s could not %s %s: %s",
                    resolved.rule_id,
                    resolved.action.value,
                    resolved.target,
                    e.message,
                )
                outcome.errors.append(e)
                continue
            outcome.applied.append(resolved)
        return outcome

    def _apply_one(self, feature: FeatureState, resolved: ResolvedAction) -> None:
        action = resolved.action
        if action == RuleAction.ENABLE:
            feature.enabled = True
        elif action == RuleAction.REQUIRE:
            unmet = self.unmet_dependencies(feature.feature_id)
            if unmet:
                raise DependencyError(
                    feature.feature_id,
                    unmet,
                    message=(
                        f"Rule '{resolved.rule_id}' requires '{feature.feature_id}' "
                        f"but its dependencies are unmet: {', '.join(unmet)}"
                    ),
                )
            feature.enabled = True
            feature.user_preferences["required"] = True
        elif action == RuleAction.DISABLE:
            self.set_enabled(feature.feature_id, False)
        elif action == RuleAction.RECOMMEND:
            feature.user_preferences["recommended"] = True
            feature.user_preferences["recommended_by"] = resolved.rule_id
        elif action in (RuleAction.HIDE, RuleAction.SHOW):
            feature.user_preferences["visible"] = action == RuleAction.SHOW

    def _require(self, feature_id: str) -> FeatureState:
        feature = self._features.get(feature_id)
        if feature is None:
            raise ValidationError(
                f"Unknown feature '{feature_id}'",
                details=[{"feature_id": feature_id}],
            )
        return feature
