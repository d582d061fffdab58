"""
Targeting Evaluation.

This module contains the pure decision logic for flags and experiments. It
never touches the network or the cache: callers hand it a flag or experiment
from the current snapshot plus a context, and get a decision back.

Flag Evaluation Order:
    1. Flag disabled                -> off  (FLAG_DISABLED)
    2. User in force_exclude_users  -> off  (FORCE_EXCLUDED)
    3. User in force_include_users  -> on   (FORCE_INCLUDED)
    4. First matching rule          -> rule.serve (RULE_MATCH)
    5. rollout_percentage == 100    -> on   (DEFAULT)
    6. No user_id                   -> off  (MISSING_USER_ID)
    7. bucket < percentage * 100    -> on/off (ROLLOUT_MATCH / ROLLOUT_NO_MATCH)

Experiment Assignment Order:
    1. Status is not running        -> unassigned (NOT_RUNNING)
    2. Outside the schedule window  -> unassigned (NOT_STARTED / ENDED)
    3. Force exclude                -> unassigned (FORCE_EXCLUDED)
    4. Entry rules (unless force included)
    5. Weighted variation ranges over the bucket; past the weight total
       -> unassigned (UNALLOCATED)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Sequence

from togglebox.schemas.context import MISSING, TargetingContext
from togglebox.schemas.experiment import Experiment, ExperimentStatus, Variation
from togglebox.schemas.flag import FeatureFlag, RuleOperator, TargetingRule
from togglebox.services.hashing import BucketingHasher, percentage_threshold

logger = logging.getLogger(__name__)


class EvaluationReason(str, Enum):
    """Reasons for flag evaluation results."""

    # Flag is not present in the snapshot
    FLAG_NOT_FOUND = "FLAG_NOT_FOUND"

    # No snapshot has ever been fetched (fail closed)
    NO_SNAPSHOT = "NO_SNAPSHOT"

    # Flag master switch is off
    FLAG_DISABLED = "FLAG_DISABLED"

    FORCE_EXCLUDED = "FORCE_EXCLUDED"
    FORCE_INCLUDED = "FORCE_INCLUDED"

    # A targeting rule matched
    RULE_MATCH = "RULE_MATCH"

    # Flag-level percentage rollout
    ROLLOUT_MATCH = "ROLLOUT_MATCH"
    ROLLOUT_NO_MATCH = "ROLLOUT_NO_MATCH"

    # Percentage decision needed a user_id that was not provided
    MISSING_USER_ID = "MISSING_USER_ID"

    # Enabled flag with full rollout and no matching rule
    DEFAULT = "DEFAULT"


class AssignmentReason(str, Enum):
    """Reasons for experiment assignment results."""

    EXPERIMENT_NOT_FOUND = "EXPERIMENT_NOT_FOUND"
    NO_SNAPSHOT = "NO_SNAPSHOT"
    NOT_RUNNING = "NOT_RUNNING"
    NOT_STARTED = "NOT_STARTED"
    ENDED = "ENDED"
    FORCE_EXCLUDED = "FORCE_EXCLUDED"
    NOT_IN_TARGET = "NOT_IN_TARGET"
    UNALLOCATED = "UNALLOCATED"
    HASH_ASSIGNMENT = "HASH_ASSIGNMENT"


@dataclass(frozen=True)
class FlagDecision:
    """
    Outcome of evaluating one flag.

    Attributes:
        matched: True when a force list or targeting rule decided the result.
        enabled: Whether the flag is on for the context.
        variant: Variant served when enabled.
        reason: Why this result was returned.
    """

    matched: bool
    enabled: bool
    variant: str | None
    reason: EvaluationReason


@dataclass(frozen=True)
class ExperimentDecision:
    """Outcome of assigning one user to an experiment."""

    variation: Variation | None
    reason: AssignmentReason

    @property
    def assigned(self) -> bool:
        return self.variation is not None


def _scalar_equals(actual: object, expected: object) -> bool:
    """
    Type-sensitive equality for attribute values.

    Booleans only equal booleans (True != 1), numbers compare across int and
    float, everything else must share the exact type.
    """
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return actual == expected
    return type(actual) is type(expected) and actual == expected


class TargetingEvaluator:
    """
    Rule matching, percentage rollout and variation selection.

    Usage:
        evaluator = TargetingEvaluator()
        decision = evaluator.evaluate_flag(flag, context)
        if decision.enabled:
            show_dark_mode()
    """

    def __init__(self, hasher: BucketingHasher | None = None) -> None:
        self.hasher = hasher or BucketingHasher()

    # =========================================================================
    # Rule Matching
    # =========================================================================

    def in_rollout(self, user_id: str, key: str, percentage: float) -> bool:
        """True when the user's bucket for key falls below the percentage threshold."""
        return self.hasher.bucket_for(user_id, key) < percentage_threshold(percentage)

    def rule_matches(
        self,
        rule: TargetingRule,
        context: TargetingContext,
        key: str,
        fallback_percentage: float = 100,
    ) -> bool:
        """
        Check a single rule against a context.

        Args:
            rule: The rule to check.
            context: Context being evaluated.
            key: Flag or experiment key (bucketing seed for rollout rules).
            fallback_percentage: Percentage used by rollout rules without a value.

        Returns:
            True if the rule matches. A missing attribute never matches.
        """
        if rule.operator == RuleOperator.PERCENTAGE_ROLLOUT:
            if not context.has_user_id:
                return False
            percentage = rule.value if rule.value is not None else fallback_percentage
            return self.in_rollout(context.user_id, key, percentage)

        actual = context.get_attribute(rule.attribute)
        if actual is MISSING:
            return False

        if rule.operator == RuleOperator.EQUALS:
            return _scalar_equals(actual, rule.value)

        if rule.operator == RuleOperator.IN:
            return any(_scalar_equals(actual, candidate) for candidate in rule.value)

        logger.warning(f"Unsupported rule operator '{rule.operator}' on '{key}'")
        return False

    def first_match(
        self,
        rules: Sequence[TargetingRule],
        context: TargetingContext,
        key: str,
        fallback_percentage: float = 100,
    ) -> TargetingRule | None:
        """Return the first rule (in priority order) that matches, if any."""
        for rule in rules:
            if self.rule_matches(rule, context, key, fallback_percentage):
                return rule
        return None

    # =========================================================================
    # Flags
    # =========================================================================

    def evaluate_flag(self, flag: FeatureFlag, context: TargetingContext) -> FlagDecision:
        """
        Evaluate a flag for a context.

        Args:
            flag: Flag from the current snapshot.
            context: Context being evaluated.

        Returns:
            FlagDecision with the enabled state, variant and reason.
        """
        if not flag.enabled:
            return FlagDecision(False, False, None, EvaluationReason.FLAG_DISABLED)

        user_id = context.user_id
        if user_id and user_id in flag.force_exclude_users:
            return FlagDecision(True, False, None, EvaluationReason.FORCE_EXCLUDED)
        if user_id and user_id in flag.force_include_users:
            return FlagDecision(True, True, flag.default_variant, EvaluationReason.FORCE_INCLUDED)

        rule = self.first_match(flag.rules, context, flag.flag_key, flag.rollout_percentage)
        if rule is not None:
            variant = (rule.variant or flag.default_variant) if rule.serve else None
            return FlagDecision(True, rule.serve, variant, EvaluationReason.RULE_MATCH)

        if flag.rollout_percentage >= 100:
            return FlagDecision(False, True, flag.default_variant, EvaluationReason.DEFAULT)

        if not user_id:
            return FlagDecision(False, False, None, EvaluationReason.MISSING_USER_ID)

        if self.in_rollout(user_id, flag.flag_key, flag.rollout_percentage):
            return FlagDecision(False, True, flag.default_variant, EvaluationReason.ROLLOUT_MATCH)
        return FlagDecision(False, False, None, EvaluationReason.ROLLOUT_NO_MATCH)

    # =========================================================================
    # Experiments
    # =========================================================================

    def select_variation(self, experiment: Experiment, user_id: str) -> Variation | None:
        """
        Pick the variation whose weight range contains the user's bucket.

        Weights accumulate into ranges [0, w1), [w1, w1 + w2), ... scaled to
        the 0-10000 bucket domain. A bucket past the accumulated total means
        the user is not allocated to any variation.
        """
        bucket = self.hasher.bucket_for(user_id, experiment.experiment_key)

        upper = 0.0
        for variation in experiment.variations:
            upper += variation.weight
            if bucket < percentage_threshold(upper):
                return variation
        return None

    def is_eligible(
        self,
        experiment: Experiment,
        context: TargetingContext,
        now: datetime,
    ) -> AssignmentReason | None:
        """
        Check whether a context may enter an experiment.

        Returns:
            None when eligible, otherwise the reason the user is kept out.
        """
        if experiment.status != ExperimentStatus.RUNNING:
            return AssignmentReason.NOT_RUNNING

        if experiment.scheduled_start_at is not None and now < experiment.scheduled_start_at:
            return AssignmentReason.NOT_STARTED
        if experiment.scheduled_end_at is not None and now >= experiment.scheduled_end_at:
            return AssignmentReason.ENDED

        user_id = context.user_id
        if user_id in experiment.force_exclude_users:
            return AssignmentReason.FORCE_EXCLUDED

        if experiment.rules and user_id not in experiment.force_include_users:
            # Entry rollout gets its own seed so it does not correlate with
            # the variation ranges.
            entry_key = f"{experiment.experiment_key}:entry"
            rule = self.first_match(experiment.rules, context, entry_key)
            if rule is None or not rule.serve:
                return AssignmentReason.NOT_IN_TARGET
        return None

    def assign(
        self,
        experiment: Experiment,
        context: TargetingContext,
        now: datetime,
    ) -> ExperimentDecision:
        """
        Assign a user to an experiment variation.

        The caller must ensure context.user_id is set; the evaluation engine
        raises InvalidContextError before getting here.
        """
        rejection = self.is_eligible(experiment, context, now)
        if rejection is not None:
            return ExperimentDecision(None, rejection)

        variation = self.select_variation(experiment, context.user_id)
        if variation is None:
            return ExperimentDecision(None, AssignmentReason.UNALLOCATED)
        return ExperimentDecision(variation, AssignmentReason.HASH_ASSIGNMENT)
