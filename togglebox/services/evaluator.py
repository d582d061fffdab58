"""
Evaluation Engine.

This module is the public evaluation surface of the client. Every call reads
the current snapshot from the CacheStore and delegates the decision to the
TargetingEvaluator; nothing here touches the network.

Fail-Closed Behaviour:
    Until a snapshot has been fetched (or loaded from the persisted cache):
        - flags evaluate to the default value (False)
        - experiments return None
        - config is {}

Impressions:
    A resolved experiment assignment records one impression per
    (user_id, experiment_key) within the configured dedup scope:
        - snapshot: the seen-set resets when a new snapshot version is served
        - process:  once for the lifetime of the engine
        - none:     every resolved assignment is recorded
    The seen-set is bounded by dedup_max_size; past it the least recently
    seen pairs are forgotten and may record a repeat impression.
"""

import copy
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from togglebox.cache.store import CacheStore
from togglebox.core.config import ImpressionDedup
from togglebox.core.exceptions import InvalidContextError
from togglebox.schemas.context import TargetingContext
from togglebox.services.stats import StatsCollector
from togglebox.services.targeting import AssignmentReason, EvaluationReason, TargetingEvaluator

logger = logging.getLogger(__name__)

ContextLike = TargetingContext | Mapping[str, Any] | None


class EvaluationResult:
    """
    Result of a flag evaluation.

    Attributes:
        flag_key: The key of the evaluated flag.
        value: The boolean result (True=ON, False=OFF).
        variant: Variant served when the flag is on.
        reason: Why this result was returned.
    """

    def __init__(
        self,
        flag_key: str,
        value: bool,
        reason: EvaluationReason,
        variant: str | None = None,
    ) -> None:
        self.flag_key = flag_key
        self.value = value
        self.reason = reason
        self.variant = variant

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "flag_key": self.flag_key,
            "value": self.value,
            "variant": self.variant,
            "reason": self.reason.value,
        }


class VariantAssignment:
    """
    Result of an experiment assignment.

    Attributes:
        experiment_key: The experiment evaluated.
        variation_key: Assigned variation, or None when unassigned.
        value: Payload of the assigned variation.
        is_control: True when the assigned variation is the control arm.
        reason: Why this result was returned.
    """

    def __init__(
        self,
        experiment_key: str,
        variation_key: str | None,
        reason: AssignmentReason,
        value: Any = None,
        is_control: bool = False,
    ) -> None:
        self.experiment_key = experiment_key
        self.variation_key = variation_key
        self.reason = reason
        self.value = value
        self.is_control = is_control

    @property
    def assigned(self) -> bool:
        return self.variation_key is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API response."""
        return {
            "experiment_key": self.experiment_key,
            "variation_key": self.variation_key,
            "value": self.value,
            "is_control": self.is_control,
            "reason": self.reason.value,
        }


class EvaluationEngine:
    """
    Flag, experiment and config lookups against the current snapshot.

    Usage:
        engine = EvaluationEngine(store, stats=collector)

        if engine.is_flag_enabled("dark-mode", {"user_id": "user-123"}):
            show_dark_mode()

        variant = engine.get_variant("pricing-page", {"user_id": "user-123"})
    """

    def __init__(
        self,
        store: CacheStore,
        targeting: TargetingEvaluator | None = None,
        stats: StatsCollector | None = None,
        impression_dedup: ImpressionDedup = ImpressionDedup.SNAPSHOT,
        dedup_max_size: int = 100_000,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        """
        Initialize the engine.

        Args:
            store: Cache holding the current snapshot.
            targeting: Decision logic (a default evaluator when omitted).
            stats: Collector receiving impressions (None disables them).
            impression_dedup: Impression de-duplication scope.
            dedup_max_size: Most (user, experiment) pairs remembered for
                de-duplication; the least recently seen are forgotten first.
            now: Wall clock used for experiment schedules.
        """
        self.store = store
        self.targeting = targeting or TargetingEvaluator()
        self.stats = stats
        self.impression_dedup = ImpressionDedup(impression_dedup)
        self.dedup_max_size = dedup_max_size
        self._now = now

        self.global_context: TargetingContext | None = None

        self._seen_lock = threading.Lock()
        self._seen: OrderedDict[tuple[str, str], None] = OrderedDict()
        self._seen_version: str | None = None

    def resolve_context(self, context: ContextLike) -> TargetingContext:
        """Merge a per-call context over the global context."""
        call_context = TargetingContext.coerce(context)
        base = self.global_context or TargetingContext()
        return base.merged(call_context)

    # =========================================================================
    # Flags
    # =========================================================================

    def evaluate_flag(
        self,
        flag_key: str,
        context: ContextLike = None,
        default_value: bool = False,
    ) -> EvaluationResult:
        """
        Evaluate a single feature flag.

        Args:
            flag_key: The flag's key.
            context: Context (or mapping) for this call.
            default_value: Value returned when there is no snapshot or no
                such flag.

        Returns:
            EvaluationResult with value, variant and reason.
        """
        entry = self.store.get()
        if entry is None:
            return EvaluationResult(flag_key, default_value, EvaluationReason.NO_SNAPSHOT)

        flag = entry.snapshot.flags.get(flag_key)
        if flag is None:
            logger.debug(f"Flag '{flag_key}' not found in snapshot {entry.version}")
            return EvaluationResult(flag_key, default_value, EvaluationReason.FLAG_NOT_FOUND)

        decision = self.targeting.evaluate_flag(flag, self.resolve_context(context))
        return EvaluationResult(
            flag_key=flag_key,
            value=decision.enabled,
            reason=decision.reason,
            variant=decision.variant,
        )

    def is_flag_enabled(self, flag_key: str, context: ContextLike = None) -> bool:
        """Return True if the flag is on for the context. Missing flags are off."""
        return self.evaluate_flag(flag_key, context).value

    def get_all_flags(self, context: ContextLike = None) -> dict[str, bool]:
        """
        Evaluate every flag in the snapshot.

        Returns:
            Dictionary mapping flag_key to boolean value ({} without a snapshot).
        """
        entry = self.store.get()
        if entry is None:
            return {}

        resolved = self.resolve_context(context)
        return {
            key: self.targeting.evaluate_flag(flag, resolved).enabled
            for key, flag in entry.snapshot.flags.items()
        }

    # =========================================================================
    # Experiments
    # =========================================================================

    def evaluate_experiment(
        self,
        experiment_key: str,
        context: ContextLike = None,
    ) -> VariantAssignment:
        """
        Assign the context's user to an experiment, with the reason.

        A resolved assignment records an impression (subject to dedup).

        Raises:
            InvalidContextError: If the context has no user_id.
        """
        resolved = self.resolve_context(context)
        if not resolved.has_user_id:
            raise InvalidContextError(
                "Experiment assignment requires a non-empty user_id",
                details={"experiment_key": experiment_key},
            )

        entry = self.store.get()
        if entry is None:
            return VariantAssignment(experiment_key, None, AssignmentReason.NO_SNAPSHOT)

        experiment = entry.snapshot.experiments.get(experiment_key)
        if experiment is None:
            logger.debug(f"Experiment '{experiment_key}' not found in snapshot {entry.version}")
            return VariantAssignment(experiment_key, None, AssignmentReason.EXPERIMENT_NOT_FOUND)

        decision = self.targeting.assign(experiment, resolved, self._now())
        if not decision.assigned:
            return VariantAssignment(experiment_key, None, decision.reason)

        variation = decision.variation
        self._record_impression(experiment_key, variation.variation_key, resolved, entry.version)
        return VariantAssignment(
            experiment_key=experiment_key,
            variation_key=variation.variation_key,
            reason=decision.reason,
            value=variation.value,
            is_control=variation.is_control,
        )

    def get_assignment(
        self,
        experiment_key: str,
        context: ContextLike = None,
    ) -> VariantAssignment | None:
        """Return the full assignment, or None when the user is not assigned."""
        assignment = self.evaluate_experiment(experiment_key, context)
        return assignment if assignment.assigned else None

    def get_variant(self, experiment_key: str, context: ContextLike = None) -> str | None:
        """
        Return the assigned variation key.

        Returns:
            The variation key, or None when the experiment is missing, not
            running, or the user falls outside every variation.

        Raises:
            InvalidContextError: If the context has no user_id.
        """
        return self.evaluate_experiment(experiment_key, context).variation_key

    def _record_impression(
        self,
        experiment_key: str,
        variation_key: str,
        context: TargetingContext,
        version: str,
    ) -> None:
        if self.stats is None:
            return
        if not self._first_impression(context.user_id, experiment_key, version):
            return
        self.stats.track_impression(experiment_key, variation_key, context)

    def _first_impression(self, user_id: str, experiment_key: str, version: str) -> bool:
        if self.impression_dedup == ImpressionDedup.NONE:
            return True

        with self._seen_lock:
            if self.impression_dedup == ImpressionDedup.SNAPSHOT and version != self._seen_version:
                self._seen.clear()
                self._seen_version = version

            key = (user_id, experiment_key)
            if key in self._seen:
                self._seen.move_to_end(key)
                return False
            self._seen[key] = None
            while len(self._seen) > self.dedup_max_size:
                self._seen.popitem(last=False)
            return True

    # =========================================================================
    # Remote Config
    # =========================================================================

    def get_config(self) -> dict[str, Any]:
        """Return a deep copy of the remote config ({} without a snapshot)."""
        entry = self.store.get()
        if entry is None:
            return {}
        return copy.deepcopy(entry.snapshot.config)

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """Return one config value, or default when absent."""
        entry = self.store.get()
        if entry is None or key not in entry.snapshot.config:
            return default
        return copy.deepcopy(entry.snapshot.config[key])

    # =========================================================================
    # Snapshot State
    # =========================================================================

    def is_stale(self) -> bool:
        return self.store.is_stale()

    @property
    def snapshot_version(self) -> str | None:
        return self.store.version
