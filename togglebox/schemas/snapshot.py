"""
Snapshot Schemas.

A Snapshot is the immutable, point-in-time bundle of remote config, flags and
experiments for one platform/environment pair. The client never mutates a
snapshot; a refresh builds a new one and swaps it in.

Backend payload (GET .../snapshot):
    {
        "data": {
            "config": {"theme": "dark", "maxItems": 20},
            "flags": [{"flagKey": "dark-mode", "enabled": true, ...}],
            "experiments": [{"experimentKey": "pricing-page", ...}],
            "version": "42"
        }
    }

Persisted form (file or Redis):
    {"version": 1, "fetchedAt": "...", "snapshot": {...Snapshot...}}
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import ConfigDict, Field, ValidationError

from togglebox.core.exceptions import InvalidSnapshotError
from togglebox.schemas.base import WireModel
from togglebox.schemas.experiment import Experiment
from togglebox.schemas.flag import FeatureFlag

# Bump when the persisted layout changes; older entries are discarded.
CACHE_FORMAT_VERSION = 1


def _describe_errors(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


class SnapshotPayload(WireModel):
    """Body of the backend snapshot endpoint."""

    config: dict[str, Any] = Field(default_factory=dict)
    flags: list[FeatureFlag] = Field(default_factory=list)
    experiments: list[Experiment] = Field(default_factory=list)
    version: str | int | None = None


class Snapshot(WireModel):
    """
    Immutable bundle of config, flags and experiments.

    Attributes:
        platform: Platform the snapshot belongs to.
        environment: Environment the snapshot belongs to.
        config: Remote config key/value map.
        flags: Flags keyed by flag_key.
        experiments: Experiments keyed by experiment_key.
        version: Backend version or ETag; identifies the snapshot.
        fetched_at: When the snapshot was fetched (UTC).
    """

    model_config = ConfigDict(frozen=True)

    platform: str
    environment: str
    config: dict[str, Any] = Field(default_factory=dict)
    flags: dict[str, FeatureFlag] = Field(default_factory=dict)
    experiments: dict[str, Experiment] = Field(default_factory=dict)
    version: str = Field(..., min_length=1)
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        *,
        platform: str,
        environment: str,
        etag: str | None = None,
        fetched_at: datetime | None = None,
    ) -> "Snapshot":
        """
        Build a snapshot from a backend response body.

        Args:
            payload: Decoded JSON body, optionally wrapped in {"data": ...}.
            platform: Platform the payload was fetched for.
            environment: Environment the payload was fetched for.
            etag: Response ETag, used when the body carries no version.
            fetched_at: Fetch timestamp (defaults to now).

        Returns:
            The validated snapshot.

        Raises:
            InvalidSnapshotError: If the payload is malformed in any way.
                Nothing is partially applied.
        """
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]

        if not isinstance(payload, dict):
            raise InvalidSnapshotError(
                f"Snapshot payload must be an object, got {type(payload).__name__}"
            )

        try:
            parsed = SnapshotPayload.model_validate(payload)
        except ValidationError as e:
            raise InvalidSnapshotError(
                f"Snapshot payload failed validation ({e.error_count()} errors)",
                details={"errors": _describe_errors(e)},
            ) from e

        flags: dict[str, FeatureFlag] = {}
        for flag in parsed.flags:
            if flag.flag_key in flags:
                raise InvalidSnapshotError(
                    f"Duplicate flag key '{flag.flag_key}' in snapshot",
                    details={"flag_key": flag.flag_key},
                )
            flags[flag.flag_key] = flag

        experiments: dict[str, Experiment] = {}
        for experiment in parsed.experiments:
            if experiment.experiment_key in experiments:
                raise InvalidSnapshotError(
                    f"Duplicate experiment key '{experiment.experiment_key}' in snapshot",
                    details={"experiment_key": experiment.experiment_key},
                )
            experiments[experiment.experiment_key] = experiment

        version = parsed.version if parsed.version is not None else etag
        if version is None or str(version) == "":
            raise InvalidSnapshotError("Snapshot has neither a version nor an ETag")

        return cls(
            platform=platform,
            environment=environment,
            config=parsed.config,
            flags=flags,
            experiments=experiments,
            version=str(version),
            fetched_at=fetched_at or datetime.now(timezone.utc),
        )


class PersistedSnapshot(WireModel):
    """Envelope stored by the persisted cache backends."""

    version: int
    fetched_at: datetime
    snapshot: Snapshot

    @classmethod
    def wrap(cls, snapshot: Snapshot) -> "PersistedSnapshot":
        return cls(
            version=CACHE_FORMAT_VERSION,
            fetched_at=snapshot.fetched_at,
            snapshot=snapshot,
        )
