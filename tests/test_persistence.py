"""
Tests for the Persisted Snapshot Cache.

These tests verify:
    - File and Redis round trips
    - Corrupt, unversioned, foreign and expired entries are discarded
    - Backend failures are logged, never raised
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from togglebox.cache.persistence import (
    FileSnapshotPersistence,
    RedisSnapshotPersistence,
    create_persistence,
)
from togglebox.core.config import ClientSettings
from togglebox.schemas.snapshot import PersistedSnapshot

DAY = 86_400


@pytest.fixture
def snapshot_file(tmp_path):
    return tmp_path / "cache" / "snapshot.json"


@pytest.fixture
def persistence(snapshot_file):
    return FileSnapshotPersistence(snapshot_file, "web", "test", max_age_seconds=DAY)


class TestFilePersistence:
    """Tests for the JSON file backend."""

    async def test_round_trip(self, persistence, snapshot_file, make_snapshot):
        snapshot = make_snapshot("42")

        await persistence.save(snapshot)
        loaded = await persistence.load()

        assert snapshot_file.exists()
        assert loaded.version == "42"
        assert set(loaded.flags) == set(snapshot.flags)
        assert loaded.flags["dark-mode"].rollout_percentage == 50
        assert loaded.experiments["pricing-page"].variations[1].value == {"price": 9}
        assert loaded.config == snapshot.config

    async def test_document_layout(self, persistence, snapshot_file, make_snapshot):
        """Stored as {version, fetchedAt, snapshot} in camelCase."""
        await persistence.save(make_snapshot("42"))

        document = json.loads(snapshot_file.read_text())

        assert document["version"] == 1
        assert "fetchedAt" in document
        assert document["snapshot"]["version"] == "42"
        assert "flagKey" in document["snapshot"]["flags"]["dark-mode"]

    async def test_missing_file(self, persistence):
        assert await persistence.load() is None

    async def test_corrupt_file_is_discarded(self, persistence, snapshot_file):
        snapshot_file.parent.mkdir(parents=True)
        snapshot_file.write_text("{not json")

        assert await persistence.load() is None
        assert not snapshot_file.exists()

    async def test_unversioned_document_is_discarded(self, persistence, snapshot_file, make_snapshot):
        snapshot_file.parent.mkdir(parents=True)
        snapshot_file.write_text(json.dumps({"snapshot": make_snapshot().to_wire()}))

        assert await persistence.load() is None
        assert not snapshot_file.exists()

    async def test_other_layout_version_is_discarded(self, persistence, snapshot_file, make_snapshot):
        document = PersistedSnapshot.wrap(make_snapshot()).model_dump(mode="json", by_alias=True)
        document["version"] = 99
        snapshot_file.parent.mkdir(parents=True)
        snapshot_file.write_text(json.dumps(document))

        assert await persistence.load() is None

    async def test_invalid_shape_is_discarded(self, persistence, snapshot_file):
        snapshot_file.parent.mkdir(parents=True)
        snapshot_file.write_text(json.dumps({"version": 1, "fetchedAt": "2024-01-01T00:00:00Z"}))

        assert await persistence.load() is None

    async def test_other_environment_is_discarded(self, snapshot_file, make_snapshot):
        writer = FileSnapshotPersistence(snapshot_file, "web", "test", max_age_seconds=DAY)
        reader = FileSnapshotPersistence(snapshot_file, "web", "production", max_age_seconds=DAY)
        await writer.save(make_snapshot())

        assert await reader.load() is None

    async def test_expired_entry_is_discarded(self, persistence, snapshot_file, make_snapshot):
        old = make_snapshot().model_copy(
            update={"fetched_at": datetime.now(timezone.utc) - timedelta(days=2)}
        )
        await persistence.save(old)

        assert await persistence.load() is None
        assert not snapshot_file.exists()

    async def test_write_failure_is_not_raised(self, tmp_path, make_snapshot):
        """A path that cannot be written only logs a warning."""
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        persistence = FileSnapshotPersistence(blocker / "snapshot.json", "web", "test", DAY)

        await persistence.save(make_snapshot())


class TestRedisPersistence:
    """Tests for the Redis backend, with a mocked client."""

    def make(self, client) -> RedisSnapshotPersistence:
        return RedisSnapshotPersistence(None, "web", "test", max_age_seconds=DAY, client=client)

    async def test_save_uses_setex(self, make_snapshot):
        client = AsyncMock()
        persistence = self.make(client)

        await persistence.save(make_snapshot("42"))

        key, ttl, data = client.setex.await_args.args
        assert key == "togglebox:snapshot:web:test"
        assert ttl == DAY
        assert json.loads(data)["snapshot"]["version"] == "42"

    async def test_round_trip(self, make_snapshot):
        client = AsyncMock()
        persistence = self.make(client)
        await persistence.save(make_snapshot("42"))
        client.get.return_value = client.setex.await_args.args[2]

        loaded = await persistence.load()

        assert loaded.version == "42"
        client.get.assert_awaited_with("togglebox:snapshot:web:test")

    async def test_cache_miss(self):
        client = AsyncMock()
        client.get.return_value = None

        assert await self.make(client).load() is None

    async def test_corrupt_entry_is_deleted(self):
        client = AsyncMock()
        client.get.return_value = "garbage"

        assert await self.make(client).load() is None
        client.delete.assert_awaited_once_with("togglebox:snapshot:web:test")

    async def test_redis_errors_are_not_raised(self, make_snapshot):
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("down")
        client.setex.side_effect = RedisConnectionError("down")
        persistence = self.make(client)

        assert await persistence.load() is None
        await persistence.save(make_snapshot())

    async def test_close_leaves_injected_client_open(self):
        client = AsyncMock()

        await self.make(client).close()

        client.aclose.assert_not_awaited()


class TestCreatePersistence:
    """Tests for choosing the backend from settings."""

    def test_redis_takes_precedence(self, tmp_path):
        settings = ClientSettings(
            cache={"redis_url": "redis://localhost:6379/0", "persist_path": str(tmp_path / "s.json")}
        )

        assert isinstance(create_persistence(settings), RedisSnapshotPersistence)

    def test_file_backend(self, tmp_path):
        settings = ClientSettings(cache={"persist_path": str(tmp_path / "s.json")})

        persistence = create_persistence(settings)

        assert isinstance(persistence, FileSnapshotPersistence)
        assert persistence.max_age_seconds == DAY

    def test_nothing_configured(self):
        assert create_persistence(ClientSettings()) is None

    def test_disabled(self, tmp_path):
        settings = ClientSettings(cache={"enabled": False, "persist_path": str(tmp_path / "s.json")})

        assert create_persistence(settings) is None
