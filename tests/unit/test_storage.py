"""Unit tests for the storage package.

Covers:
- :func:`~capbot.storage.state.parse_state` validation and version checks.
- :class:`~capbot.storage.file_store.FileStateStore`: permissions, atomic
  replace, corruption quarantine.
- Cache keys, dynamic TTL and the expiry helper.
- :class:`~capbot.storage.cache.MirroredStateStore` over both cache adapters,
  including service failures (HTTP via :class:`httpx.MockTransport`).
"""

from __future__ import annotations

import asyncio
import json
import stat
import time
from datetime import date
from pathlib import Path

import httpx
import pytest

from capbot.core.config import CacheConfig
from capbot.core.exceptions import CacheServiceError, StateCorruptError, StorageError
from capbot.core.settings import Settings
from capbot.storage.cache import (
    CacheEntry,
    DirectoryCacheService,
    HttpCacheService,
    MirroredStateStore,
    build_state_store,
    generate_cache_key,
    get_dynamic_ttl_hours,
    is_expired,
    restore_keys,
)
from capbot.storage.file_store import FileStateStore
from capbot.storage.state import (
    MAX_ROTATION_LOG,
    LimitRecord,
    RotationLogEntry,
    State,
    StateRecord,
    dump_state,
    parse_state,
)

#: 2026-01-01T00:00:00Z
_NOW = 1_767_225_600.0


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class TestParseState:
    def test_roundtrip(self) -> None:
        state = State.empty()
        state.records["r"] = StateRecord(request_id="r", resource_id="ocid1.instance.x")
        assert parse_state(dump_state(state), "t").records["r"].resource_id == "ocid1.instance.x"

    def test_missing_optional_keys_get_defaults(self) -> None:
        state = parse_state(json.dumps({"updated": 1, "records": {}, "failures": {}}), "t")
        assert state.limits == {}
        assert state.rotations == []

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            "[]",
            json.dumps({"version": "v0", "updated": 1, "records": {}, "failures": {}}),
            json.dumps({"records": {}, "failures": {}}),
            json.dumps({"updated": 1, "records": {"r": {"verified": "maybe"}}, "failures": {}}),
        ],
    )
    def test_invalid_documents(self, raw: str) -> None:
        with pytest.raises(StateCorruptError):
            parse_state(raw, "t")

    def test_rotation_log_is_bounded(self) -> None:
        state = State.empty()
        for i in range(MAX_ROTATION_LOG + 5):
            state.log_rotation(RotationLogEntry(shape_class=f"s{i}"))
        assert len(state.rotations) == MAX_ROTATION_LOG
        assert state.rotations[-1].shape_class == f"s{MAX_ROTATION_LOG + 4}"


# ---------------------------------------------------------------------------
# File store
# ---------------------------------------------------------------------------


class TestFileStateStore:
    def test_missing_file_is_empty(self, state_store: FileStateStore) -> None:
        assert state_store.load().records == {}
        assert not state_store.exists()

    def test_save_creates_owner_only_file(self, state_store: FileStateStore) -> None:
        state_store.save(State.empty())
        assert state_store.file_mode() == 0o600
        assert stat.S_IMODE(state_store.path.parent.stat().st_mode) == 0o700

    def test_update_persists_and_returns(self, state_store: FileStateStore) -> None:
        def _mutate(state: State) -> str:
            state.limits["shape"] = LimitRecord(reached=True)
            return "done"

        assert state_store.update(_mutate) == "done"
        assert state_store.load().limits["shape"].reached

    def test_no_temp_files_left(self, state_store: FileStateStore) -> None:
        state_store.save(State.empty())
        state_store.save(State.empty())
        assert [p.name for p in state_store.path.parent.iterdir()] == [state_store.path.name]

    def test_corrupt_file_is_quarantined(self, state_store: FileStateStore) -> None:
        state_store.save(State.empty())
        state_store.path.write_text("{broken", encoding="utf-8")

        assert state_store.load().records == {}
        assert not state_store.exists()
        quarantined = list(state_store.path.parent.glob("*.corrupt-*"))
        assert len(quarantined) == 1
        assert quarantined[0].read_text(encoding="utf-8") == "{broken"

    def test_version_mismatch_reinitialises(self, state_store: FileStateStore) -> None:
        state_store.save(State.empty())
        data = json.loads(state_store.path.read_text(encoding="utf-8"))
        data["version"] = "v0"
        state_store.path.write_text(json.dumps(data), encoding="utf-8")
        assert state_store.load().version == "v1"

    def test_unwritable_location_raises_storage_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        store = FileStateStore(blocker / "state.json")
        with pytest.raises(StorageError):
            store.save(State.empty())

    def test_delete(self, state_store: FileStateStore) -> None:
        assert not state_store.delete()
        state_store.save(State.empty())
        assert state_store.delete()
        assert not state_store.exists()


# ---------------------------------------------------------------------------
# Keys and TTL
# ---------------------------------------------------------------------------


class TestCacheKeys:
    def test_deterministic(self) -> None:
        config = CacheConfig(namespace="ap-singapore-1")
        day = date(2026, 1, 1)
        assert generate_cache_key(config, day) == generate_cache_key(config, day)

    def test_format(self) -> None:
        key = generate_cache_key(CacheConfig(namespace="ns", version="v1"), date(2026, 1, 1))
        prefix, rest = key.split("-", 1)
        assert prefix == "oci"
        assert rest.startswith("instances-")
        assert key.endswith("-v1-2026-01-01")

    def test_namespace_and_version_change_the_key(self) -> None:
        day = date(2026, 1, 1)
        base = generate_cache_key(CacheConfig(namespace="a"), day)
        assert base != generate_cache_key(CacheConfig(namespace="b"), day)
        assert base != generate_cache_key(CacheConfig(namespace="a", version="v2"), day)

    def test_restore_keys_today_then_yesterday(self) -> None:
        config = CacheConfig(namespace="ns")
        keys = restore_keys(config, date(2026, 1, 2))
        assert keys[0].endswith("2026-01-02")
        assert keys[1].endswith("2026-01-01")


class TestTtl:
    def test_baseline(self) -> None:
        assert get_dynamic_ttl_hours(CacheConfig(namespace="quiet-1", base_ttl_hours=24)) == 24

    def test_high_contention_is_reduced(self) -> None:
        config = CacheConfig(
            namespace="AP-Singapore-1",
            base_ttl_hours=24,
            high_contention_namespaces=frozenset({"ap-singapore-1"}),
            high_contention_multiplier=0.5,
        )
        assert get_dynamic_ttl_hours(config) == 12

    def test_floor_of_one_hour(self) -> None:
        config = CacheConfig(
            namespace="busy",
            base_ttl_hours=1,
            high_contention_namespaces=frozenset({"busy"}),
            high_contention_multiplier=0.1,
        )
        assert get_dynamic_ttl_hours(config) == 1

    def test_is_expired(self) -> None:
        assert not is_expired(_NOW - 3600, 2, now=_NOW)
        assert is_expired(_NOW - 3 * 3600, 2, now=_NOW)


# ---------------------------------------------------------------------------
# Mirrored store
# ---------------------------------------------------------------------------


def _mirror_config(**overrides: object) -> CacheConfig:
    values: dict[str, object] = {"namespace": "ns", "mirror_enabled": True, "base_ttl_hours": 24}
    values.update(overrides)
    return CacheConfig(**values)


def _mirrored(tmp_path: Path, name: str = "run") -> MirroredStateStore:
    return MirroredStateStore(
        FileStateStore(tmp_path / name / "state.json"),
        DirectoryCacheService(tmp_path / "cache"),
        _mirror_config(),
        clock=lambda: _NOW,
    )


class _CountingCache(DirectoryCacheService):
    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.gets: list[str] = []

    async def get(self, key: str) -> bytes | None:
        self.gets.append(key)
        return await super().get(key)


class TestMirroredStateStore:
    @pytest.mark.asyncio
    async def test_state_survives_a_fresh_runner(self, tmp_path: Path) -> None:
        first = _mirrored(tmp_path, "runner-1")
        first.update(lambda s: s.records.setdefault("r", StateRecord(request_id="r")))
        await first.flush()

        second = _mirrored(tmp_path, "runner-2")
        assert second.load().records == {}
        await second.restore()
        assert "r" in second.load().records
        # The restored document seeds the local file.
        assert second.primary.exists()

    @pytest.mark.asyncio
    async def test_save_defers_cache_write_until_flush(self, tmp_path: Path) -> None:
        store = _mirrored(tmp_path)
        store.save(State.empty())
        assert not (tmp_path / "cache").exists()
        await store.flush()
        assert len(list((tmp_path / "cache").glob("*.json"))) == 1

    @pytest.mark.asyncio
    async def test_restore_runs_once_even_on_a_miss(self, tmp_path: Path) -> None:
        cache = _CountingCache(tmp_path / "cache")
        store = MirroredStateStore(
            FileStateStore(tmp_path / "state.json"), cache, _mirror_config(), clock=lambda: _NOW
        )
        await store.restore()
        await store.restore()
        for _ in range(5):
            assert store.load().records == {}
        # Today's and yesterday's key, once each; load() never reaches the cache.
        assert len(cache.gets) == 2

    @pytest.mark.asyncio
    async def test_expired_entry_ignored(self, tmp_path: Path) -> None:
        cache = DirectoryCacheService(tmp_path / "cache")
        config = _mirror_config()
        key = generate_cache_key(config, date(2026, 1, 1))
        entry = CacheEntry(
            key=key,
            written_at=int(_NOW - 30 * 3600),
            ttl_hours=24,
            payload=State.empty().model_dump(mode="json"),
        )
        await cache.put(key, entry.model_dump_json().encode(), 24)

        store = MirroredStateStore(
            FileStateStore(tmp_path / "state.json"), cache, config, clock=lambda: _NOW
        )
        await store.restore()
        assert store.load().records == {}
        assert not store.primary.exists()

    @pytest.mark.asyncio
    async def test_corrupt_entry_ignored(self, tmp_path: Path) -> None:
        cache = DirectoryCacheService(tmp_path / "cache")
        config = _mirror_config()
        await cache.put(generate_cache_key(config, date(2026, 1, 1)), b"garbage", 24)
        store = MirroredStateStore(
            FileStateStore(tmp_path / "state.json"), cache, config, clock=lambda: _NOW
        )
        await store.restore()
        assert store.load().records == {}

    @pytest.mark.asyncio
    async def test_local_file_wins(self, tmp_path: Path) -> None:
        cache = _CountingCache(tmp_path / "cache")
        store = MirroredStateStore(
            FileStateStore(tmp_path / "state.json"), cache, _mirror_config(), clock=lambda: _NOW
        )
        local = State.empty()
        local.records["local"] = StateRecord(request_id="local")
        store.primary.save(local)
        await store.restore()
        assert list(store.load().records) == ["local"]
        assert cache.gets == []

    @pytest.mark.asyncio
    async def test_mirror_disabled_is_file_only(self, tmp_path: Path) -> None:
        store = MirroredStateStore(
            FileStateStore(tmp_path / "state.json"),
            DirectoryCacheService(tmp_path / "cache"),
            _mirror_config(mirror_enabled=False),
        )
        await store.restore()
        store.save(State.empty())
        await store.flush()
        assert not (tmp_path / "cache").exists()


def _slow_service(delay_s: float, status: int = 404) -> HttpCacheService:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(delay_s)
        return httpx.Response(status)

    return HttpCacheService(
        "https://cache.test", max_attempts=1, timeout=30.0, transport=httpx.MockTransport(handler)
    )


class TestHttpCacheService:
    @pytest.mark.asyncio
    async def test_get_put_roundtrip(self) -> None:
        stored: dict[str, bytes] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            key = request.url.path.rsplit("/", 1)[-1]
            if request.method == "PUT":
                assert request.headers["X-Cache-TTL-Hours"] == "12"
                assert request.headers["Authorization"] == "Bearer t0k"
                stored[key] = request.content
                return httpx.Response(204)
            if key in stored:
                return httpx.Response(200, content=stored[key])
            return httpx.Response(404)

        service = HttpCacheService(
            "https://cache.test/v1", "t0k", transport=httpx.MockTransport(handler)
        )
        try:
            assert await service.get("k") is None
            await service.put("k", b"{}", 12)
            assert await service.get("k") == b"{}"
        finally:
            await service.close()

    @pytest.mark.asyncio
    async def test_server_error_is_retried_then_raised(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.method)
            return httpx.Response(503)

        service = HttpCacheService(
            "https://cache.test", max_attempts=2, transport=httpx.MockTransport(handler)
        )
        with pytest.raises(CacheServiceError):
            await service.get("k")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.method)
            return httpx.Response(403)

        service = HttpCacheService("https://cache.test", transport=httpx.MockTransport(handler))
        with pytest.raises(CacheServiceError, match="403"):
            await service.put("k", b"{}", 1)
        assert calls == ["PUT"]

    @pytest.mark.asyncio
    async def test_unreachable_service_degrades_to_empty_state(self, tmp_path: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = HttpCacheService(
            "https://cache.test", max_attempts=1, transport=httpx.MockTransport(handler)
        )
        store = MirroredStateStore(
            FileStateStore(tmp_path / "state.json"), service, _mirror_config(), clock=lambda: _NOW
        )
        await store.restore()
        assert store.load().records == {}
        store.save(State.empty())
        await store.flush()  # logged, not raised
        assert store.primary.exists()
        await store.close()

    @pytest.mark.asyncio
    async def test_slow_service_is_cut_off_by_the_budget(self, tmp_path: Path) -> None:
        store = MirroredStateStore(
            FileStateStore(tmp_path / "state.json"),
            _slow_service(2.0),
            _mirror_config(io_budget_s=0.2),
            clock=lambda: _NOW,
        )
        started = time.monotonic()
        await store.restore()
        store.save(State.empty())
        await store.flush()
        assert time.monotonic() - started < 1.0
        assert store.primary.exists()
        await store.close()

    def test_empty_base_url_rejected(self) -> None:
        with pytest.raises(ValueError):
            HttpCacheService("")


class TestBuildStateStore:
    def test_plain_file_store_outside_ci(self, clean_env: None, tmp_path: Path) -> None:
        store = build_state_store(Settings(state_dir=str(tmp_path)))
        assert isinstance(store, FileStateStore)

    @pytest.mark.asyncio
    async def test_mirrored_on_ci(self, clean_env: None, tmp_path: Path) -> None:
        settings = Settings(
            state_dir=str(tmp_path / "state"),
            cache_dir=str(tmp_path / "cache"),
            github_actions=True,
            cache_budget_s=1.5,
        )
        store = build_state_store(settings)
        assert isinstance(store, MirroredStateStore)
        assert settings.to_cache_config().io_budget_s == 1.5
        await store.close()
