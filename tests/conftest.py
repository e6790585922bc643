import asyncio
import json
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from plate_pipeline.config import reset_settings
from plate_pipeline.shared import (
    PermanentStoreError,
    PredictionResult,
    PublishError,
    QueueService,
)
from plate_pipeline.shared.records import DeadLetter


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("PLATE_PIPELINE_UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.delenv("PLATE_PIPELINE_API_KEY", raising=False)
    monkeypatch.delenv("PLATE_PIPELINE_API_KEYS", raising=False)
    reset_settings()
    yield
    reset_settings()


class FakeRedis:
    """Just enough of the redis.asyncio list API for the queue code."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.blpop_calls = 0
        self.fail_next = 0
        self.published: list[tuple[str, str]] = []
        self.failing_lists: set[str] = set()  # rpush/lpush to these lists fail
        self.closed = False

    def _maybe_fail(self) -> None:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise RedisConnectionError("connection refused")

    async def ping(self) -> bool:
        self._maybe_fail()
        return True

    def _maybe_fail_push(self, name: str) -> None:
        self._maybe_fail()
        if name in self.failing_lists:
            raise RedisConnectionError(f"write to {name} failed")

    async def rpush(self, name: str, *values: str) -> int:
        self._maybe_fail_push(name)
        items = self.lists.setdefault(name, [])
        items.extend(values)
        return len(items)

    async def lpush(self, name: str, *values: str) -> int:
        self._maybe_fail_push(name)
        items = self.lists.setdefault(name, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def lpop(self, name: str) -> str | None:
        items = self.lists.get(name)
        return items.pop(0) if items else None

    async def llen(self, name: str) -> int:
        self._maybe_fail()
        return len(self.lists.get(name, []))

    async def lrange(self, name: str, start: int, end: int) -> list[str]:
        items = self.lists.get(name, [])
        return items[start:] if end == -1 else items[start : end + 1]

    async def blpop(self, keys: list[str], timeout: float = 0):
        self.blpop_calls += 1
        self._maybe_fail()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for key in keys:
                items = self.lists.get(key)
                if items:
                    return key, items.pop(0)
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(0.005)

    async def publish(self, channel: str, message: str) -> int:
        self._maybe_fail()
        self.published.append((channel, message))
        return 1

    async def aclose(self) -> None:
        self.closed = True


class FakeStore:
    """Artifact store double recording uploads; fails for chosen file names."""

    def __init__(self, fail_for: set[str] | None = None, error: Exception | None = None):
        self.fail_for = fail_for or set()
        self.error = error or PermanentStoreError("AccessDenied")
        self.uploads: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def upload(self, local_path: str, destination_key: str) -> str:
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if Path(local_path).name in self.fail_for:
            raise self.error
        self.uploads.append((local_path, destination_key))
        return destination_key


class FakePublisher:
    def __init__(self, fail_for: set[str] | None = None):
        self.fail_for = fail_for or set()
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, topic: str, payload) -> int:
        if payload.file_name in self.fail_for:
            raise PublishError("broker down")
        self.messages.append((topic, json.loads(payload.to_json())))
        return 1


def make_result(directory: Path, file_name: str, create: bool = True) -> PredictionResult:
    path = directory / file_name
    if create:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\xff\xd8fake-jpeg")
    return PredictionResult(
        device_id="cam-01",
        timestamp_in="2024-05-01 10:00:00",
        timestamp_out="2024-05-01 10:00:02",
        file_name=file_name,
        file_path=str(path),
        output_text="B 1234 XYZ",
        predicted_plat_color="white",
        predicted_plat_type="private",
        prediction_time_seconds=1.25,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def output_queue(fake_redis: FakeRedis) -> QueueService:
    return QueueService(
        redis_url="redis://localhost:6379/0",
        queue_name="test:output",
        record_type=PredictionResult,
        dead_letter_queue="test:dlq",
        client=fake_redis,
    )


def dead_letters(fake_redis: FakeRedis, name: str = "test:dlq") -> list[DeadLetter]:
    return [DeadLetter.from_json(raw) for raw in fake_redis.lists.get(name, [])]
