import asyncio

import pytest
from conftest import FakeRedis, FakeStore, make_result
from fastapi.testclient import TestClient

import worker
from plate_pipeline.config import ConfigurationError, reset_settings
from plate_pipeline.shared import QueueService, RedisPublisher


class VerifiedStore(FakeStore):
    def __init__(self, settings=None):
        super().__init__()

    async def verify(self) -> None:
        pass


@pytest.fixture
def worker_env(monkeypatch):
    monkeypatch.setenv("PLATE_PIPELINE_S3_BUCKET", "plates-bucket")
    monkeypatch.setenv("PLATE_PIPELINE_S3_BASE_PATH", "plates/")
    monkeypatch.setenv("PLATE_PIPELINE_WORKER_COUNT", "2")
    monkeypatch.setenv("PLATE_PIPELINE_POLL_TIMEOUT_SECONDS", "0.05")
    monkeypatch.setenv("PLATE_PIPELINE_EMPTY_BACKOFF_SECONDS", "0.01")
    monkeypatch.setattr(worker, "S3ArtifactStore", VerifiedStore)
    reset_settings()


def _result_worker(fake_redis: FakeRedis) -> worker.ResultWorker:
    result_worker = worker.ResultWorker()
    result_worker.queue = QueueService(
        queue_name="test:output", dead_letter_queue="test:dlq", client=fake_redis
    )
    result_worker.publisher = RedisPublisher(client=fake_redis)
    return result_worker


@pytest.mark.asyncio
async def test_worker_processes_and_publishes(worker_env, tmp_path, fake_redis):
    result = make_result(tmp_path, "w.jpg")
    result_worker = _result_worker(fake_redis)
    await result_worker.queue.enqueue(result)

    await result_worker.start()
    for _ in range(300):
        if fake_redis.published:
            break
        await asyncio.sleep(0.01)
    await result_worker.stop()

    [(channel, message)] = fake_redis.published
    assert channel == "plate:predictions"
    assert '"image_aws_s3_path": "plates/w.jpg"' in message
    assert not tmp_path.joinpath("w.jpg").exists()
    assert result_worker.store.uploads == [(result.file_path, "plates/w.jpg")]


@pytest.mark.asyncio
async def test_worker_refuses_to_start_without_bucket(monkeypatch, fake_redis):
    monkeypatch.delenv("PLATE_PIPELINE_S3_BUCKET", raising=False)
    reset_settings()
    result_worker = _result_worker(fake_redis)

    with pytest.raises(ConfigurationError):
        await result_worker.start()

    assert result_worker.pool is None


def test_health_not_ready_without_worker(monkeypatch):
    monkeypatch.setattr(worker, "worker", None)

    response = TestClient(worker.app).get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"
