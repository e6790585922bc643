import asyncio
import time
from pathlib import Path

import pytest
from conftest import FakePublisher, FakeRedis, FakeStore, dead_letters, make_result

from plate_pipeline import ItemOutcome, PoolConfig, WorkerPool
from plate_pipeline.config import Settings
from plate_pipeline.shared import QueueService, TransientStoreError
from plate_pipeline.worker_pool import DrainTimeoutError

BASE_PATH = "plates/2024/"


def _config(**overrides) -> PoolConfig:
    values = dict(
        worker_count=3,
        poll_timeout=0.05,
        empty_backoff=0.01,
        error_backoff=0.01,
        max_error_backoff=0.05,
        drain_timeout=2.0,
        base_path=BASE_PATH,
        topic="test:predictions",
    )
    values.update(overrides)
    return PoolConfig(**values)


async def _prime(queue: QueueService, results) -> None:
    for result in results:
        await queue.enqueue(result)


async def _wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_three_workers_drain_five_items(
    tmp_path: Path, fake_redis: FakeRedis, output_queue: QueueService
):
    results = [make_result(tmp_path, f"car-{i}.jpg") for i in range(5)]
    await _prime(output_queue, results)
    store, publisher = FakeStore(), FakePublisher()

    pool = WorkerPool(_config(), output_queue, store, publisher, dead_letters=output_queue)
    await pool.start()
    await _wait_until(lambda: len(publisher.messages) == 5)
    await pool.stop()

    assert all(not Path(r.file_path).exists() for r in results)
    published = {msg["file_name"]: msg for _, msg in publisher.messages}
    assert set(published) == {r.file_name for r in results}
    for name, msg in published.items():
        assert msg["image_aws_s3_path"] == BASE_PATH + name
    assert all(topic == "test:predictions" for topic, _ in publisher.messages)
    # Each item reached exactly one worker
    assert sorted(key for _, key in store.uploads) == sorted(BASE_PATH + r.file_name for r in results)
    assert sum(w.outcomes.get("completed", 0) for w in pool.workers) == 5
    assert fake_redis.lists.get("test:dlq", []) == []


@pytest.mark.asyncio
async def test_upload_failure_keeps_file_and_skips_publish(
    tmp_path: Path, fake_redis: FakeRedis, output_queue: QueueService
):
    names = ["a.jpg", "bad.jpg", "c.jpg", "d.jpg"]
    results = [make_result(tmp_path, name) for name in names]
    await _prime(output_queue, results)
    store, publisher = FakeStore(fail_for={"bad.jpg"}), FakePublisher()

    pool = WorkerPool(_config(), output_queue, store, publisher, dead_letters=output_queue)
    await pool.start()
    await _wait_until(lambda: len(publisher.messages) == 3 and len(fake_redis.lists.get("test:dlq", [])) == 1)
    await pool.stop()

    assert (tmp_path / "bad.jpg").exists()
    assert "bad.jpg" not in {msg["file_name"] for _, msg in publisher.messages}
    for name in ["a.jpg", "c.jpg", "d.jpg"]:
        assert not (tmp_path / name).exists()

    [entry] = dead_letters(fake_redis)
    assert entry.outcome == ItemOutcome.FAILED_UPLOAD
    assert entry.prediction.file_name == "bad.jpg"


@pytest.mark.asyncio
async def test_publish_failure_keeps_file(tmp_path: Path, output_queue: QueueService):
    result = make_result(tmp_path, "late.jpg")
    store, publisher = FakeStore(), FakePublisher(fail_for={"late.jpg"})
    pool = WorkerPool(_config(), output_queue, store, publisher, dead_letters=output_queue)

    outcome = await pool.process_item(result, worker=0)

    assert outcome is ItemOutcome.FAILED_PUBLISH
    assert Path(result.file_path).exists()
    assert store.uploads == [(result.file_path, BASE_PATH + "late.jpg")]
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_transient_upload_error_is_not_retried(tmp_path: Path, output_queue: QueueService):
    result = make_result(tmp_path, "slow.jpg")
    store = FakeStore(fail_for={"slow.jpg"}, error=TransientStoreError("SlowDown"))
    publisher = FakePublisher()
    pool = WorkerPool(_config(), output_queue, store, publisher)

    outcome = await pool.process_item(result)

    assert outcome is ItemOutcome.FAILED_UPLOAD
    assert Path(result.file_path).exists()
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_undo_notification(tmp_path: Path, output_queue: QueueService):
    # The file is already gone, so the delete step fails
    result = make_result(tmp_path, "gone.jpg", create=False)
    store, publisher = FakeStore(), FakePublisher()
    pool = WorkerPool(_config(), output_queue, store, publisher)

    outcome = await pool.process_item(result)

    assert outcome is ItemOutcome.CLEANUP_FAILED
    assert [msg["file_name"] for _, msg in publisher.messages] == ["gone.jpg"]


@pytest.mark.asyncio
async def test_unexpected_error_is_contained(
    tmp_path: Path, fake_redis: FakeRedis, output_queue: QueueService
):
    class BrokenStore(FakeStore):
        async def upload(self, local_path, destination_key):
            raise RuntimeError("bug")

    result = make_result(tmp_path, "x.jpg")
    pool = WorkerPool(_config(), output_queue, BrokenStore(), FakePublisher(), dead_letters=output_queue)

    outcome = await pool.process_item(result, worker=1)

    assert outcome is ItemOutcome.FAILED
    assert Path(result.file_path).exists()
    assert dead_letters(fake_redis)[0].outcome == "failed"


@pytest.mark.asyncio
async def test_empty_queue_polls_at_bounded_rate(fake_redis: FakeRedis, output_queue: QueueService):
    pool = WorkerPool(
        _config(worker_count=1, poll_timeout=0.02, empty_backoff=0.05),
        output_queue,
        FakeStore(),
        FakePublisher(),
    )
    await pool.start()
    await asyncio.sleep(0.5)
    await pool.stop()

    # Each cycle costs at least poll_timeout + empty_backoff (0.07s)
    assert 2 <= fake_redis.blpop_calls <= 10


@pytest.mark.asyncio
async def test_stop_preempts_blocking_dequeue(output_queue: QueueService):
    pool = WorkerPool(
        _config(worker_count=2, poll_timeout=30.0),
        output_queue,
        FakeStore(),
        FakePublisher(),
    )
    await pool.start()
    await asyncio.sleep(0.05)

    started = time.monotonic()
    await pool.stop()

    assert time.monotonic() - started < 1.0
    assert not pool.running


@pytest.mark.asyncio
async def test_stop_finishes_in_flight_item_and_takes_no_new_one(
    tmp_path: Path, fake_redis: FakeRedis, output_queue: QueueService
):
    first, second = make_result(tmp_path, "first.jpg"), make_result(tmp_path, "second.jpg")
    await _prime(output_queue, [first, second])
    store, publisher = FakeStore(), FakePublisher()
    store.gate = asyncio.Event()

    pool = WorkerPool(_config(worker_count=1), output_queue, store, publisher)
    await pool.start()
    await asyncio.wait_for(store.started.wait(), timeout=2.0)

    stopping = asyncio.create_task(pool.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()

    store.gate.set()
    await stopping

    assert [msg["file_name"] for _, msg in publisher.messages] == ["first.jpg"]
    assert not Path(first.file_path).exists()
    assert Path(second.file_path).exists()
    assert len(fake_redis.lists["test:output"]) == 1


@pytest.mark.asyncio
async def test_drain_timeout_reports_stuck_workers(tmp_path: Path, output_queue: QueueService):
    result = make_result(tmp_path, "stuck.jpg")
    await _prime(output_queue, [result])
    store = FakeStore()
    store.gate = asyncio.Event()  # never released

    pool = WorkerPool(_config(worker_count=1), output_queue, store, FakePublisher())
    await pool.start()
    await asyncio.wait_for(store.started.wait(), timeout=2.0)

    with pytest.raises(DrainTimeoutError) as excinfo:
        await pool.stop(drain_timeout=0.1)

    assert [s.current.file_name for s in excinfo.value.stuck] == ["stuck.jpg"]
    assert "stuck.jpg" in str(excinfo.value)

    await pool.abort()
    assert Path(result.file_path).exists()


@pytest.mark.asyncio
async def test_queue_outage_is_retried(
    tmp_path: Path, fake_redis: FakeRedis, output_queue: QueueService
):
    result = make_result(tmp_path, "after-outage.jpg")
    await _prime(output_queue, [result])
    fake_redis.fail_next = 2
    publisher = FakePublisher()

    pool = WorkerPool(_config(worker_count=1), output_queue, FakeStore(), publisher)
    await pool.start()
    await _wait_until(lambda: len(publisher.messages) == 1)
    await pool.stop()

    assert fake_redis.blpop_calls >= 3
    assert not Path(result.file_path).exists()


@pytest.mark.asyncio
async def test_malformed_record_is_dead_lettered(
    tmp_path: Path, fake_redis: FakeRedis, output_queue: QueueService
):
    fake_redis.lists["test:output"] = ['{"device_id": "cam-01"}']
    good = make_result(tmp_path, "good.jpg")
    await output_queue.enqueue(good)
    publisher = FakePublisher()

    pool = WorkerPool(
        _config(worker_count=1), output_queue, FakeStore(), publisher, dead_letters=output_queue
    )
    await pool.start()
    await _wait_until(lambda: len(publisher.messages) == 1)
    await pool.stop()

    [entry] = dead_letters(fake_redis)
    assert entry.outcome == ItemOutcome.MALFORMED
    assert entry.raw == '{"device_id": "cam-01"}'
    assert entry.prediction is None


@pytest.mark.asyncio
async def test_start_twice_is_rejected(output_queue: QueueService):
    pool = WorkerPool(_config(worker_count=1), output_queue, FakeStore(), FakePublisher())
    await pool.start()
    try:
        with pytest.raises(RuntimeError):
            await pool.start()
    finally:
        await pool.stop()


def test_pool_config_from_settings():
    settings = Settings(
        worker_count=7,
        poll_timeout_seconds=2.0,
        s3_base_path="images/",
        notification_topic="topic-x",
    )

    config = PoolConfig.from_settings(settings)

    assert config.worker_count == 7
    assert config.poll_timeout == 2.0
    assert config.base_path == "images/"
    assert config.topic == "topic-x"


@pytest.mark.parametrize(
    "overrides",
    [
        {"worker_count": 0},
        {"poll_timeout": 0},
        {"empty_backoff": -1},
        {"error_backoff": 5, "max_error_backoff": 1},
        {"drain_timeout": 0},
    ],
)
def test_pool_config_rejects_invalid_values(overrides):
    with pytest.raises(ValueError):
        _config(**overrides)
