"""Operator reconciliation of dead letters and orphaned local files.

Retention policy: a local file referenced by a record on the intake queue,
the output queue or the dead letter list is kept. Any other file older than
the retention window is an orphan (left by a crash between dequeue and
cleanup) and may be swept.

A file whose record a worker has already popped is referenced by no list.
It is only at risk when it has been on disk longer than the retention window
before the pop, which the window is sized to rule out.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path

from plate_pipeline.observability import get_logger
from plate_pipeline.shared.queue import QueueService, QueueUnavailable
from plate_pipeline.shared.records import DeadLetter, PredictionResult, RawImageJob

logger = get_logger("reconcile")


@dataclass
class ReplayReport:
    replayed: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


async def list_dead_letters(queue: QueueService, limit: int | None = None) -> list[DeadLetter]:
    """Decode dead letters from the head of the list without removing them."""
    count = limit if limit is not None else await queue.get_dlq_depth()
    if count <= 0:
        return []
    entries = []
    for raw in await queue.peek(count, queue.dead_letter_queue):
        try:
            entries.append(DeadLetter.from_json(raw))
        except ValueError as e:
            entries.append(DeadLetter.for_payload(raw, "unreadable", str(e)))
    return entries


async def replay_dead_letters(queue: QueueService, limit: int | None = None) -> ReplayReport:
    """
    Move replayable dead letters back onto the output queue.

    An entry is replayable when it holds a decoded prediction result whose
    local file still exists. Other entries are appended back to the dead
    letter list. At most the entries present at the start are visited, so
    re-appended ones are not seen twice.
    """
    report = ReplayReport()
    total = await queue.get_dlq_depth()
    count = min(total, limit) if limit is not None else total

    for _ in range(count):
        raw = await queue.pop_nowait(queue.dead_letter_queue)
        if raw is None:
            break

        try:
            entry = DeadLetter.from_json(raw)
        except ValueError as e:
            entry = DeadLetter.for_payload(raw, "unreadable", str(e))

        result = entry.prediction
        replayable = result is not None and Path(result.file_path).exists()
        try:
            if replayable:
                await queue.enqueue(result)
            else:
                await queue.move_to_dlq(entry)
        except QueueUnavailable:
            await _restore(queue, raw)
            raise

        if not replayable:
            report.kept.append(result.file_name if result else entry.outcome)
            continue

        report.replayed.append(result.file_name)
        logger.info("dead_letter_replayed", file_name=result.file_name, outcome=entry.outcome)

    return report


async def _restore(queue: QueueService, raw: str) -> None:
    """Put a popped dead letter back at the head of the list."""
    try:
        await queue.push_front(raw, queue.dead_letter_queue)
    except QueueUnavailable as e:
        # Last copy of the entry; keep it in the logs
        logger.error("dead_letter_restore_failed", error=str(e), payload=raw)
        return
    logger.warning("dead_letter_restored", queue=queue.dead_letter_queue)


async def _queued_paths(queue: QueueService, queue_name: str, record_type: type) -> set[str]:
    depth = await queue.get_queue_depth(queue_name)
    if depth <= 0:
        return set()
    paths = set()
    for raw in await queue.peek(depth, queue_name):
        try:
            record = record_type.from_json(raw)
        except ValueError:
            # Undecodable records carry no usable path
            continue
        paths.add(str(Path(record.file_path).resolve()))
    return paths


async def referenced_paths(
    queue: QueueService, intake_queue: QueueService | None = None
) -> set[str]:
    """
    Local file paths still needed by some record.

    Covers the output queue and the dead letter list of `queue`, plus the
    intake queue when `intake_queue` is given.
    """
    paths = await _queued_paths(queue, queue.queue_name, PredictionResult)
    if intake_queue is not None:
        paths |= await _queued_paths(intake_queue, intake_queue.queue_name, RawImageJob)
    for entry in await list_dead_letters(queue):
        result = entry.prediction
        if result is not None:
            paths.add(str(Path(result.file_path).resolve()))
    return paths


def sweep_orphans(
    directory: Path,
    referenced: set[str],
    max_age_seconds: float,
    *,
    dry_run: bool = False,
    now: float | None = None,
) -> list[Path]:
    """Delete unreferenced files older than `max_age_seconds`; return them."""
    now = now if now is not None else time.time()
    swept = []

    if not directory.is_dir():
        return swept

    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        if str(path.resolve()) in referenced:
            continue
        if now - path.stat().st_mtime < max_age_seconds:
            continue

        if not dry_run:
            try:
                path.unlink()
            except OSError as e:
                logger.warning("orphan_sweep_error", path=str(path), error=str(e))
                continue
        swept.append(path)

    logger.info("orphans_swept", directory=str(directory), count=len(swept), dry_run=dry_run)
    return swept
