"""Records exchanged through the Redis queues and the notification channel."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .constants import TIMESTAMP_FORMAT


def format_timestamp(moment: datetime | None = None) -> str:
    """Render a timestamp in the pipeline's fixed textual format."""
    return (moment or datetime.now(UTC)).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a `YYYY-MM-DD HH:MM:SS` timestamp, raising ValueError otherwise."""
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def _load_object(data: str | bytes) -> dict[str, Any]:
    d = json.loads(data)
    if not isinstance(d, dict):
        raise ValueError(f"Expected a JSON object, got {type(d).__name__}")
    return d


def _first(d: dict[str, Any], *keys: str) -> Any:
    """Return the value of the first present key (canonical casing first)."""
    for key in keys:
        if key in d:
            return d[key]
    raise KeyError(keys[0])


@dataclass
class RawImageJob:
    """
    Job pushed to the intake queue by the ingestion API.

    The image at `file_path` is written before enqueue and must stay readable
    until the prediction process consumes the job.
    """

    device_id: str
    timestamp_in: str
    file_name: str
    file_path: str

    @classmethod
    def create(
        cls,
        device_id: str,
        file_name: str,
        file_path: str,
        timestamp_in: str | None = None,
    ) -> RawImageJob:
        """Create a job stamped with the current time unless one is given."""
        return cls(
            device_id=device_id,
            timestamp_in=timestamp_in or format_timestamp(),
            file_name=file_name,
            file_path=file_path,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "timestamp_In": self.timestamp_in,
            "file_name": self.file_name,
            "file_path": self.file_path,
        }

    def to_json(self) -> str:
        """Serialize to JSON string for Redis."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str | bytes) -> RawImageJob:
        """Deserialize from JSON string, raising ValueError when malformed."""
        try:
            d = _load_object(data)
            return cls(
                device_id=str(d["device_id"]),
                timestamp_in=str(_first(d, "timestamp_In", "timestamp_in")),
                file_name=str(d["file_name"]),
                file_path=str(d["file_path"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed raw image job: {e!r}") from e


@dataclass
class PredictionResult:
    """
    Record deposited on the output queue by the prediction process.

    From dequeue until cleanup the worker that popped it is the only owner
    of the local file at `file_path`.
    """

    device_id: str
    timestamp_in: str
    timestamp_out: str
    file_name: str
    file_path: str
    output_text: str
    predicted_plat_color: str
    predicted_plat_type: str
    prediction_time_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "timestamp_In": self.timestamp_in,
            "timestamp_Out": self.timestamp_out,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "output_text": self.output_text,
            "predicted_plat_color": self.predicted_plat_color,
            "predicted_plat_type": self.predicted_plat_type,
            "prediction_time_seconds": self.prediction_time_seconds,
        }

    def to_json(self) -> str:
        """Serialize to JSON string for Redis."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> PredictionResult:
        return cls(
            device_id=str(d["device_id"]),
            timestamp_in=str(_first(d, "timestamp_In", "timestamp_in")),
            timestamp_out=str(_first(d, "timestamp_Out", "timestamp_out")),
            file_name=str(d["file_name"]),
            file_path=str(d["file_path"]),
            output_text=str(d["output_text"]),
            predicted_plat_color=str(d["predicted_plat_color"]),
            predicted_plat_type=str(d["predicted_plat_type"]),
            prediction_time_seconds=float(d["prediction_time_seconds"]),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> PredictionResult:
        """Deserialize from JSON string, raising ValueError when malformed."""
        try:
            return cls.from_dict(_load_object(data))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed prediction result: {e!r}") from e


@dataclass(frozen=True)
class NotificationPayload:
    """Message announced to subscribers once the image is in the artifact store."""

    device_id: str
    timestamp_in: str
    timestamp_out: str
    file_name: str
    image_aws_s3_path: str
    output_text: str
    predicted_plat_color: str
    predicted_plat_type: str
    prediction_time_seconds: float

    @classmethod
    def from_result(cls, result: PredictionResult, remote_reference: str) -> NotificationPayload:
        return cls(
            device_id=result.device_id,
            timestamp_in=result.timestamp_in,
            timestamp_out=result.timestamp_out,
            file_name=result.file_name,
            image_aws_s3_path=remote_reference,
            output_text=result.output_text,
            predicted_plat_color=result.predicted_plat_color,
            predicted_plat_type=result.predicted_plat_type,
            prediction_time_seconds=result.prediction_time_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        # Field names and casing are relied on by downstream subscribers
        return {
            "device_id": self.device_id,
            "timestamp_In": self.timestamp_in,
            "timestamp_Out": self.timestamp_out,
            "file_name": self.file_name,
            "image_aws_s3_path": self.image_aws_s3_path,
            "output_text": self.output_text,
            "predicted_plat_color": self.predicted_plat_color,
            "predicted_plat_type": self.predicted_plat_type,
            "prediction_time_seconds": self.prediction_time_seconds,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class DeadLetter:
    """An item the worker pool could not finish, kept for reconciliation."""

    outcome: str
    error: str
    worker: int | None = None
    failed_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    record: dict[str, Any] | None = None  # Decoded prediction result
    raw: str | None = None  # Original payload when it could not be decoded

    @classmethod
    def for_result(
        cls, result: PredictionResult, outcome: str, error: str, worker: int | None = None
    ) -> DeadLetter:
        return cls(outcome=outcome, error=error, worker=worker, record=result.to_dict())

    @classmethod
    def for_payload(
        cls, raw: str | bytes, outcome: str, error: str, worker: int | None = None
    ) -> DeadLetter:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return cls(outcome=outcome, error=error, worker=worker, raw=raw)

    @property
    def prediction(self) -> PredictionResult | None:
        """The decoded prediction result, or None for undecodable payloads."""
        if self.record is None:
            return None
        try:
            return PredictionResult.from_dict(self.record)
        except (KeyError, TypeError, ValueError):
            return None

    def to_json(self) -> str:
        return json.dumps(
            {
                "outcome": self.outcome,
                "error": self.error,
                "worker": self.worker,
                "failed_at": self.failed_at,
                "record": self.record,
                "raw": self.raw,
            }
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> DeadLetter:
        try:
            d = _load_object(data)
            return cls(
                outcome=str(d["outcome"]),
                error=str(d.get("error", "")),
                worker=d.get("worker"),
                failed_at=d.get("failed_at", ""),
                record=d.get("record"),
                raw=d.get("raw"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed dead letter: {e!r}") from e
