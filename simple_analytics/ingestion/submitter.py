"""Batch submitter — delivers buffered events to the remote collector over HTTP."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

import httpx
from pydantic import ValidationError
from prometheus_client import Counter, Histogram

from simple_analytics.utils.logging import setup_logging
from simple_analytics.utils.schemas import (
    AppMetadata,
    EventRecord,
    SubmissionPayload,
    SubmissionResponse,
)

logger = setup_logging("analytics-submitter")

# --- Prometheus Metrics ---
SUBMIT_LATENCY = Histogram(
    "analytics_submit_latency_seconds",
    "Time to deliver one batch to the collector",
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)
SUBMIT_ERRORS = Counter(
    "analytics_submit_errors_total",
    "Batches the submitter could not deliver",
    ["reason"],
)

MISSING_ENDPOINT_NOTICE = """
===================
You must configure the AppAnalytics endpoint to enable submitting results.
Call AppAnalytics.set_endpoint() before any other use of simple_analytics.
===================
"""


# ── Outcomes ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Delivered:
    """The collector accepted the batch."""
    message: str = ""


@dataclass(frozen=True)
class Failed:
    """The batch was not delivered; `batch` is the original, unmodified batch."""
    batch: list[EventRecord] = field(default_factory=list)
    reason: str = "unknown"


SubmitOutcome = Union[Delivered, Failed]


class Submitter(ABC):
    """
    Delivers one batch per call.

    Implementations must never raise for delivery problems: any failure is
    reported as Failed carrying the exact batch that was passed in, so the
    buffer can put it back in front of newer events.
    """

    @abstractmethod
    def submit(self, batch: list[EventRecord]) -> SubmitOutcome:
        ...

    def close(self) -> None:
        pass


# ── HTTP ─────────────────────────────────────────────────────────────

def _valid_endpoint(endpoint: str) -> bool:
    try:
        url = httpx.URL(endpoint)
    except (httpx.InvalidURL, TypeError, ValueError):
        return False
    return url.scheme in ("http", "https") and bool(url.host)


class HttpSubmitter(Submitter):
    """POSTs batches as JSON to the configured collector endpoint."""

    def __init__(
        self,
        endpoint: str,
        metadata: AppMetadata,
        request_timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.endpoint = endpoint
        self.metadata = metadata
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(request_timeout))

    def submit(self, batch: list[EventRecord]) -> SubmitOutcome:
        endpoint = self.endpoint
        if not endpoint:
            logger.error("endpoint_not_configured", notice=MISSING_ENDPOINT_NOTICE)
            return self._failed(batch, "configuration")

        if not _valid_endpoint(endpoint):
            logger.error("endpoint_malformed", endpoint=endpoint)
            return self._failed(batch, "malformed_endpoint")

        try:
            body = SubmissionPayload.for_batch(self.metadata, batch).to_request_body()
        except (ValidationError, ValueError, TypeError) as e:
            logger.error("payload_serialization_failed", error=str(e), items=len(batch))
            return self._failed(batch, "serialization")

        try:
            with SUBMIT_LATENCY.time():
                response = self._client.post(
                    endpoint,
                    content=body,
                    headers={"Content-Type": "application/json; charset=utf-8"},
                )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error("submission_transport_error", endpoint=endpoint, error=str(e))
            return self._failed(batch, "transport")

        if not response.is_success:
            message = self._decode_message(response)
            logger.debug(
                "submission_rejected_body",
                status=response.status_code,
                message=response.text if message is None else message,
            )
            logger.error("submission_rejected", endpoint=endpoint, status=response.status_code)
            return self._failed(batch, f"http_{response.status_code}")

        logger.debug("submission_response", body=response.text)
        message = self._decode_message(response)
        if message is None:
            logger.warning("response_decode_failed", status=response.status_code)
            message = ""
        return Delivered(message=message)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @staticmethod
    def _decode_message(response: httpx.Response) -> Optional[str]:
        try:
            return SubmissionResponse.model_validate_json(response.content).message
        except ValidationError:
            return None

    @staticmethod
    def _failed(batch: list[EventRecord], reason: str) -> Failed:
        SUBMIT_ERRORS.labels(reason=reason).inc()
        return Failed(batch=batch, reason=reason)
