from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from functools import lru_cache
from typing import Any, NamedTuple

import httpx
import replicate
from pydantic import BaseModel, ValidationError
from replicate.exceptions import ReplicateException

from banana_proxy.config import (
    STRATEGY_SDK,
    get_generation_strategy,
    get_generation_timeout_ms,
    get_http_timeout_ms,
    get_output_format,
    get_poll_interval_ms,
    get_replicate_api_base_url,
    get_replicate_api_token,
    get_replicate_model,
)

logger = logging.getLogger(__name__)

STATUS_SUCCEEDED = "succeeded"
TERMINAL_STATUSES = frozenset({STATUS_SUCCEEDED, "failed", "canceled", "aborted"})
ERROR_SUMMARY_LIMIT = 500


class GenerationError(Exception):
    def __init__(self, message: str, detail: Any = None):
        self.detail = detail
        super().__init__(message)


class UpstreamError(GenerationError):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Upstream request failed with status {status_code}", detail=summarize_error_body(body))


class GenerationFailedError(GenerationError):
    pass


class GenerationTimeoutError(GenerationError):
    pass


class GenerationConfigError(RuntimeError):
    pass


class GenerationRequest(NamedTuple):
    prompt: str
    reference_image: str


class GenerationResult(NamedTuple):
    result_url: str


class PredictionUrls(BaseModel):
    get: str | None = None
    cancel: str | None = None


class GenerationJob(BaseModel):
    id: str
    status: str
    output: Any = None
    error: Any = None
    urls: PredictionUrls | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def summarize_error_body(body: str, limit: int = ERROR_SUMMARY_LIMIT) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("detail", "error", "title"):
            value = payload.get(key)
            if value:
                return str(value)[:limit]
    text = (body or "").strip()
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def extract_result_url(output: Any) -> str:
    value = output
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    elif isinstance(value, Iterator):
        value = next(value, None)

    if value is None or value == "":
        raise GenerationFailedError("Model returned no output")

    # replicate>=1.0 wraps file outputs in FileOutput objects exposing .url
    url = getattr(value, "url", None)
    if url:
        return str(url)
    return str(value)


class GenerationClient(ABC):
    strategy = ""

    def __init__(self, model: str, generation_timeout_s: float):
        self.model = model
        self.generation_timeout_s = generation_timeout_s

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        start = time.perf_counter()
        logger.info("Generating with '%s' using %s strategy", self.model, self.strategy)
        output = await self._run(request)
        result = GenerationResult(result_url=extract_result_url(output))
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info("Generation complete in %sms: %s", latency_ms, result.result_url)
        return result

    @abstractmethod
    async def _run(self, request: GenerationRequest) -> Any:
        raise NotImplementedError


class ReplicateRunClient(GenerationClient):
    strategy = "sdk"

    def __init__(
        self,
        api_token: str,
        model: str,
        generation_timeout_s: float,
        http_timeout_s: float,
        client: Any = None,
    ):
        super().__init__(model, generation_timeout_s)
        self._client = client or replicate.Client(api_token=api_token, timeout=http_timeout_s)

    async def cancel(self, prediction: Any) -> None:
        try:
            await prediction.async_cancel()
            logger.info("Cancelled prediction %s", prediction.id)
        except (ReplicateException, httpx.HTTPError) as exc:
            logger.warning("Failed to cancel prediction %s: %s", prediction.id, exc)

    async def _run(self, request: GenerationRequest) -> Any:
        model_input = {
            "image": request.reference_image,
            "prompt": request.prompt,
        }
        try:
            prediction = await self._client.predictions.async_create(model=self.model, input=model_input)
        except ReplicateException as exc:
            raise GenerationFailedError("Replicate request failed", detail=str(exc)) from exc
        logger.info("Prediction %s created with status %s", prediction.id, prediction.status)

        try:
            await asyncio.wait_for(prediction.async_wait(), timeout=self.generation_timeout_s)
        except asyncio.TimeoutError as exc:
            await self.cancel(prediction)
            raise GenerationTimeoutError(
                f"Prediction {prediction.id} did not finish within {self.generation_timeout_s:g}s"
            ) from exc
        except asyncio.CancelledError:
            logger.warning("Request cancelled while waiting for prediction %s", prediction.id)
            await self.cancel(prediction)
            raise
        except ReplicateException as exc:
            raise GenerationFailedError("Replicate request failed", detail=str(exc)) from exc

        if prediction.status != STATUS_SUCCEEDED:
            logger.error("Prediction %s ended with status %s: %s", prediction.id, prediction.status, prediction.error)
            raise GenerationFailedError(f"Prediction {prediction.status}", detail=prediction.error)
        return prediction.output


class PredictionPollingClient(GenerationClient):
    strategy = "poll"

    def __init__(
        self,
        api_token: str,
        model: str,
        api_base_url: str,
        output_format: str = "jpg",
        poll_interval_s: float = 1.0,
        http_timeout_s: float = 30.0,
        generation_timeout_s: float = 180.0,
    ):
        super().__init__(model, generation_timeout_s)
        self._api_token = api_token
        self.api_base_url = api_base_url.rstrip("/")
        self.output_format = output_format
        self.poll_interval_s = poll_interval_s
        self.http_timeout_s = http_timeout_s

    @property
    def create_url(self) -> str:
        return f"{self.api_base_url}/models/{self.model}/predictions"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise GenerationTimeoutError(f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(502, str(exc)) from exc

        if not response.is_success:
            logger.error(
                "Replicate %s %s failed with status %s: %s",
                method,
                url,
                response.status_code,
                response.text,
            )
            raise UpstreamError(response.status_code, response.text)
        return response

    @staticmethod
    def _parse_job(response: httpx.Response) -> GenerationJob:
        try:
            return GenerationJob.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamError(502, f"Unexpected prediction payload: {response.text}") from exc

    def _status_url(self, job: GenerationJob) -> str:
        if job.urls and job.urls.get:
            return job.urls.get
        return f"{self.api_base_url}/predictions/{job.id}"

    def _cancel_url(self, job: GenerationJob) -> str:
        if job.urls and job.urls.cancel:
            return job.urls.cancel
        return f"{self.api_base_url}/predictions/{job.id}/cancel"

    async def submit(self, client: httpx.AsyncClient, request: GenerationRequest) -> GenerationJob:
        payload = {
            "input": {
                "image_input": [request.reference_image],
                "prompt": request.prompt,
                "output_format": self.output_format,
            }
        }
        response = await self._send(client, "POST", self.create_url, json=payload)
        job = self._parse_job(response)
        logger.info("Prediction %s created with status %s", job.id, job.status)
        return job

    async def wait(self, client: httpx.AsyncClient, job: GenerationJob, deadline: float) -> GenerationJob:
        while not job.is_terminal:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise GenerationTimeoutError(
                    f"Prediction {job.id} still {job.status} after {self.generation_timeout_s:g}s"
                )
            await asyncio.sleep(min(self.poll_interval_s, remaining))
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                continue
            # The status request may not outlive the generation deadline.
            response = await self._send(
                client,
                "GET",
                self._status_url(job),
                timeout=min(self.http_timeout_s, remaining),
            )
            previous_status = job.status
            job = self._parse_job(response)
            if job.status != previous_status:
                logger.debug("Prediction %s: %s -> %s", job.id, previous_status, job.status)
        return job

    async def cancel(self, client: httpx.AsyncClient, job: GenerationJob) -> None:
        try:
            await self._send(client, "POST", self._cancel_url(job))
            logger.info("Cancelled prediction %s", job.id)
        except GenerationError as exc:
            logger.warning("Failed to cancel prediction %s: %s", job.id, exc)

    async def _run(self, request: GenerationRequest) -> Any:
        deadline = time.monotonic() + self.generation_timeout_s
        async with httpx.AsyncClient(timeout=self.http_timeout_s) as client:
            job = await self.submit(client, request)
            try:
                job = await self.wait(client, job, deadline)
            except GenerationTimeoutError:
                await self.cancel(client, job)
                raise
            except asyncio.CancelledError:
                logger.warning("Request cancelled while polling prediction %s", job.id)
                await self.cancel(client, job)
                raise

        if job.status != STATUS_SUCCEEDED:
            logger.error("Prediction %s ended with status %s: %s", job.id, job.status, job.error)
            raise GenerationFailedError(f"Prediction {job.status}", detail=job.error)
        return job.output


@lru_cache(maxsize=4)
def build_generation_client(
    strategy: str,
    api_token: str,
    model: str,
    api_base_url: str,
    output_format: str,
    poll_interval_ms: int,
    http_timeout_ms: int,
    generation_timeout_ms: int,
) -> GenerationClient:
    if strategy == STRATEGY_SDK:
        return ReplicateRunClient(
            api_token=api_token,
            model=model,
            generation_timeout_s=generation_timeout_ms / 1000,
            http_timeout_s=http_timeout_ms / 1000,
        )
    return PredictionPollingClient(
        api_token=api_token,
        model=model,
        api_base_url=api_base_url,
        output_format=output_format,
        poll_interval_s=poll_interval_ms / 1000,
        http_timeout_s=http_timeout_ms / 1000,
        generation_timeout_s=generation_timeout_ms / 1000,
    )


def get_generation_client(strategy: str | None = None) -> GenerationClient:
    api_token = get_replicate_api_token()
    if not api_token:
        raise GenerationConfigError("REPLICATE_API_TOKEN is not set.")
    return build_generation_client(
        strategy or get_generation_strategy(),
        api_token,
        get_replicate_model(),
        get_replicate_api_base_url(),
        get_output_format(),
        get_poll_interval_ms(),
        get_http_timeout_ms(),
        get_generation_timeout_ms(),
    )
