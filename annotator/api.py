from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from pydantic_core import to_jsonable_python

from backend.app.models import AnnotationCreate, AnnotationRecord, VideoConfig

logger = logging.getLogger(__name__)


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


API_BASE = os.getenv("ANNOTATOR_API_BASE", "http://localhost:5000/api")
API_TIMEOUT = _parse_float(os.getenv("ANNOTATOR_TIMEOUT"), 10.0)


class ApiError(Exception):
    """A request to the annotation API did not succeed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransportError(ApiError):
    """The request never got an HTTP response."""


class ResponseError(ApiError):
    """The server answered with a non-2xx status."""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase or f"HTTP {response.status_code}"


class AnnotationApi:
    """Async client for the annotation REST endpoints."""

    def __init__(
        self,
        base_url: str = API_BASE,
        timeout: float = API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url + "/",
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, action: str, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(f"Failed to {action}: {e}") from e
        logger.debug("%s %s -> %s", method, path, response.status_code)
        if response.is_error:
            raise ResponseError(
                f"Failed to {action}: {_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    async def _fetch(self, action: str, method: str, path: str, parse, **kwargs):
        response = await self._request(action, method, path, **kwargs)
        try:
            return parse(response.json())
        except ValueError as e:
            raise ResponseError(
                f"Failed to {action}: malformed response body",
                status_code=response.status_code,
            ) from e

    async def get_video_config(self) -> VideoConfig:
        return await self._fetch(
            "fetch video config", "GET", "video/config", VideoConfig.model_validate
        )

    async def list_annotations(self, video: Optional[str] = None) -> List[AnnotationRecord]:
        params = {"video": video} if video else None
        return await self._fetch(
            "fetch annotations",
            "GET",
            "annotations",
            lambda body: [AnnotationRecord.model_validate(item) for item in body],
            params=params,
        )

    async def create_annotation(self, annotation: AnnotationCreate) -> AnnotationRecord:
        return await self._fetch(
            "create annotation",
            "POST",
            "annotations",
            AnnotationRecord.model_validate,
            json=annotation.model_dump(mode="json"),
        )

    async def update_annotation(
        self, annotation_id: str, patch: Dict[str, Any]
    ) -> AnnotationRecord:
        return await self._fetch(
            f"update annotation {annotation_id}",
            "PUT",
            f"annotations/{annotation_id}",
            AnnotationRecord.model_validate,
            json=to_jsonable_python(patch),
        )

    async def delete_annotation(self, annotation_id: str) -> None:
        await self._request(
            f"delete annotation {annotation_id}", "DELETE", f"annotations/{annotation_id}"
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AnnotationApi":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
