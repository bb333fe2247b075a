from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx
from opentelemetry import trace

from callsync.core.config import Settings
from callsync.telephony.errors import IntegrationNotConfiguredError, OpenPhoneAPIError


logger = logging.getLogger("callsync.telephony.client")
tracer = trace.get_tracer("callsync.telephony.client")


class OpenPhoneClient:
    """Thin synchronous wrapper over the OpenPhone REST API."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openphone.com/v1",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": api_key, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.BaseTransport | None = None) -> OpenPhoneClient:
        if not settings.openphone_api_key:
            raise IntegrationNotConfiguredError(["OPENPHONE_API_KEY"])
        return cls(
            settings.openphone_api_key,
            base_url=settings.openphone_api_base,
            timeout=settings.openphone_timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenPhoneClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def list_phone_numbers(self) -> list[dict[str, Any]]:
        payload = self._get("/phone-numbers", failure="API key validation failed")
        return _data_list(payload)

    def list_calls(self, phone_number_id: str, participant: str, created_after: datetime) -> list[dict[str, Any]]:
        payload = self._get(
            "/calls",
            params={
                "phoneNumberId": phone_number_id,
                "participants": participant,
                "createdAfter": created_after.isoformat().replace("+00:00", "Z"),
            },
            failure="Failed to fetch calls from OpenPhone",
        )
        return _data_list(payload)

    def get_call_recording_url(self, call_id: str) -> str | None:
        payload = self._get(f"/call-recordings/{call_id}", failure="Failed to fetch call recording")
        data = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict) and isinstance(data.get("url"), str):
            return data["url"]
        return None

    def get_call_transcript(self, call_id: str) -> list[dict[str, Any]] | None:
        payload = self._get(f"/call-transcripts/{call_id}", failure="Failed to fetch call transcript")
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            return None
        segments = data.get("segments", data.get("dialogue"))
        return segments if isinstance(segments, list) else None

    def _get(self, path: str, *, failure: str, params: dict[str, str] | None = None) -> Any:
        with tracer.start_as_current_span("openphone.get") as span:
            span.set_attribute("http.route", path)
            try:
                response = self._client.get(path, params=params)
            except httpx.HTTPError as exc:
                span.record_exception(exc)
                logger.error("openphone.transport_error", extra={"path": path, "error": str(exc)})
                raise OpenPhoneAPIError(502, "Failed to connect to OpenPhone API", str(exc)) from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.is_error:
                logger.warning(
                    "openphone.request_failed",
                    extra={"path": path, "status_code": response.status_code, "error": response.text[:500]},
                )
                raise OpenPhoneAPIError(response.status_code, failure, response.text)
            try:
                return response.json()
            except ValueError as exc:
                span.record_exception(exc)
                logger.warning(
                    "openphone.invalid_response",
                    extra={"path": path, "status_code": response.status_code, "error": response.text[:500]},
                )
                raise OpenPhoneAPIError(502, "Invalid response from OpenPhone API", response.text) from exc


def _data_list(payload: Any) -> list[dict[str, Any]]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]
