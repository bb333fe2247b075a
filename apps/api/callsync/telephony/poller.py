"""Caller-side reconciler that waits for call artifacts to land.

Recording and transcript arrive from the provider minutes after a call ends,
as separate webhook deliveries. ``CallSyncPoller`` polls the artifacts view
for one attempt (or session) until both are present or the timeout fires::

    async with CallSyncPoller(HttpArtifactLookup(base_url), attempt_id=attempt_id) as poller:
        status = await poller.wait()

Leaving the ``async with`` block (or calling ``close()``) cancels the
interval and the timeout; callers that drop a poller without closing it
leak polling activity.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

import httpx

from callsync.core.config import Settings


logger = logging.getLogger("callsync.telephony.poller")


class SyncStatus(StrEnum):
    IDLE = "idle"
    POLLING = "polling"
    PARTIAL = "partial"
    COMPLETED = "completed"
    TIMEOUT = "timeout"


TERMINAL_STATUSES = frozenset({SyncStatus.COMPLETED, SyncStatus.TIMEOUT})
ACTIVE_STATUSES = frozenset({SyncStatus.POLLING, SyncStatus.PARTIAL})


@dataclass(frozen=True, slots=True)
class CallArtifacts:
    recording_url: str | None = None
    transcript_text: str | None = None
    status: str | None = None

    @property
    def has_recording(self) -> bool:
        return bool(self.recording_url)

    @property
    def has_transcript(self) -> bool:
        return bool(self.transcript_text)

    def merge(self, newer: CallArtifacts) -> CallArtifacts:
        return CallArtifacts(
            recording_url=newer.recording_url or self.recording_url,
            transcript_text=newer.transcript_text or self.transcript_text,
            status=newer.status or self.status,
        )


class ArtifactLookup(Protocol):
    def __call__(
        self, *, attempt_id: str | None, session_id: str | None
    ) -> Awaitable[CallArtifacts | None]: ...


class HttpArtifactLookup:
    """Reads ``GET /api/calls/artifacts`` with httpx; 404 means the record does not exist yet."""

    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def __call__(self, *, attempt_id: str | None, session_id: str | None) -> CallArtifacts | None:
        params = {"attempt_id": attempt_id} if attempt_id else {"session_id": session_id or ""}
        response = await self._client.get("/api/calls/artifacts", params=params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return CallArtifacts(
            recording_url=body.get("recording_url"),
            transcript_text=body.get("transcript_text"),
            status=body.get("status"),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


StatusListener = Callable[[SyncStatus, CallArtifacts | None], Any]


class CallSyncPoller:
    """idle -> polling -> {partial, completed, timeout}; ``retry()`` restarts from idle.

    The interval loop and the timeout run as two independent tasks on the
    running event loop. ``completed`` cancels the timeout; ``timeout`` cancels
    the interval loop. Lookup failures are logged and retried on the next tick.
    """

    def __init__(
        self,
        lookup: ArtifactLookup,
        *,
        attempt_id: str | uuid.UUID | None = None,
        session_id: str | uuid.UUID | None = None,
        interval: float = 5.0,
        timeout: float = 180.0,
        retry_delay: float = 0.1,
        on_change: StatusListener | None = None,
    ) -> None:
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self.attempt_id = str(attempt_id) if attempt_id else None
        self.session_id = str(session_id) if session_id else None
        self.interval = interval
        self.timeout = timeout
        self.retry_delay = retry_delay
        self._lookup = lookup
        self._on_change = on_change
        self._status = SyncStatus.IDLE
        self._artifacts: CallArtifacts | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._timeout_task: asyncio.Task[None] | None = None
        self._restart_handle: asyncio.TimerHandle | None = None
        self._settled: asyncio.Event | None = None
        self._started_at: float | None = None
        self.lookups = 0
        self.transitions: list[tuple[SyncStatus, float]] = []

    @classmethod
    def from_settings(cls, lookup: ArtifactLookup, settings: Settings, **kwargs: Any) -> CallSyncPoller:
        return cls(
            lookup,
            interval=settings.call_sync_poll_interval_seconds,
            timeout=settings.call_sync_timeout_seconds,
            retry_delay=settings.call_sync_retry_delay_seconds,
            **kwargs,
        )

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def artifacts(self) -> CallArtifacts | None:
        return self._artifacts

    @property
    def loading(self) -> bool:
        return self._status in ACTIVE_STATUSES

    @property
    def has_target(self) -> bool:
        return bool(self.attempt_id or self.session_id)

    def start(self) -> None:
        """Begin polling on the running loop. No-op without an identifier or once completed."""
        if not self.has_target or self._status is SyncStatus.COMPLETED:
            return
        if self._status in ACTIVE_STATUSES:
            return

        loop = asyncio.get_running_loop()
        self._restart_handle = None
        self._settled = asyncio.Event()
        self._started_at = loop.time()
        logger.info(
            "call_sync.started",
            extra={"attempt_id": self.attempt_id, "session_id": self.session_id},
        )
        self._transition(SyncStatus.POLLING)
        self._poll_task = loop.create_task(self._poll_loop())
        self._timeout_task = loop.create_task(self._timeout_after())

    def retry(self) -> None:
        self._cancel_timers()
        self._transition(SyncStatus.IDLE)
        if self.has_target:
            self._restart_handle = asyncio.get_running_loop().call_later(self.retry_delay, self.start)
        self._settle()

    def close(self) -> None:
        self._cancel_timers()
        if self._settled is not None:
            self._settled.set()

    async def wait(self) -> SyncStatus:
        """Wait until the poller settles in a terminal state (or is closed)."""
        while True:
            if self._status in TERMINAL_STATUSES:
                return self._status
            if self._restart_handle is not None:
                await asyncio.sleep(self.retry_delay)
                continue
            if self._settled is None:
                return self._status
            await self._settled.wait()
            if self._restart_handle is None:
                return self._status

    async def __aenter__(self) -> CallSyncPoller:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()
        await asyncio.gather(*(task for task in (self._poll_task, self._timeout_task) if task), return_exceptions=True)

    async def _poll_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self._owns_polling():
            await self._check_once()
            if not self._owns_polling():
                return
            next_tick += self.interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    def _owns_polling(self) -> bool:
        # retry() from a listener runs inside this task and cannot cancel it
        return asyncio.current_task() is self._poll_task and self._status in ACTIVE_STATUSES

    async def _check_once(self) -> None:
        self.lookups += 1
        try:
            found = await self._lookup(attempt_id=self.attempt_id, session_id=self.session_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "call_sync.lookup_failed",
                extra={"attempt_id": self.attempt_id, "session_id": self.session_id, "error": str(exc)},
            )
            return

        if found is None or self._status in TERMINAL_STATUSES:
            return
        if not (found.has_recording or found.has_transcript):
            return

        self._artifacts = self._artifacts.merge(found) if self._artifacts else found
        if self._artifacts.has_recording and self._artifacts.has_transcript:
            self._complete()
        elif self._status is not SyncStatus.PARTIAL:
            self._transition(SyncStatus.PARTIAL)
        else:
            self._notify()

    async def _timeout_after(self) -> None:
        await asyncio.sleep(self.timeout)
        if self._status is SyncStatus.COMPLETED:
            return
        logger.info(
            "call_sync.timeout",
            extra={"attempt_id": self.attempt_id, "session_id": self.session_id, "status": self._status.value},
        )
        self._transition(SyncStatus.TIMEOUT)
        if self._poll_task is not None:
            self._poll_task.cancel()
        self._settle()

    def _complete(self) -> None:
        logger.info(
            "call_sync.completed",
            extra={"attempt_id": self.attempt_id, "session_id": self.session_id},
        )
        self._transition(SyncStatus.COMPLETED)
        if self._timeout_task is not None:
            self._timeout_task.cancel()
        self._settle()

    def _settle(self) -> None:
        if self._settled is not None:
            self._settled.set()

    def _cancel_timers(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in (self._poll_task, self._timeout_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    def _transition(self, status: SyncStatus) -> None:
        self._status = status
        stamp = asyncio.get_running_loop().time() if _loop_running() else 0.0
        self.transitions.append((status, stamp))
        self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self._status, self._artifacts)
        except Exception:
            logger.exception("call_sync.listener_failed", extra={"attempt_id": self.attempt_id})


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
