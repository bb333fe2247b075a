from __future__ import annotations

import asyncio

import httpx
import pytest

from callsync.core.config import Settings
from callsync.telephony.poller import CallArtifacts, CallSyncPoller, HttpArtifactLookup, SyncStatus


class ScriptedLookup:
    """Returns scripted responses in order, then repeats the last one."""

    def __init__(self, *responses: CallArtifacts | Exception | None) -> None:
        self.responses = list(responses)
        self.calls = 0

    async def __call__(self, *, attempt_id: str | None, session_id: str | None) -> CallArtifacts | None:
        index = min(self.calls, len(self.responses) - 1)
        self.calls += 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


RECORDING_ONLY = CallArtifacts(recording_url="https://r/C1.mp3", status="completed")
TRANSCRIPT_ONLY = CallArtifacts(transcript_text="agent: hi", status="completed")
BOTH = CallArtifacts(recording_url="https://r/C1.mp3", transcript_text="agent: hi", status="completed")


def test_partial_then_completed_stops_polling() -> None:
    async def scenario() -> tuple[CallSyncPoller, list[SyncStatus], int]:
        lookup = ScriptedLookup(None, RECORDING_ONLY, BOTH)
        seen: list[SyncStatus] = []
        poller = CallSyncPoller(
            lookup,
            attempt_id="A1",
            interval=0.01,
            timeout=5.0,
            on_change=lambda status, _artifacts: seen.append(status),
        )
        async with poller:
            status = await poller.wait()
        calls_at_completion = lookup.calls
        await asyncio.sleep(0.05)
        assert status is SyncStatus.COMPLETED
        return poller, seen, lookup.calls - calls_at_completion

    poller, seen, extra_calls = asyncio.run(scenario())

    assert seen == [SyncStatus.POLLING, SyncStatus.PARTIAL, SyncStatus.COMPLETED]
    assert poller.artifacts == BOTH
    assert poller.lookups == 3
    assert extra_calls == 0
    assert poller.loading is False


def test_completed_directly_from_polling() -> None:
    async def scenario() -> CallSyncPoller:
        poller = CallSyncPoller(ScriptedLookup(BOTH), session_id="S1", interval=0.01, timeout=5.0)
        async with poller:
            await poller.wait()
        return poller

    poller = asyncio.run(scenario())

    assert [status for status, _ in poller.transitions] == [SyncStatus.POLLING, SyncStatus.COMPLETED]
    assert poller.lookups == 1


def test_timeout_fires_no_earlier_than_configured_and_stops_polls() -> None:
    async def scenario() -> tuple[CallSyncPoller, float, int, int]:
        lookup = ScriptedLookup(RECORDING_ONLY)
        poller = CallSyncPoller(lookup, attempt_id="A1", interval=0.01, timeout=0.1)
        loop = asyncio.get_running_loop()
        started = loop.time()
        async with poller:
            status = await poller.wait()
            elapsed = loop.time() - started
            calls_at_timeout = lookup.calls
            await asyncio.sleep(0.05)
        assert status is SyncStatus.TIMEOUT
        return poller, elapsed, calls_at_timeout, lookup.calls

    poller, elapsed, calls_at_timeout, calls_after = asyncio.run(scenario())

    assert elapsed >= 0.099
    assert calls_after == calls_at_timeout
    assert poller.artifacts == RECORDING_ONLY
    assert [status for status, _ in poller.transitions] == [
        SyncStatus.POLLING,
        SyncStatus.PARTIAL,
        SyncStatus.TIMEOUT,
    ]


def test_lookup_errors_are_swallowed_and_retried() -> None:
    async def scenario() -> CallSyncPoller:
        lookup = ScriptedLookup(httpx.ConnectError("refused"), RuntimeError("boom"), BOTH)
        poller = CallSyncPoller(lookup, attempt_id="A1", interval=0.01, timeout=5.0)
        async with poller:
            await poller.wait()
        return poller

    poller = asyncio.run(scenario())

    assert poller.status is SyncStatus.COMPLETED
    assert poller.lookups == 3


def test_artifacts_accumulate_across_polls() -> None:
    async def scenario() -> CallSyncPoller:
        lookup = ScriptedLookup(RECORDING_ONLY, TRANSCRIPT_ONLY)
        poller = CallSyncPoller(lookup, attempt_id="A1", interval=0.01, timeout=5.0)
        async with poller:
            await poller.wait()
        return poller

    poller = asyncio.run(scenario())

    assert poller.status is SyncStatus.COMPLETED
    assert poller.artifacts is not None
    assert poller.artifacts.recording_url == "https://r/C1.mp3"
    assert poller.artifacts.transcript_text == "agent: hi"


def test_start_without_identifier_is_noop() -> None:
    async def scenario() -> CallSyncPoller:
        lookup = ScriptedLookup(BOTH)
        poller = CallSyncPoller(lookup, interval=0.01, timeout=0.05)
        async with poller:
            assert await poller.wait() is SyncStatus.IDLE
        await asyncio.sleep(0.02)
        assert lookup.calls == 0
        return poller

    poller = asyncio.run(scenario())

    assert poller.status is SyncStatus.IDLE
    assert poller.transitions == []


def test_retry_after_timeout_restarts_from_idle() -> None:
    async def scenario() -> CallSyncPoller:
        lookup = ScriptedLookup(None, None, None, None, None, None, None, None, None, None, None, None, BOTH)
        poller = CallSyncPoller(lookup, attempt_id="A1", interval=0.01, timeout=0.05, retry_delay=0.01)
        async with poller:
            assert await poller.wait() is SyncStatus.TIMEOUT
            lookup.responses = [BOTH]
            poller.retry()
            assert poller.status is SyncStatus.IDLE
            assert await poller.wait() is SyncStatus.COMPLETED
        return poller

    poller = asyncio.run(scenario())

    statuses = [status for status, _ in poller.transitions]
    assert statuses[-3:] == [SyncStatus.IDLE, SyncStatus.POLLING, SyncStatus.COMPLETED]


def test_close_cancels_polling() -> None:
    async def scenario() -> tuple[int, int]:
        lookup = ScriptedLookup(None)
        poller = CallSyncPoller(lookup, attempt_id="A1", interval=0.01, timeout=5.0)
        poller.start()
        await asyncio.sleep(0.03)
        poller.close()
        calls_at_close = lookup.calls
        await asyncio.sleep(0.05)
        return calls_at_close, lookup.calls

    calls_at_close, calls_after = asyncio.run(scenario())

    assert calls_at_close >= 1
    assert calls_after == calls_at_close


def test_completion_suppresses_timeout() -> None:
    async def scenario() -> CallSyncPoller:
        poller = CallSyncPoller(ScriptedLookup(BOTH), attempt_id="A1", interval=0.01, timeout=0.05)
        poller.start()
        await poller.wait()
        await asyncio.sleep(0.1)
        poller.close()
        return poller

    poller = asyncio.run(scenario())

    assert poller.status is SyncStatus.COMPLETED
    assert SyncStatus.TIMEOUT not in [status for status, _ in poller.transitions]


def test_start_is_noop_once_completed() -> None:
    async def scenario() -> CallSyncPoller:
        lookup = ScriptedLookup(BOTH)
        poller = CallSyncPoller(lookup, attempt_id="A1", interval=0.01, timeout=5.0)
        async with poller:
            await poller.wait()
            poller.start()
            await asyncio.sleep(0.03)
        return poller

    poller = asyncio.run(scenario())

    assert poller.lookups == 1


def test_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        CallSyncPoller(ScriptedLookup(None), attempt_id="A1", interval=0)


def test_from_settings_uses_configured_timings() -> None:
    settings = Settings(call_sync_poll_interval_seconds=2.5, call_sync_timeout_seconds=60, call_sync_retry_delay_seconds=0.5)

    poller = CallSyncPoller.from_settings(ScriptedLookup(None), settings, attempt_id="A1")

    assert (poller.interval, poller.timeout, poller.retry_delay) == (2.5, 60, 0.5)


def test_http_lookup_reads_artifacts_view() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.params.get("attempt_id") == "missing":
            return httpx.Response(404, json={"detail": "call not found"})
        return httpx.Response(
            200,
            json={
                "session_id": "S1",
                "attempt_id": "A1",
                "recording_url": "https://r/C1.mp3",
                "transcript_text": None,
                "status": "completed",
            },
        )

    async def scenario() -> tuple[CallArtifacts | None, CallArtifacts | None]:
        client = httpx.AsyncClient(base_url="http://callsync.test", transport=httpx.MockTransport(handler))
        lookup = HttpArtifactLookup("http://callsync.test", client=client)
        try:
            found = await lookup(attempt_id="A1", session_id=None)
            missing = await lookup(attempt_id="missing", session_id=None)
        finally:
            await client.aclose()
        return found, missing

    found, missing = asyncio.run(scenario())

    assert found == RECORDING_ONLY
    assert missing is None
    assert seen[0].url.path == "/api/calls/artifacts"
    assert seen[0].url.params["attempt_id"] == "A1"


def test_retry_from_listener_leaves_a_single_poll_loop() -> None:
    async def scenario() -> tuple[int, int, int, list[asyncio.Task]]:
        lookup = ScriptedLookup(RECORDING_ONLY)
        retried: list[SyncStatus] = []

        def on_change(status: SyncStatus, _artifacts: CallArtifacts | None) -> None:
            if status is SyncStatus.PARTIAL and not retried:
                retried.append(status)
                poller.retry()

        poller = CallSyncPoller(
            lookup, attempt_id="A1", interval=0.05, timeout=5.0, retry_delay=0.01, on_change=on_change
        )
        poller.start()
        await asyncio.sleep(0.03)
        calls_after_restart = lookup.calls
        await asyncio.sleep(0.5)
        calls_in_window = lookup.calls - calls_after_restart
        poller.close()
        calls_at_close = lookup.calls
        await asyncio.sleep(0.2)
        leftover = [task for task in asyncio.all_tasks() if task is not asyncio.current_task() and not task.done()]
        return calls_in_window, calls_at_close, lookup.calls, leftover

    calls_in_window, calls_at_close, calls_after, leftover = asyncio.run(scenario())

    assert calls_in_window <= 12
    assert calls_after == calls_at_close
    assert leftover == []


def test_status_values_are_plain_strings() -> None:
    assert SyncStatus.PARTIAL == "partial"
    assert str(SyncStatus.TIMEOUT) == "timeout"
