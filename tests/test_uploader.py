"""Scheduler behaviour against a mocked HTTP server (httpx.MockTransport)."""

import asyncio
import inspect
import os

import httpx
import pytest

from chibi_upload.client.uploader import ChunkedUploader, EventType, SessionState, classify_status, create_uploader
from chibi_upload.core.exceptions import FatalTransportError, SizeLimitError, TransientTransportError, ValidationError

ENDPOINT = "http://uploads.test/upload"
FINAL_URL = "http://uploads.test/upload/files/final.bin"


class FakeServer:
    """Records chunk numbers and answers with scripted statuses.

    Like the real receiver, the last chunk only gets the download URL once
    every other chunk was stored.
    """

    def __init__(self, statuses=None, on_request=None):
        # {chunk_number: [status, status, ...]}; the last entry repeats
        self.statuses = statuses or {}
        self.on_request = on_request
        self.requests = []
        self.stored = set()
        self.in_flight = 0
        self.max_in_flight = 0

    def chunk_numbers(self):
        return [int(r.headers.get("chibi-chunk-number", 1)) for r in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        await request.aread()
        self.requests.append(request)
        number = int(request.headers.get("chibi-chunk-number", 1))
        total = int(request.headers.get("chibi-chunks-total", 1))

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.001)
            if self.on_request:
                result = self.on_request(number)
                if inspect.isawaitable(result):
                    await result
        finally:
            self.in_flight -= 1

        scripted = self.statuses.get(number)
        if scripted:
            status = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            if status == "network":
                raise httpx.ConnectError("connection refused", request=request)
            if status in (200, 201, 204):
                if number != total:
                    self.stored.add(number)
                return httpx.Response(status)
            return httpx.Response(status, text="nope")
        if number == total:
            if self.stored.issuperset(range(1, total)):
                return httpx.Response(201, json={"url": FINAL_URL})
            return httpx.Response(204)
        self.stored.add(number)
        return httpx.Response(204)


def make_uploader(path, server, **options):
    options.setdefault("chunk_size", 100)
    options.setdefault("delay_before_retry", 0)
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return ChunkedUploader(path, endpoint=ENDPOINT, client=client, **options)


def events_of(uploader, event_type):
    return [e.payload for e in uploader.events if e.type is event_type]


@pytest.fixture
def big_file(tmp_path):
    path = tmp_path / "big.bin"
    path.write_bytes(os.urandom(500))
    return path


async def test_chunked_upload_completes(sample_file):
    server = FakeServer()
    uploader = make_uploader(sample_file, server, max_parallel_uploads=2, post_params={"album": "7"})

    outcome = await uploader.start()

    assert outcome.state is SessionState.COMPLETED
    assert outcome.response == {"url": FINAL_URL}
    assert server.chunk_numbers()[-1] == 3
    assert sorted(server.chunk_numbers()) == [1, 2, 3]
    assert {r.headers["chibi-uuid"] for r in server.requests} == {uploader.session_id}
    assert {r.headers["chibi-chunks-total"] for r in server.requests} == {"3"}
    assert sorted(events_of(uploader, EventType.PROGRESS)) == [33, 67, 100]
    assert events_of(uploader, EventType.FINISH) == [{"url": FINAL_URL}]

    # Auxiliary fields only travel with the last chunk
    last, others = server.requests[-1], server.requests[:-1]
    assert b'name="album"' in last.content
    assert b'name="name"' in last.content
    assert all(b'name="album"' not in r.content for r in others)


async def test_single_chunk_file_uses_one_plain_request(tmp_path):
    path = tmp_path / "small.txt"
    path.write_bytes(b"x" * 100)
    server = FakeServer()
    uploader = make_uploader(path, server)

    outcome = await uploader.start()

    assert outcome.state is SessionState.COMPLETED
    assert len(server.requests) == 1
    assert not any(h.startswith("chibi-") for h in server.requests[0].headers)
    assert events_of(uploader, EventType.PROGRESS) == [100]


async def test_batches_are_bounded_and_last_chunk_goes_alone(big_file):
    server = FakeServer()
    uploader = make_uploader(big_file, server, max_parallel_uploads=2)

    await uploader.start()

    assert server.max_in_flight <= 2
    assert server.chunk_numbers()[-1] == 5
    assert sorted(server.chunk_numbers()) == [1, 2, 3, 4, 5]


async def test_retries_exhausted_reports_error(sample_file):
    server = FakeServer(statuses={3: [503]})
    uploader = make_uploader(sample_file, server, retries=3)

    outcome = await uploader.start()

    retries = events_of(uploader, EventType.RETRY)
    assert [r["retries_left"] for r in retries] == [2, 1, 0]
    assert all(r["chunk"] == 3 for r in retries)
    errors = events_of(uploader, EventType.ERROR)
    assert len(errors) == 1
    assert isinstance(errors[0], TransientTransportError)
    assert "No more retries" in errors[0].message
    assert server.chunk_numbers().count(3) == 4
    assert outcome.state is SessionState.FAILED


async def test_retries_exhausted_on_early_chunk_keeps_sending(big_file):
    server = FakeServer(statuses={1: [503]})
    uploader = make_uploader(big_file, server, retries=2, max_parallel_uploads=2)

    outcome = await uploader.start()

    numbers = server.chunk_numbers()
    assert numbers.count(1) == 3
    assert {2, 3, 4, 5} <= set(numbers)
    assert numbers[-1] == 5
    # Exhaustion does not halt the session; the server then has no file to link
    messages = [e.message for e in events_of(uploader, EventType.ERROR)]
    assert messages == [
        "An error occured uploading chunk 1. No more retries, stopping upload",
        "No URL returned by the server",
    ]
    assert outcome.state is SessionState.FAILED


async def test_success_on_second_attempt_stops_retrying(sample_file):
    server = FakeServer(statuses={1: [503, 200]})
    uploader = make_uploader(sample_file, server, retries=3)

    outcome = await uploader.start()

    assert len(events_of(uploader, EventType.RETRY)) == 1
    assert server.chunk_numbers().count(1) == 2
    assert events_of(uploader, EventType.ERROR) == []
    assert outcome.state is SessionState.COMPLETED
    assert 1 not in uploader.retries_used


async def test_network_error_is_retried(sample_file):
    server = FakeServer(statuses={2: ["network", 200]})
    uploader = make_uploader(sample_file, server)

    outcome = await uploader.start()

    assert [r["chunk"] for r in events_of(uploader, EventType.RETRY)] == [2]
    assert outcome.state is SessionState.COMPLETED


async def test_payload_too_large_halts_all_sends(big_file):
    server = FakeServer(statuses={2: [413]})
    uploader = make_uploader(big_file, server, max_parallel_uploads=1)

    outcome = await uploader.start()

    assert server.chunk_numbers() == [1, 2]
    errors = events_of(uploader, EventType.ERROR)
    assert len(errors) == 1
    assert isinstance(errors[0], FatalTransportError)
    assert errors[0].message == "Chunks are too big. Stopping upload"
    assert outcome.state is SessionState.FAILED


async def test_payload_too_large_in_parallel_batch_reports_once(big_file):
    server = FakeServer(statuses={1: [413], 2: [413], 3: [413]})
    uploader = make_uploader(big_file, server, max_parallel_uploads=3)

    await uploader.start()

    assert sorted(server.chunk_numbers()) == [1, 2, 3]
    assert len(events_of(uploader, EventType.ERROR)) == 1


async def test_other_status_is_fatal_without_retry(sample_file):
    server = FakeServer(statuses={1: [400]})
    uploader = make_uploader(sample_file, server, max_parallel_uploads=1)

    outcome = await uploader.start()

    assert events_of(uploader, EventType.RETRY) == []
    assert outcome.error.message == "Server responded with 400. Stopping upload: nope"
    assert server.chunk_numbers() == [1]
    assert outcome.state is SessionState.FAILED


async def test_missing_url_on_last_chunk_is_an_error(sample_file):
    server = FakeServer(statuses={3: [204]})
    uploader = make_uploader(sample_file, server)

    outcome = await uploader.start()

    assert outcome.state is SessionState.FAILED
    assert outcome.error.message == "No URL returned by the server"


async def test_pause_stops_new_batches_and_resume_completes(big_file):
    server = FakeServer(on_request=lambda number: uploader.pause() if number == 1 else None)
    uploader = make_uploader(big_file, server, max_parallel_uploads=1)

    outcome = await uploader.start()

    assert outcome.state is SessionState.PAUSED
    assert server.chunk_numbers() == [1]

    server.on_request = None
    outcome = await uploader.resume()

    assert outcome.state is SessionState.COMPLETED
    # The whole plan is sent again after a resume
    assert server.chunk_numbers() == [1, 1, 2, 3, 4, 5]


@pytest.mark.parametrize("statuses", [{}, {2: [503, 200]}], ids=["in-flight", "retry-while-paused"])
async def test_resume_while_batch_in_flight_sends_skipped_chunks(big_file, statuses):
    pauses = []

    async def pause_and_resume(number):
        if number == 1 and not pauses:
            pauses.append(number)
            uploader.pause()
            await asyncio.sleep(0.05)
            await uploader.resume()

    server = FakeServer(statuses=statuses, on_request=pause_and_resume)
    uploader = make_uploader(big_file, server, max_parallel_uploads=2, delay_before_retry=0.01)

    outcome = await uploader.start()

    assert outcome.state is SessionState.COMPLETED
    assert events_of(uploader, EventType.ERROR) == []
    assert server.stored == {1, 2, 3, 4}
    assert server.chunk_numbers()[-1] == 5
    assert outcome.response == {"url": FINAL_URL}


async def test_start_is_a_noop_while_paused(sample_file):
    server = FakeServer()
    uploader = make_uploader(sample_file, server)
    uploader.pause()

    outcome = await uploader.start()

    assert outcome.state is SessionState.PAUSED
    assert server.requests == []


async def test_blocked_extension_fails_before_any_request(sample_file):
    server = FakeServer()
    errors = []
    uploader = make_uploader(
        sample_file, server, blocked_extensions=["bin"], on_error=lambda uuid, e: errors.append(e)
    )

    outcome = await uploader.start()

    assert outcome.state is SessionState.FAILED
    assert server.requests == []
    assert isinstance(errors[0], ValidationError)


async def test_file_above_max_size_fails_before_any_request(sample_file):
    server = FakeServer()
    uploader = make_uploader(sample_file, server, max_file_size=200)

    outcome = await uploader.start()

    assert isinstance(outcome.error, SizeLimitError)
    assert server.requests == []


def test_invalid_options_are_rejected(sample_file):
    with pytest.raises(ValidationError):
        ChunkedUploader(sample_file, endpoint=ENDPOINT, chunk_size=0)
    with pytest.raises(ValidationError):
        ChunkedUploader(sample_file, endpoint="")


async def test_callbacks_and_event_stream(sample_file):
    server = FakeServer()
    progress = []
    finished = []

    async def on_finish(uuid, response):
        finished.append((uuid, response))

    uploader = make_uploader(
        sample_file,
        server,
        max_parallel_uploads=1,
        auto_start=False,
        on_progress=lambda uuid, value: progress.append(value),
        on_finish=on_finish,
    )

    collected = []

    async def consume():
        async for event in uploader.iter_events():
            collected.append(event.type)

    consumer = asyncio.create_task(consume())
    await uploader.start()
    await asyncio.wait_for(consumer, timeout=1)

    assert progress == [33, 67, 100]
    assert finished == [(uploader.session_id, {"url": FINAL_URL})]
    assert collected == [
        EventType.START,
        EventType.PROGRESS,
        EventType.PROGRESS,
        EventType.PROGRESS,
        EventType.FINISH,
    ]


async def test_create_uploader_auto_starts(sample_file):
    server = FakeServer()
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))

    uploader = await create_uploader(
        sample_file, endpoint=ENDPOINT, chunk_size=100, delay_before_retry=0, client=client
    )

    assert uploader.state is SessionState.COMPLETED
    await uploader.aclose()


async def test_toggle_pause_flips_between_paused_and_running(sample_file):
    server = FakeServer()
    uploader = make_uploader(sample_file, server)

    outcome = await uploader.toggle_pause()
    assert outcome.state is SessionState.PAUSED
    assert server.requests == []

    outcome = await uploader.toggle_pause()
    assert outcome.state is SessionState.COMPLETED


@pytest.mark.parametrize(
    "status, action",
    [(200, "accepted"), (204, "accepted"), (503, "retry"), (504, "retry"), (413, "oversize"), (500, "fatal"), (404, "fatal")],
)
def test_classify_status(status, action):
    assert classify_status(status).value == action
