"""
Tests for line splitting, record decoding and the stream consumer.
"""

import asyncio
import json
import random

import pytest

from autoupdate_stream import (
    CONNECTED_RECORD,
    MAX_LINE_SIZE,
    LineSplitter,
    LineTooLong,
    StreamConsumer,
    parse_change_id,
)
from load_client import StreamError
from tests.fakes import make_session


# =============================================================================
# LINE SPLITTER
# =============================================================================

def test_splitter_joins_lines_across_chunks():
    splitter = LineSplitter()
    assert splitter.feed(b'{"to_cha') == []
    assert splitter.feed(b'nge_id":1}\n{"to_change_id":2}\r\n{"to') == [
        b'{"to_change_id":1}',
        b'{"to_change_id":2}',
    ]
    assert splitter.feed(b'_change_id":3}') == []
    assert splitter.finish() == b'{"to_change_id":3}'
    assert splitter.finish() is None


def test_line_at_limit_is_accepted():
    splitter = LineSplitter(max_line_size=10)
    assert splitter.feed(b"x" * 10) == []
    assert splitter.feed(b"\n") == [b"x" * 10]


def test_line_at_limit_with_crlf_is_accepted():
    splitter = LineSplitter(max_line_size=10)
    assert splitter.feed(b"x" * 10 + b"\r") == []
    assert splitter.feed(b"\n") == [b"x" * 10]


def test_line_one_byte_over_limit_fails_before_newline():
    splitter = LineSplitter(max_line_size=10)
    assert splitter.feed(b"x" * 11) == []
    assert isinstance(splitter.error, LineTooLong)
    with pytest.raises(LineTooLong):
        splitter.feed(b"\n")


def test_line_one_byte_over_limit_fails_in_single_chunk():
    splitter = LineSplitter(max_line_size=10)
    # Nothing after the oversized line is handed out.
    assert splitter.feed(b"x" * 11 + b"\nshort\n") == []
    with pytest.raises(LineTooLong):
        splitter.raise_for_error()
    with pytest.raises(LineTooLong):
        splitter.finish()


def test_lines_before_oversized_line_are_kept():
    splitter = LineSplitter(max_line_size=20)
    lines = splitter.feed(b'{"to_change_id":5}\n' + b"x" * 21 + b"\n")

    assert lines == [b'{"to_change_id":5}']
    with pytest.raises(LineTooLong, match="21 bytes"):
        splitter.raise_for_error()


def test_lines_before_oversized_tail_are_kept():
    splitter = LineSplitter(max_line_size=20)
    assert splitter.feed(b"ok\n" + b"x" * 21) == [b"ok"]
    with pytest.raises(LineTooLong):
        splitter.raise_for_error()


def test_default_limit_boundary():
    splitter = LineSplitter()
    assert splitter.feed(b"a" * MAX_LINE_SIZE + b"\n") == [b"a" * MAX_LINE_SIZE]
    splitter.raise_for_error()

    splitter = LineSplitter()
    assert splitter.feed(b"a" * (MAX_LINE_SIZE + 1) + b"\n") == []
    with pytest.raises(LineTooLong):
        splitter.raise_for_error()


def test_line_too_long_is_stream_error():
    assert issubclass(LineTooLong, StreamError)


# =============================================================================
# RECORD DECODING
# =============================================================================

def test_connected_record_is_change_id_zero():
    assert parse_change_id(CONNECTED_RECORD) == 0
    assert parse_change_id(b'{"connected":true}') == 0


def test_connected_record_must_be_byte_exact():
    # Same JSON, different bytes: decoded as a regular record without to_change_id.
    with pytest.raises(StreamError):
        parse_change_id(b'{"connected": true}')


@pytest.mark.parametrize("change_id", [1, 7, 123456789])
def test_to_change_id_maps_to_its_value(change_id):
    line = json.dumps({"to_change_id": change_id, "from_change_id": 0, "all_data": False}).encode()
    assert parse_change_id(line) == change_id


@pytest.mark.parametrize("line", [
    b"not json",
    b"[1, 2]",
    b'{"from_change_id": 3}',
    b'{"to_change_id": "7"}',
    b'{"to_change_id": 7.5}',
    b'{"to_change_id": true}',
])
def test_unrecognized_records_are_stream_errors(line):
    with pytest.raises(StreamError):
        parse_change_id(line)


# =============================================================================
# STREAM CONSUMER
# =============================================================================

@pytest.mark.asyncio
async def test_consumer_forwards_events_in_order_and_stops_quietly(fake_server, sink, stop):
    fake_server.stream_lines = [CONNECTED_RECORD, b'{"to_change_id":7}', b'{"to_change_id":9}']
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        consumer = StreamConsumer(session)
        task = asyncio.create_task(consumer.consume(sink))

        await sink.wait_for_count(3)
        stop.set()
        count = await asyncio.wait_for(task, timeout=2)

    assert count == 3
    assert sink.change_ids == [0, 7, 9]
    assert sink.failures == []


@pytest.mark.asyncio
async def test_stop_while_blocked_on_read(fake_server, sink, stop):
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        task = asyncio.create_task(StreamConsumer(session).consume(sink))

        await sink.wait_for_count(1)
        await asyncio.sleep(0.05)
        assert not task.done()

        stop.set()
        count = await asyncio.wait_for(task, timeout=1)

    assert count == 1
    assert sink.failures == []


@pytest.mark.asyncio
async def test_peer_close_ends_stream(fake_server, sink, stop):
    fake_server.hold_stream = False
    fake_server.stream_lines = [CONNECTED_RECORD, b'{"to_change_id":2}']
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        count = await asyncio.wait_for(StreamConsumer(session).consume(sink), timeout=2)

    assert count == 2
    assert sink.change_ids == [0, 2]
    assert sink.failures == []
    assert not stop.is_set()


@pytest.mark.asyncio
async def test_malformed_record_is_reported(fake_server, sink, stop):
    fake_server.stream_lines = [CONNECTED_RECORD, b"{broken"]
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        count = await asyncio.wait_for(StreamConsumer(session).consume(sink), timeout=2)

    assert count == 1
    assert sink.change_ids == [0]
    assert [f.kind for f in sink.failures] == ["stream"]
    assert "can not decode json" in sink.failures[0].message


@pytest.mark.asyncio
async def test_oversized_record_is_reported(fake_server, sink, stop):
    fake_server.stream_lines = [CONNECTED_RECORD, b'{"to_change_id":1,"pad":"' + b"x" * 100 + b'"}']
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        consumer = StreamConsumer(session, max_line_size=64)
        count = await asyncio.wait_for(consumer.consume(sink), timeout=2)

    assert count == 1
    assert [f.kind for f in sink.failures] == ["stream"]
    assert "exceeds limit" in sink.failures[0].message


@pytest.mark.asyncio
async def test_records_before_oversized_line_in_same_chunk_are_delivered(fake_server, sink, stop):
    fake_server.hold_stream = False
    fake_server.stream_chunks = [
        CONNECTED_RECORD + b'\n{"to_change_id":5}\n' + b"x" * 127 + b'\n{"to_change_id":6}\n',
    ]
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        consumer = StreamConsumer(session, max_line_size=64)
        count = await asyncio.wait_for(consumer.consume(sink), timeout=2)

    assert count == 2
    assert sink.change_ids == [0, 5]
    assert [f.kind for f in sink.failures] == ["stream"]
    assert "exceeds limit of 64" in sink.failures[0].message


@pytest.mark.asyncio
async def test_batch_reparses_in_order(fake_server, sink, stop):
    rng = random.Random(1234)
    ids = [0] + [rng.randint(1, 10_000) for _ in range(200)]
    body = b"".join(
        (CONNECTED_RECORD if cid == 0 else json.dumps({"to_change_id": cid}).encode()) + b"\n"
        for cid in ids
    )

    chunks = []
    pos = 0
    while pos < len(body):
        size = rng.randint(1, 64)
        chunks.append(body[pos:pos + size])
        pos += size

    fake_server.hold_stream = False
    fake_server.stream_chunks = chunks
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        count = await asyncio.wait_for(StreamConsumer(session).consume(sink), timeout=5)

    assert count == len(ids)
    assert sink.change_ids == ids
    assert sink.failures == []


@pytest.mark.asyncio
async def test_blank_lines_are_skipped_and_tail_is_decoded(fake_server, sink, stop):
    fake_server.hold_stream = False
    fake_server.stream_chunks = [b'{"connected":true}\n\n', b'\r\n{"to_change_id":4}\n', b'{"to_change_id":8}']
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        count = await asyncio.wait_for(StreamConsumer(session).consume(sink), timeout=2)

    assert count == 3
    assert sink.change_ids == [0, 4, 8]
    assert sink.failures == []


@pytest.mark.asyncio
async def test_non_200_stream_is_reported(fake_server, sink, stop):
    fake_server.stream_status = 500
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        count = await StreamConsumer(session).consume(sink)

    assert count == 0
    assert [f.kind for f in sink.failures] == ["stream"]
    assert "500" in sink.failures[0].message


@pytest.mark.asyncio
async def test_consumer_is_single_use(fake_server, sink, stop):
    fake_server.hold_stream = False
    async with make_session(fake_server, sink, stop) as session:
        await session.login()
        consumer = StreamConsumer(session)
        await consumer.consume(sink)

        with pytest.raises(StreamError):
            async for _ in consumer.events():
                pass
