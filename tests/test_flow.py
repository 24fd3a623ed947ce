"""Tests for backpressure and pacing."""

import asyncio
import time

import pytest

from transfer.flow import FlowController
from transfer.sender import SenderSession


@pytest.mark.asyncio
async def test_wait_ready_returns_at_once_below_high_water(recording_channel):
    flow = FlowController(recording_channel(), high_water=100)
    await flow.wait_ready()
    assert flow.waits == 0


@pytest.mark.asyncio
async def test_wait_ready_suspends_until_drained(draining_channel):
    channel = draining_channel(drain_step=10)
    channel.buffered = 150
    flow = FlowController(channel, high_water=100, poll_interval=0)
    await flow.wait_ready()
    assert flow.waits == 1
    assert channel.buffered <= 100


@pytest.mark.asyncio
async def test_wait_ready_stops_on_cancel(draining_channel):
    channel = draining_channel(drain_step=0)
    channel.buffered = 1000
    flow = FlowController(channel, high_water=100, poll_interval=0)
    await asyncio.wait_for(flow.wait_ready(lambda: True), timeout=1)


@pytest.mark.asyncio
async def test_rate_cap_slows_sending(recording_channel):
    flow = FlowController(recording_channel(), rate_limit=1_000_000)
    flow.start()
    started = time.monotonic()
    for sent in (50_000, 100_000, 150_000, 200_000):
        await flow.pace(sent)
    assert time.monotonic() - started >= 0.18


@pytest.mark.asyncio
async def test_sender_never_overfills_buffer(tmp_path, draining_channel):
    path = tmp_path / "big.bin"
    path.write_bytes(b"\x5a" * (1024 * 1024))
    chunk_size = 16 * 1024
    high_water = 64 * 1024
    channel = draining_channel(drain_step=4 * 1024)

    session = SenderSession(
        "peer-b",
        str(path),
        channel,
        transfer_id="t-flow",
        file_name="big.bin",
        total=1024 * 1024,
        chunk_size=chunk_size,
        flow=FlowController(channel, high_water=high_water, poll_interval=0),
    )
    await session.run()

    assert session.flow.waits > 0
    # a frame is only sent while at or below high water
    assert channel.peak <= high_water + chunk_size + 1
