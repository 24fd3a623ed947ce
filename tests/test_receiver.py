"""Tests for ReceiverSession reassembly, consolidation and finalization."""

import os
import random

import pytest

from transfer.errors import ProtocolError
from transfer.framing import decode, encode_cancel, encode_data, encode_end, encode_start
from transfer.models import SessionState, StartMeta, TransferOffer
from transfer.receiver import ReceiverSession, safe_file_name, unique_path
from transfer.sender import SenderSession

CHUNK = 1024


def make_offer(size, name="source.bin", transfer_id="t-recv-0001"):
    return TransferOffer(
        transfer_id=transfer_id,
        file_name=name,
        file_size=size,
        sender_id="peer-a",
        target_id="peer-b",
    )


def build_frames(data, chunk=CHUNK, sequenced=False, transfer_id="t-recv-0001"):
    frames = [encode_start(StartMeta(
        transfer_id=transfer_id,
        file_name="source.bin",
        file_size=len(data),
        chunk_size=chunk,
        sequenced=sequenced,
    ))]
    chunks = [data[i:i + chunk] for i in range(0, len(data), chunk)]
    for i, piece in enumerate(chunks):
        frames.append(encode_data(piece, i if sequenced else None))
    frames.append(encode_end(chunks=len(chunks), total=len(data)))
    return frames


async def feed(receiver, frames, sender_id="peer-a"):
    for raw in frames:
        await receiver.handle_frame(sender_id, decode(raw))


def saved_files(directory):
    return sorted(n for n in os.listdir(directory) if not n.endswith(".part"))


class TestRoundTrip:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ordered", [True, False])
    @pytest.mark.parametrize("size", [0, 1, CHUNK - 1, CHUNK, CHUNK + 1, 10 * CHUNK, 10 * CHUNK + 7])
    async def test_sender_to_receiver(self, tmp_path, make_file, recording_channel, size, ordered):
        path, data = make_file(size)
        channel = recording_channel(ordered=ordered)
        sender = SenderSession(
            "peer-b", path, channel,
            transfer_id="t-recv-0001", file_name="source.bin", total=size, chunk_size=CHUNK,
        )
        assert await sender.run() == SessionState.COMPLETED

        save_dir = tmp_path / "inbox"
        receiver = ReceiverSession("peer-a", make_offer(size), str(save_dir))
        await feed(receiver, channel.frames)

        assert receiver.state == SessionState.COMPLETED
        with open(receiver.saved_path, "rb") as f:
            assert f.read() == data
        assert saved_files(save_dir) == ["source.bin"]

    @pytest.mark.asyncio
    async def test_shuffled_frames_with_duplicates(self, tmp_path):
        data = os.urandom(10 * CHUNK + 7)
        frames = build_frames(data, sequenced=True)
        rng = random.Random(7)
        scrambled = frames + rng.sample(frames[1:-1], 4)
        rng.shuffle(scrambled)

        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))
        await feed(receiver, scrambled)

        assert receiver.state == SessionState.COMPLETED
        with open(receiver.saved_path, "rb") as f:
            assert f.read() == data

    @pytest.mark.asyncio
    async def test_end_before_last_chunk_waits_in_sequenced_mode(self, tmp_path):
        data = os.urandom(3 * CHUNK)
        start, first, second, third, end = build_frames(data, sequenced=True)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))

        await feed(receiver, [start, third, end, first])
        assert receiver.state == SessionState.STREAMING

        await feed(receiver, [second])
        assert receiver.state == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_data_before_start_in_ordered_mode(self, tmp_path):
        data = os.urandom(2 * CHUNK)
        frames = build_frames(data)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))

        await feed(receiver, frames[1:3])
        with pytest.raises(ProtocolError):
            await feed(receiver, frames[3:])


class TestFinalize:

    @pytest.mark.asyncio
    async def test_duplicate_end_is_ignored(self, tmp_path):
        data = os.urandom(2 * CHUNK)
        frames = build_frames(data)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))

        await feed(receiver, frames + [frames[-1]])

        assert receiver.state == SessionState.COMPLETED
        assert saved_files(tmp_path) == ["source.bin"]

    @pytest.mark.asyncio
    async def test_existing_file_is_not_overwritten(self, tmp_path):
        (tmp_path / "source.bin").write_bytes(b"old")
        data = os.urandom(100)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))

        await feed(receiver, build_frames(data))

        assert os.path.basename(receiver.saved_path) == "source (1).bin"
        assert (tmp_path / "source.bin").read_bytes() == b"old"

    @pytest.mark.asyncio
    async def test_incomplete_ordered_transfer_is_aborted(self, tmp_path):
        data = os.urandom(3 * CHUNK)
        frames = build_frames(data)
        del frames[2]
        receiver = ReceiverSession(
            "peer-a", make_offer(len(data)), str(tmp_path), consolidate_threshold=CHUNK
        )

        await feed(receiver, frames)

        assert receiver.state == SessionState.ABORTED
        assert "Incomplete" in receiver.error
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_size_mismatch_aborts(self, tmp_path):
        data = os.urandom(CHUNK)
        receiver = ReceiverSession("peer-a", make_offer(CHUNK + 1), str(tmp_path))

        await feed(receiver, build_frames(data)[:1])

        assert receiver.state == SessionState.ABORTED
        assert "Size mismatch" in receiver.error

    @pytest.mark.asyncio
    async def test_cancel_frame_discards_partial_file(self, tmp_path):
        data = os.urandom(4 * CHUNK)
        frames = build_frames(data)
        receiver = ReceiverSession(
            "peer-a", make_offer(len(data)), str(tmp_path), consolidate_threshold=CHUNK
        )

        await feed(receiver, frames[:3] + [encode_cancel("user")])

        assert receiver.state == SessionState.ABORTED
        assert receiver.error == "Cancelled by sender: user"
        assert os.listdir(tmp_path) == []
        assert receiver.finished
        assert await receiver.wait() == SessionState.ABORTED


class TestConsolidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sequenced", [False, True])
    async def test_memory_stays_under_threshold(self, tmp_path, sequenced):
        threshold = 3 * CHUNK
        data = os.urandom(10 * CHUNK + 7)
        receiver = ReceiverSession(
            "peer-a", make_offer(len(data)), str(tmp_path), consolidate_threshold=threshold
        )

        for raw in build_frames(data, sequenced=sequenced)[:-1]:
            await receiver.handle_frame("peer-a", decode(raw))
            assert receiver.buffered_bytes < threshold
            assert (
                receiver.last_consolidation_offset + receiver.buffered_bytes
                == receiver.bytes_received
            )
            assert receiver.bytes_received <= receiver.expected_total

        await feed(receiver, build_frames(data, sequenced=sequenced)[-1:])
        with open(receiver.saved_path, "rb") as f:
            assert f.read() == data


class TestFrameValidation:

    @pytest.mark.asyncio
    async def test_frame_from_other_sender_is_rejected(self, tmp_path):
        data = os.urandom(CHUNK)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))

        with pytest.raises(ProtocolError):
            await feed(receiver, build_frames(data)[:2], sender_id="peer-c")
        assert receiver.bytes_received == 0

    @pytest.mark.asyncio
    async def test_start_for_other_transfer_is_rejected(self, tmp_path):
        data = os.urandom(CHUNK)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))

        with pytest.raises(ProtocolError):
            await feed(receiver, build_frames(data, transfer_id="someone-else")[:1])
        assert receiver.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_out_of_range_chunk_is_rejected(self, tmp_path):
        data = os.urandom(2 * CHUNK)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))
        await feed(receiver, build_frames(data, sequenced=True)[:1])

        with pytest.raises(ProtocolError):
            await feed(receiver, [encode_data(b"x" * CHUNK, 5)])

    @pytest.mark.asyncio
    async def test_short_chunk_before_the_last_is_rejected(self, tmp_path):
        data = os.urandom(3 * CHUNK)
        start, first, second, third, end = build_frames(data, sequenced=True)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))
        await feed(receiver, [start, first, third])

        with pytest.raises(ProtocolError):
            await feed(receiver, [encode_data(b"x" * (CHUNK - 1), 1)])
        await feed(receiver, [end])

        assert receiver.state == SessionState.STREAMING
        assert receiver.bytes_received == 2 * CHUNK

        await feed(receiver, [second])
        assert receiver.state == SessionState.COMPLETED
        with open(receiver.saved_path, "rb") as f:
            assert f.read() == data

    @pytest.mark.asyncio
    async def test_short_chunk_overtaking_start_is_dropped(self, tmp_path):
        data = os.urandom(2 * CHUNK + 5)
        start, first, second, third, end = build_frames(data, sequenced=True)
        receiver = ReceiverSession("peer-a", make_offer(len(data)), str(tmp_path))

        await feed(receiver, [encode_data(b"x" * 5, 0), second, third, start])

        assert receiver.bytes_received == CHUNK + 5
        await feed(receiver, [first, end])
        assert receiver.state == SessionState.COMPLETED
        with open(receiver.saved_path, "rb") as f:
            assert f.read() == data

    @pytest.mark.asyncio
    async def test_too_much_ordered_data_is_rejected(self, tmp_path):
        receiver = ReceiverSession("peer-a", make_offer(10), str(tmp_path))

        with pytest.raises(ProtocolError):
            await feed(receiver, [encode_data(b"x" * 11)])


class TestNames:

    def test_safe_file_name_strips_directories(self):
        assert safe_file_name("../../etc/passwd") == "passwd"
        assert safe_file_name("C:\\Users\\me\\photo.jpg") == "photo.jpg"
        assert safe_file_name("..") == "received_file"

    def test_unique_path_numbers_collisions(self, tmp_path):
        (tmp_path / "a.txt").write_text("1")
        (tmp_path / "a (1).txt").write_text("2")
        assert unique_path(str(tmp_path), "a.txt") == str(tmp_path / "a (2).txt")
