import json
import random

from codec import Frame, FrameKind
from conftest import drain, make_session
from hub import BroadcastItem

JOIN_STATUS = {"type": "status", "message": "User has joined. You can now share files.", "ready": True}


def chat(sender, text="hi") -> BroadcastItem:
    payload = json.dumps({"type": "chat", "msg": text}).encode()
    return BroadcastItem(FrameKind.TEXT, payload, sender)


def file_item(sender, data=b"0123456789", **fields) -> BroadcastItem:
    metadata = {"type": "file_metadata", "name": "x.png", "size": len(data), **fields}
    return BroadcastItem(FrameKind.BINARY, data, sender, metadata)


async def test_single_member_gets_no_status(hub) -> None:
    a = make_session()
    hub.register(a)
    await hub.wait_idle()
    assert hub.members == {a}
    assert await drain(a) == []


async def test_second_member_triggers_status_for_everyone(hub) -> None:
    a, b, c = make_session(), make_session(), make_session()
    hub.register(a)
    hub.register(b)
    await hub.wait_idle()
    for session in (a, b):
        frames = await drain(session)
        assert [json.loads(f.payload) for f in frames] == [JOIN_STATUS]

    hub.register(c)
    await hub.wait_idle()
    for session in (a, b, c):
        frames = await drain(session)
        assert [json.loads(f.payload) for f in frames] == [JOIN_STATUS]


async def test_duplicate_register_is_ignored(hub) -> None:
    a = make_session()
    hub.register(a)
    hub.register(a)
    await hub.wait_idle()
    assert hub.member_count == 1
    assert await drain(a) == []


async def test_unregister_removes_and_closes_outbox_once(hub) -> None:
    a, b = make_session(), make_session()
    hub.register(a)
    hub.register(b)
    hub.unregister(a)
    hub.unregister(a)
    await hub.wait_idle()

    assert hub.members == {b}
    assert a.outbox.closed
    assert a.close_outbox() is False
    assert not b.outbox.closed


async def test_unregister_of_stranger_is_ignored(hub) -> None:
    a, stranger = make_session(), make_session()
    hub.register(a)
    hub.unregister(stranger)
    await hub.wait_idle()
    assert hub.members == {a}
    assert not stranger.outbox.closed


async def test_membership_tracks_register_and_unregister_sequences(hub) -> None:
    rng = random.Random(7)
    sessions = [make_session() for _ in range(6)]
    expected = set()
    for _ in range(60):
        session = rng.choice(sessions)
        if rng.random() < 0.5:
            hub.register(session)
            if not session.outbox.closed:
                expected.add(session)
        else:
            hub.unregister(session)
            if session in expected:
                expected.discard(session)
                # closed outboxes can not be reused, swap in a fresh session
                sessions[sessions.index(session)] = make_session()
        await hub.wait_idle()
        for s in sessions:
            await drain(s)
        assert hub.members == expected


async def test_text_broadcast_skips_sender_and_stamps_flag(hub) -> None:
    a, b, c = make_session(), make_session(), make_session()
    for s in (a, b, c):
        hub.register(s)
    await hub.wait_idle()
    for s in (a, b, c):
        await drain(s)

    hub.broadcast(chat(a))
    await hub.wait_idle()

    assert await drain(a) == []
    for s in (b, c):
        frames = await drain(s)
        assert len(frames) == 1
        assert frames[0].kind is FrameKind.TEXT
        assert json.loads(frames[0].payload) == {"type": "chat", "msg": "hi", "isSender": False}


async def test_malformed_text_is_dropped_without_eviction(hub) -> None:
    a, b = make_session(), make_session()
    hub.register(a)
    hub.register(b)
    await hub.wait_idle()
    await drain(a)
    await drain(b)

    hub.broadcast(BroadcastItem(FrameKind.TEXT, b"{broken", a))
    await hub.wait_idle()

    assert await drain(b) == []
    assert hub.members == {a, b}


async def test_file_broadcast_sends_metadata_then_payload(hub) -> None:
    a, b, c = make_session(), make_session(), make_session()
    for s in (a, b, c):
        hub.register(s)
    await hub.wait_idle()
    for s in (a, b, c):
        await drain(s)

    item = file_item(a)
    hub.broadcast(item)
    await hub.wait_idle()

    assert await drain(a) == []
    for s in (b, c):
        metadata, payload = await drain(s)
        assert metadata.kind is FrameKind.TEXT
        assert json.loads(metadata.payload) == {
            "type": "file_metadata",
            "name": "x.png",
            "size": 10,
            "isSender": False,
        }
        assert payload.kind is FrameKind.BINARY
        assert payload.payload == b"0123456789"
    assert "isSender" not in item.metadata


async def test_unencodable_metadata_skips_whole_pair(hub) -> None:
    a, b = make_session(), make_session()
    hub.register(a)
    hub.register(b)
    await hub.wait_idle()
    await drain(b)

    hub.broadcast(file_item(a, size=float("inf")))
    await hub.wait_idle()

    assert await drain(b) == []
    assert hub.members == {a, b}


async def test_overflow_evicts_slow_recipient(hub) -> None:
    capacity = 3
    a, slow = make_session(), make_session(capacity=capacity)
    hub.register(slow)
    hub.register(a)
    await hub.wait_idle()
    await drain(a)
    await drain(slow)

    for i in range(capacity):
        hub.broadcast(chat(a, f"m{i}"))
    await hub.wait_idle()
    assert slow in hub.members
    assert slow.outbox.pending == capacity

    hub.broadcast(chat(a, "overflow"))
    await hub.wait_idle()
    assert slow not in hub.members
    assert slow.outbox.closed

    hub.broadcast(chat(a, "after"))
    await hub.wait_idle()
    frames = await drain(slow)
    assert [json.loads(f.payload)["msg"] for f in frames] == ["m0", "m1", "m2"]
    assert await slow.outbox.get() is None


async def test_register_status_evicts_full_member(hub) -> None:
    slow = make_session(capacity=1)
    hub.register(slow)
    await hub.wait_idle()
    assert slow.offer(Frame.text(b"{}"))

    a = make_session()
    hub.register(a)
    await hub.wait_idle()

    assert hub.members == {a}
    assert slow.outbox.closed
    assert [json.loads(f.payload) for f in await drain(a)] == [JOIN_STATUS]


async def test_binary_eviction_skips_payload(hub) -> None:
    a, b = make_session(), make_session(capacity=1)
    hub.register(b)
    hub.register(a)
    await hub.wait_idle()
    await drain(b)

    hub.broadcast(file_item(a))
    await hub.wait_idle()

    assert b not in hub.members
    frames = await drain(b)
    assert len(frames) == 1
    assert frames[0].kind is FrameKind.TEXT
    assert await b.outbox.get() is None


def deeply_nested_chat(depth: int = 100000) -> bytes:
    return b'{"type":"chat","x":' + b"[" * depth + b"]" * depth + b"}"


async def test_undecodable_nesting_drops_item_and_keeps_room(hub) -> None:
    a, b = make_session(), make_session()
    hub.register(a)
    hub.register(b)
    await hub.wait_idle()
    await drain(b)

    hub.broadcast(BroadcastItem(FrameKind.TEXT, deeply_nested_chat(), a))
    hub.broadcast(chat(a, "after"))
    await hub.wait_idle()

    assert not hub.closed
    assert hub.members == {a, b}
    assert [json.loads(f.payload)["msg"] for f in await drain(b)] == ["after"]


async def test_unexpected_failure_in_one_event_does_not_stop_loop(hub, monkeypatch) -> None:
    a, b, c = make_session(), make_session(), make_session()
    for s in (a, b, c):
        hub.register(s)
    await hub.wait_idle()
    for s in (a, b, c):
        await drain(s)

    def broken_offer(frame):
        raise RuntimeError("boom")

    monkeypatch.setattr(b, "offer", broken_offer)
    hub.broadcast(chat(a, "first"))
    await hub.wait_idle()
    monkeypatch.undo()

    hub.broadcast(chat(a, "second"))
    await hub.wait_idle()

    assert not hub.closed
    assert [json.loads(f.payload)["msg"] for f in await drain(b)] == ["second"]
    assert "second" in [json.loads(f.payload)["msg"] for f in await drain(c)]
