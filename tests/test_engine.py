"""End-to-end tests: two engines talking, listeners, timeouts and exclusivity."""

import threading

import pytest

from framelink_mcp.engine import FrameEngine
from framelink_mcp.protocol.config import FrameConfig, Peer
from framelink_mcp.protocol.events import EventKind, EventLog
from framelink_mcp.protocol.framing import encode_frame
from framelink_mcp.protocol.message import ListenerResult, Message
from framelink_mcp.utils.checksum import ChecksumType


class Wire:
    """Buffers what one engine writes so the test decides when it arrives."""

    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    def write(self, data: bytes) -> None:
        self.chunks.append(bytes(data))

    def take(self) -> bytes:
        data = b"".join(self.chunks)
        self.chunks.clear()
        return data


def _pair(**overrides):
    """A master and a slave engine with their outgoing wires."""
    to_slave, to_master = Wire(), Wire()
    master_log, slave_log = EventLog(), EventLog()
    master = FrameEngine(
        FrameConfig(peer=Peer.MASTER, **overrides), to_slave.write, master_log
    )
    slave = FrameEngine(
        FrameConfig(peer=Peer.SLAVE, **overrides), to_master.write, slave_log
    )
    return master, slave, to_slave, to_master, master_log, slave_log


@pytest.mark.parametrize(
    "checksum",
    [ChecksumType.NONE, ChecksumType.XOR, ChecksumType.CRC8, ChecksumType.CRC16, ChecksumType.CRC32],
)
def test_round_trip(checksum):
    """A frame sent by the master decodes on the slave unchanged."""
    master, slave, to_slave, _, _, slave_log = _pair(checksum=checksum, sendbuf_len=16)
    seen: list[Message] = []
    slave.add_generic_listener(lambda tf, msg: seen.append(msg) or ListenerResult.STAY)

    payload = bytes(range(1, 60))
    assert master.send_simple(0x13, payload)
    slave.accept(to_slave.take())

    assert len(seen) == 1
    assert seen[0].type == 0x13
    assert seen[0].length == len(payload)
    assert seen[0].payload == payload
    assert len(slave_log) == 0


def test_round_trip_wide_fields():
    master, slave, to_slave, _, _, _ = _pair(
        id_bytes=2, len_bytes=2, type_bytes=4, checksum=ChecksumType.CRC16
    )
    seen: list[Message] = []
    slave.add_type_listener(0x01020304, lambda tf, msg: seen.append(msg) or ListenerResult.STAY)

    payload = bytes(300)
    msg = Message(type=0x01020304, payload=payload)
    master.send(msg)
    slave.accept(to_slave.take())

    assert msg.frame_id == 0x8000
    assert seen[0].frame_id == 0x8000
    assert seen[0].payload == payload


def test_query_response_correlation():
    """A response with the query's ID reaches the query listener only."""
    master, slave, to_slave, to_master, _, _ = _pair()
    replies: list[Message] = []

    def echo(tf, msg):
        tf.respond(Message(type=msg.type, payload=b"pong", frame_id=msg.frame_id))
        return ListenerResult.STAY

    slave.add_type_listener(0x01, echo)

    def on_reply(tf, msg):
        replies.append(msg)
        return ListenerResult.CLOSE

    query = Message(type=0x01, payload=b"ping")
    assert master.query(query, on_reply)
    assert master.listener_counts()["id"] == 1

    slave.accept(to_slave.take())
    response = to_master.take()
    master.accept(response)

    assert len(replies) == 1
    assert replies[0].frame_id == query.frame_id
    assert replies[0].payload == b"pong"
    assert master.listener_counts()["id"] == 0

    # a duplicate reply no longer has a listener
    master.accept(response)
    assert len(replies) == 1


def test_stay_keeps_id_listener():
    """STAY leaves the ID listener registered for later frames."""
    master, _, _, _, _, _ = _pair()
    calls: list[Message] = []
    query = Message(type=0x01)
    master.query(query, lambda tf, msg: calls.append(msg) or ListenerResult.STAY)

    reply = encode_frame(master.config, Message(type=0x01, frame_id=query.frame_id))
    master.accept(reply)
    master.accept(reply)
    assert len(calls) == 2
    assert master.listener_counts()["id"] == 1


def test_id_listener_takes_precedence_over_type_listener():
    """ID listeners see a frame before type listeners."""
    master, _, _, _, _, _ = _pair()
    by_id: list[Message] = []
    by_type: list[Message] = []
    master.add_type_listener(0x01, lambda tf, msg: by_type.append(msg) or ListenerResult.STAY)

    query = Message(type=0x01)
    master.query(query, lambda tf, msg: by_id.append(msg) or ListenerResult.STAY)
    master.accept(encode_frame(master.config, Message(type=0x01, frame_id=query.frame_id)))

    assert len(by_id) == 1
    assert by_type == []


def test_next_falls_through_to_type_then_generic():
    """NEXT passes the frame on to the next tier."""
    master, _, _, _, _, _ = _pair()
    order: list[str] = []

    def id_next(tf, msg):
        order.append("id")
        return ListenerResult.NEXT

    def type_next(tf, msg):
        order.append("type")
        return ListenerResult.NEXT

    def generic(tf, msg):
        order.append("generic")
        return ListenerResult.STAY

    query = Message(type=0x05)
    master.query(query, id_next)
    master.add_type_listener(0x05, type_next)
    master.add_generic_listener(generic)
    master.accept(encode_frame(master.config, Message(type=0x05, frame_id=query.frame_id)))

    assert order == ["id", "type", "generic"]


def test_first_type_listener_wins():
    """Only the first claiming type listener runs."""
    master, _, _, _, _, _ = _pair()
    hits: list[str] = []
    master.add_type_listener(0x07, lambda tf, msg: hits.append("a") or ListenerResult.STAY)
    master.add_type_listener(0x07, lambda tf, msg: hits.append("b") or ListenerResult.STAY)
    master.accept(encode_frame(master.config, Message(type=0x07, frame_id=0x01)))
    assert hits == ["a"]


def test_close_removes_type_listener():
    master, _, _, _, log, _ = _pair()
    hits: list[Message] = []
    master.add_type_listener(0x07, lambda tf, msg: hits.append(msg) or ListenerResult.CLOSE)
    frame = encode_frame(master.config, Message(type=0x07, frame_id=0x01))
    master.accept(frame)
    master.accept(frame)

    assert len(hits) == 1
    assert master.listener_counts()["type"] == 0
    assert log.count(EventKind.UNHANDLED_MESSAGE) == 1


def test_userdata_round_trip_and_isolation():
    """ID listener userdata is kept across calls and hidden from type listeners."""
    master, _, _, _, _, _ = _pair()
    seen: list[object] = []

    def on_reply(tf, msg):
        seen.append(msg.userdata)
        msg.userdata = "updated"
        return ListenerResult.NEXT

    def on_type(tf, msg):
        seen.append(msg.userdata)
        return ListenerResult.STAY

    query = Message(type=0x02, userdata="ctx")
    master.query(query, on_reply)
    master.add_type_listener(0x02, on_type)

    reply = encode_frame(master.config, Message(type=0x02, frame_id=query.frame_id))
    master.accept(reply)
    master.accept(reply)

    assert seen == ["ctx", None, "updated", None]


def test_unhandled_message_is_reported():
    master, _, _, _, log, _ = _pair()
    master.accept(encode_frame(master.config, Message(type=0x42, frame_id=0x03)))
    assert log.count(EventKind.UNHANDLED_MESSAGE) == 1


def test_listener_exception_is_reported_and_skipped():
    """A raising listener is reported and treated as NEXT."""
    master, _, _, _, log, _ = _pair()
    seen: list[Message] = []

    def broken(tf, msg):
        raise RuntimeError("boom")

    master.add_type_listener(0x09, broken)
    master.add_generic_listener(lambda tf, msg: seen.append(msg) or ListenerResult.STAY)
    master.accept(encode_frame(master.config, Message(type=0x09, frame_id=0x01)))

    assert log.count(EventKind.LISTENER_ERROR) == 1
    assert len(seen) == 1


def test_query_timeout_fires_once():
    """An unanswered query calls its timeout listener exactly once."""
    master, _, _, _, log, _ = _pair()
    timeouts: list[FrameEngine] = []
    master.query(Message(type=0x01), lambda tf, msg: ListenerResult.STAY, timeouts.append, 5)

    for _ in range(4):
        master.tick()
    assert timeouts == []

    master.tick()
    assert timeouts == [master]
    assert master.listener_counts()["id"] == 0
    assert log.count(EventKind.ID_LISTENER_EXPIRED) == 1

    for _ in range(20):
        master.tick()
    assert len(timeouts) == 1


def test_response_before_deadline_prevents_timeout():
    master, _, _, _, _, _ = _pair()
    timeouts: list[FrameEngine] = []
    query = Message(type=0x01)
    master.query(query, lambda tf, msg: ListenerResult.CLOSE, timeouts.append, 5)

    for _ in range(4):
        master.tick()
    master.accept(encode_frame(master.config, Message(type=0x01, frame_id=query.frame_id)))
    for _ in range(10):
        master.tick()

    assert timeouts == []


def test_renew_restarts_countdown():
    """RENEW restarts the ID listener's timeout."""
    master, _, _, _, _, _ = _pair()
    timeouts: list[FrameEngine] = []
    query = Message(type=0x01)
    master.query(query, lambda tf, msg: ListenerResult.RENEW, timeouts.append, 5)

    for _ in range(4):
        master.tick()
    master.accept(encode_frame(master.config, Message(type=0x01, frame_id=query.frame_id)))
    for _ in range(4):
        master.tick()
    assert timeouts == []

    master.tick()
    assert len(timeouts) == 1


def test_zero_timeout_never_expires():
    """A zero timeout keeps the ID listener until removed."""
    master, _, _, _, _, _ = _pair()
    master.query(Message(type=0x01), lambda tf, msg: ListenerResult.STAY)
    for _ in range(500):
        master.tick()
    assert master.listener_counts()["id"] == 1


def test_pending_query_ids_are_not_reused():
    """After the counter wraps, an ID still awaiting a response is skipped."""
    master, _, _, _, _, _ = _pair()
    first = Message(type=0x01)
    master.query(first, lambda tf, msg: ListenerResult.STAY)
    assert first.frame_id == 0x80

    for _ in range(127):
        master.send_simple(0x02)

    second = Message(type=0x01)
    master.query(second, lambda tf, msg: ListenerResult.STAY)
    assert second.frame_id == 0x81


def test_query_fails_when_id_table_full():
    """A full ID table refuses the query and nothing is written."""
    to_slave = []
    log = EventLog()
    master = FrameEngine(FrameConfig(max_id_listeners=1), to_slave.append, log)
    assert master.query(Message(type=0x01), lambda tf, msg: ListenerResult.STAY)
    written = len(to_slave)

    assert master.query(Message(type=0x01), lambda tf, msg: ListenerResult.STAY) is False
    assert len(to_slave) == written
    assert not master.tx_busy
    assert log.count(EventKind.LISTENER_TABLE_FULL) == 1


def test_type_and_generic_tables_are_bounded():
    log = EventLog()
    engine = FrameEngine(
        FrameConfig(max_type_listeners=2, max_generic_listeners=1), lambda d: None, log
    )
    listener = lambda tf, msg: ListenerResult.STAY  # noqa: E731
    assert engine.add_type_listener(1, listener)
    assert engine.add_type_listener(2, listener)
    assert engine.add_type_listener(3, listener) is False
    assert engine.add_generic_listener(listener)
    assert engine.add_generic_listener(listener) is False
    assert log.count(EventKind.LISTENER_TABLE_FULL) == 2


def test_remove_listeners_is_idempotent():
    """Removing an absent listener returns False and reports it."""
    log = EventLog()
    engine = FrameEngine(FrameConfig(), lambda d: None, log)

    def listener(tf, msg):
        return ListenerResult.STAY

    engine.add_type_listener(0x10, listener)
    engine.add_generic_listener(listener)

    assert engine.remove_type_listener(0x10)
    assert engine.remove_type_listener(0x10) is False
    assert engine.remove_generic_listener(listener)
    assert engine.remove_generic_listener(listener) is False
    assert engine.remove_id_listener(0x80) is False
    assert engine.renew_id_listener(0x80) is False
    assert log.count(EventKind.LISTENER_NOT_FOUND) == 4


def test_listener_may_remove_itself_and_close():
    engine = FrameEngine(FrameConfig(), lambda d: None)

    def once(tf, msg):
        tf.remove_type_listener(0x10)
        return ListenerResult.CLOSE

    engine.add_type_listener(0x10, once)
    engine.accept(encode_frame(engine.config, Message(type=0x10, frame_id=1)))
    assert engine.listener_counts()["type"] == 0


def test_query_multipart_registers_listener():
    """A multipart query receives its response like a plain query."""
    master, slave, to_slave, to_master, _, _ = _pair()
    replies: list[Message] = []
    slave.add_type_listener(
        0x20,
        lambda tf, msg: tf.respond(Message(type=0x20, payload=msg.payload[:1], frame_id=msg.frame_id))
        and ListenerResult.STAY,
    )

    query = Message(type=0x20, length=3)
    assert master.query_multipart_begin(query, lambda tf, msg: replies.append(msg) or ListenerResult.CLOSE)
    master.send_multipart_chunk(b"xyz")
    master.send_multipart_end()

    slave.accept(to_slave.take())
    master.accept(to_master.take())
    assert len(replies) == 1
    assert replies[0].payload == b"x"


def test_parser_stall_timeout_via_engine_tick():
    """Engine ticks drive the parser stall timeout."""
    log = EventLog()
    engine = FrameEngine(FrameConfig(parser_timeout_ticks=10), lambda d: None, log)
    seen: list[Message] = []
    engine.add_generic_listener(lambda tf, msg: seen.append(msg) or ListenerResult.STAY)

    engine.accept(b"\x01\x80\x05")
    for _ in range(10):
        engine.tick()
    engine.accept(bytes([0x01, 0x81, 0x00, 0x10]))

    assert log.count(EventKind.PARSER_TIMEOUT) == 1
    assert len(seen) == 1
    assert seen[0].frame_id == 0x81


@pytest.mark.parametrize("use_mutex", [False, True])
def test_concurrent_send_is_rejected(use_mutex):
    """A second sender fails fast and the first frame is untouched."""
    entered = threading.Event()
    release = threading.Event()
    out: list[bytes] = []

    def slow_write(data: bytes) -> None:
        out.append(bytes(data))
        entered.set()
        release.wait(2)

    log = EventLog()
    engine = FrameEngine(FrameConfig(use_sof_byte=False, use_mutex=use_mutex), slow_write, log)
    results: list[bool] = []
    sender = threading.Thread(target=lambda: results.append(engine.send_simple(0x10, b"\x01\x02")))
    sender.start()
    assert entered.wait(2)

    assert engine.send_simple(0x11, b"\x09") is False
    release.set()
    sender.join(2)

    assert results == [True]
    assert b"".join(out) == bytes([0x80, 0x02, 0x10, 0x01, 0x02])
    assert log.count(EventKind.TX_CLAIM_UNAVAILABLE) == 1
    assert not engine.tx_busy


def test_write_callback_is_required():
    with pytest.raises(ValueError):
        FrameEngine(FrameConfig())


def test_userdata_travels_on_messages_only():
    """Per-query state rides on the message; the engine keeps no user slots."""
    engine = FrameEngine(FrameConfig(), lambda d: None)
    seen = []
    query = Message(type=0x10, userdata="ctx")
    engine.query(query, lambda tf, msg: seen.append(msg.userdata) or ListenerResult.CLOSE)
    engine.accept(encode_frame(FrameConfig(), Message(type=0x10, frame_id=query.frame_id)))
    assert seen == ["ctx"]
    assert not hasattr(engine, "userdata")
    assert not hasattr(engine, "usertag")
