import base64
import json
import os
import socket
import tempfile
import threading
import unittest
from pathlib import Path


def _boundary(content: bytes, t: float = 100.0, **kw):
    from turnrelay.kernel.detector import TurnBoundary

    kw.setdefault("byte_length", len(content))
    return TurnBoundary(content=content, started_at=t, completed_at=t + 1.0, **kw)


def _broker(*, ring_depth: int = 32, max_closed: int = 16, max_turn_bytes: int = 4 * 1024 * 1024, clipboard=None):
    from turnrelay.daemon.broker import Broker
    from turnrelay.kernel.settings import DetectorSettings, RegistrySettings, RelaySettings, SinkSettings

    sinks = SinkSettings(delivery_timeout_s=2.0)
    if clipboard is not None:
        sinks = SinkSettings(delivery_timeout_s=2.0, clipboard_commands=clipboard)
    settings = RelaySettings(
        detector=DetectorSettings(max_turn_bytes=max_turn_bytes, require_input=False),
        registry=RegistrySettings(ring_depth=ring_depth, max_closed_sessions=max_closed),
        sinks=sinks,
    )
    return Broker(settings)


class TestBrokerSessions(unittest.TestCase):
    def test_register_assigns_ids_and_rejects_duplicates(self) -> None:
        from turnrelay.errors import DuplicateSession, InvalidArgs

        b = _broker()
        self.assertEqual(b.register_session().session_id, "s1")
        self.assertEqual(b.register_session("work").session_id, "work")
        self.assertEqual(b.register_session().session_id, "s2")
        with self.assertRaises(DuplicateSession):
            b.register_session("work")
        with self.assertRaises(InvalidArgs):
            b.register_session("has space")
        ids = [s.session_id for s in b.list_sessions()]
        self.assertEqual(ids, ["s1", "work", "s2"])

    def test_auto_ids_skip_operator_chosen_ones(self) -> None:
        b = _broker()
        b.register_session("s1")
        self.assertEqual(b.register_session().session_id, "s2")

    def test_unregister_is_idempotent_and_keeps_turns(self) -> None:
        b = _broker()
        b.register_session("s1")
        b.report_turn("s1", _boundary(b"kept"))
        info = b.unregister_session("s1")
        self.assertEqual(info.status, "closed")
        self.assertIsNotNone(info.closed_at)
        self.assertEqual(b.unregister_session("s1").status, "closed")
        self.assertIsNone(b.unregister_session("nope"))
        self.assertEqual(b.get_turn("s1:1").content, b"kept")
        self.assertEqual(b.capture("s1").turn_id, "s1:1")

    def test_closed_session_accepts_late_report_and_resumes_on_reregister(self) -> None:
        b = _broker()
        b.register_session("s1")
        b.report_turn("s1", _boundary(b"a"))
        b.unregister_session("s1")
        late = b.report_turn("s1", _boundary(b"final", interrupted=True))
        self.assertEqual(late.turn_id, "s1:2")
        self.assertTrue(late.interrupted)

        info = b.register_session("s1")
        self.assertEqual(info.status, "active")
        self.assertEqual(info.turn_count, 2)
        self.assertEqual(b.report_turn("s1", _boundary(b"b")).turn_id, "s1:3")

    def test_closed_sessions_are_evicted_oldest_first(self) -> None:
        from turnrelay.errors import SessionNotFound, TurnNotFound

        b = _broker(max_closed=1)
        for sid in ("a1", "a2"):
            b.register_session(sid)
            b.report_turn(sid, _boundary(sid.encode()))
        b.capture("a1")
        b.unregister_session("a1")
        b.unregister_session("a2")

        with self.assertRaises(SessionNotFound):
            b.list_turns("a1")
        with self.assertRaises(TurnNotFound):
            b.get_turn("a1:1")
        self.assertEqual([t.turn_id for t in b.list_turns("a2")], ["a2:1"])
        # The captured turn outlives its session.
        self.assertEqual(b.relay_turn().content, b"a1")

    def test_evicted_session_id_never_reissues_turn_ids(self) -> None:
        b = _broker(max_closed=0)
        b.register_session("work")
        old = b.report_turn("work", _boundary(b"old secret"))
        b.capture_by_id(old.turn_id)
        b.unregister_session("work")

        info = b.register_session("work")
        self.assertEqual(info.next_seq, 2)
        new = b.report_turn("work", _boundary(b"new"))
        self.assertEqual(new.turn_id, "work:2")
        self.assertEqual(b.relay_turn().turn_id, "work:1")
        self.assertEqual(b.relay_turn().content, b"old secret")
        self.assertEqual(b.get_turn("work:2").content, b"new")

    def test_auto_ids_skip_evicted_sessions(self) -> None:
        b = _broker(max_closed=0)
        self.assertEqual(b.register_session().session_id, "s1")
        b.unregister_session("s1")
        self.assertEqual(b.register_session().session_id, "s2")


class TestBrokerTurns(unittest.TestCase):
    def test_report_list_get(self) -> None:
        from turnrelay.errors import SessionNotFound, TurnNotFound

        b = _broker(ring_depth=2)
        b.register_session("s1")
        for word in (b"one", b"two", b"three"):
            b.report_turn("s1", _boundary(word))
        self.assertEqual([t.turn_id for t in b.list_turns("s1")], ["s1:3", "s1:2"])
        self.assertEqual([t.turn_id for t in b.list_turns("s1", limit=1)], ["s1:3"])
        self.assertEqual(b.get_turn("s1:2").content, b"two")
        with self.assertRaises(TurnNotFound):
            b.get_turn("s1:1")
        with self.assertRaises(TurnNotFound):
            b.get_turn("ghost:1")
        with self.assertRaises(SessionNotFound):
            b.report_turn("ghost", _boundary(b"x"))
        with self.assertRaises(SessionNotFound):
            b.list_turns("ghost")

    def test_report_truncates_oversized_content(self) -> None:
        b = _broker(max_turn_bytes=8)
        b.register_session("s1")
        t = b.report_turn("s1", _boundary(b"0123456789abcdef"))
        self.assertEqual(t.content, b"01234567")
        self.assertTrue(t.truncated)
        self.assertEqual(t.byte_length, 16)

    def test_empty_report_is_rejected(self) -> None:
        from turnrelay.errors import InvalidArgs

        b = _broker()
        b.register_session("s1")
        with self.assertRaises(InvalidArgs):
            b.report_turn("s1", _boundary(b"", byte_length=0))

    def test_broker_hosted_detection(self) -> None:
        from turnrelay.errors import InvalidArgs

        b = _broker()
        b.register_session("s1", broker_detect=True, require_input=False)
        self.assertEqual(b.feed_output("s1", b"Hel", now=0.0), [])
        self.assertEqual(b.feed_output("s1", b"lo", now=0.1), [])
        turns = b.tick(now=5.0)
        self.assertEqual([(t.turn_id, t.content) for t in turns], [("s1:1", b"Hello")])

        b.feed_output("s1", b"cut off", now=6.0)
        b.unregister_session("s1", now=6.1)
        last = b.get_turn("s1:2")
        self.assertTrue(last.interrupted)
        self.assertEqual(last.content, b"cut off")

        b.register_session("plain")
        with self.assertRaises(InvalidArgs):
            b.feed_output("plain", b"x", now=0.0)

    def test_signal_session(self) -> None:
        from turnrelay.errors import InvalidArgs

        b = _broker()
        b.register_session("s1", broker_detect=True, require_input=True)
        b.feed_output("s1", b"ignored banner", now=0.0)
        self.assertEqual(b.tick(now=10.0), [])
        b.signal_session("s1", "input", now=11.0)
        b.feed_output("s1", b"answer", now=11.1)
        turns = b.signal_session("s1", "reset", now=11.2)
        self.assertEqual(len(turns), 1)
        self.assertTrue(turns[0].interrupted)
        with self.assertRaises(InvalidArgs):
            b.signal_session("s1", "bogus", now=12.0)


class TestBrokerRelay(unittest.TestCase):
    def test_capture_deliver_file_scenario(self) -> None:
        from turnrelay.contracts.v1 import SinkSpec

        b = _broker()
        b.register_session("s1", broker_detect=True, require_input=False)
        b.feed_output("s1", b"Hello", now=0.0)
        b.tick(now=2.0)
        self.assertEqual(b.get_turn("s1:1").content, b"Hello")

        captured = b.capture("s1")
        self.assertEqual(captured.turn_id, "s1:1")
        with tempfile.TemporaryDirectory() as td:
            out = Path(td) / "out.txt"
            delivered = b.deliver(SinkSpec(kind="file", path=str(out)))
            self.assertEqual(delivered.turn_id, "s1:1")
            self.assertEqual(out.read_bytes(), b"Hello")
        st = b.status()
        self.assertEqual(st["relay_turn_id"], "s1:1")
        self.assertTrue(st["last_delivery"]["ok"])
        self.assertEqual(st["last_delivery"]["sink"], f"file:{out}")

    def test_file_deliver_with_empty_relay_buffer_writes_nothing(self) -> None:
        from turnrelay.contracts.v1 import SinkSpec
        from turnrelay.errors import EmptyRelayBuffer

        b = _broker()
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "t.txt"
            with self.assertRaises(EmptyRelayBuffer):
                b.deliver(SinkSpec(kind="file", path=str(target)))
            self.assertFalse(target.exists())
        self.assertIsNone(b.status()["last_delivery"])

    def test_capture_errors(self) -> None:
        from turnrelay.errors import EmptyRegistry, SessionNotFound, TurnNotFound

        b = _broker()
        b.register_session("s1")
        with self.assertRaises(EmptyRegistry):
            b.capture("s1")
        with self.assertRaises(SessionNotFound):
            b.capture("ghost")
        with self.assertRaises(TurnNotFound):
            b.capture_by_id("s1:9")

    def test_capture_overwrites_relay_buffer(self) -> None:
        b = _broker()
        b.register_session("s1")
        b.report_turn("s1", _boundary(b"first"))
        b.report_turn("s1", _boundary(b"second"))
        b.capture_by_id("s1:1")
        self.assertEqual(b.relay_turn().content, b"first")
        b.capture("s1")
        self.assertEqual(b.relay_turn().content, b"second")

    def test_paste_checks_buffer_before_session(self) -> None:
        from turnrelay.errors import EmptyRelayBuffer, SessionNotFound

        b = _broker()
        with self.assertRaises(EmptyRelayBuffer):
            b.paste("ghost")
        b.register_session("s1")
        b.report_turn("s1", _boundary(b"x"))
        b.capture("s1")
        with self.assertRaises(SessionNotFound):
            b.paste("ghost")

    def test_paste_failure_leaves_state_untouched(self) -> None:
        from turnrelay.errors import SinkDeliveryFailed

        b = _broker()
        b.register_session("src")
        b.register_session("dst")  # no wrapper link
        b.report_turn("src", _boundary(b"payload"))
        b.capture("src")
        with self.assertRaises(SinkDeliveryFailed) as cm:
            b.paste("dst")
        self.assertEqual(cm.exception.code, "sink_delivery_failed")
        self.assertEqual(cm.exception.details["sink"], "inject:dst")
        self.assertEqual(b.relay_turn().turn_id, "src:1")
        self.assertFalse(b.status()["last_delivery"]["ok"])

        b.unregister_session("dst")
        with self.assertRaises(SinkDeliveryFailed):
            b.paste("dst")

    def test_paste_pushes_inject_frame_over_link(self) -> None:
        from turnrelay.daemon.sinks import WrapperLink

        b = _broker()
        ours, theirs = socket.socketpair()
        try:
            link = WrapperLink(ours, send_timeout_s=2.0)
            b.register_session("dst", link=link)
            b.register_session("src")
            b.report_turn("src", _boundary(b"line1\nline2"))
            b.capture("src")
            turn = b.paste("dst")
            self.assertEqual(turn.turn_id, "src:1")

            theirs.settimeout(2.0)
            data = b""
            while not data.endswith(b"\n"):
                data += theirs.recv(65536)
            frame = json.loads(data.decode("utf-8"))
            self.assertEqual(frame["op"], "inject")
            self.assertEqual(frame["args"]["turn_id"], "src:1")
            self.assertEqual(base64.b64decode(frame["args"]["content_b64"]), b"line1\nline2")
            # Paste does not consume the relay buffer.
            self.assertEqual(b.relay_turn().turn_id, "src:1")

            b.unregister_session("dst")
            self.assertTrue(link.closed)
        finally:
            theirs.close()
            ours.close()

    def test_clipboard_delivery_uses_first_working_tool(self) -> None:
        from turnrelay.contracts.v1 import SinkSpec
        from turnrelay.errors import SinkDeliveryFailed

        with tempfile.TemporaryDirectory() as td:
            out = os.path.join(td, "clip.txt")
            b = _broker(clipboard=[["turnrelay-no-such-tool"], ["false"], ["sh", "-c", f"cat > '{out}'"]])
            b.register_session("s1")
            b.report_turn("s1", _boundary(b"to clipboard"))
            b.capture("s1")
            b.deliver(SinkSpec(kind="clipboard"))
            with open(out, "rb") as f:
                self.assertEqual(f.read(), b"to clipboard")

        b = _broker(clipboard=[["turnrelay-no-such-tool"]])
        b.register_session("s1")
        b.report_turn("s1", _boundary(b"x"))
        b.capture("s1")
        with self.assertRaises(SinkDeliveryFailed) as cm:
            b.deliver(SinkSpec(kind="clipboard"))
        self.assertEqual(cm.exception.reason, "no clipboard tool found")

    def test_file_sink_requires_absolute_path(self) -> None:
        from turnrelay.contracts.v1 import SinkSpec
        from turnrelay.errors import InvalidArgs

        b = _broker()
        b.register_session("s1")
        b.report_turn("s1", _boundary(b"x"))
        b.capture("s1")
        with self.assertRaises(InvalidArgs):
            b.deliver(SinkSpec(kind="file", path="relative.txt"))


class TestBrokerConcurrency(unittest.TestCase):
    def test_concurrent_reports_and_captures_see_whole_turns(self) -> None:
        from turnrelay.errors import EmptyRegistry

        b = _broker(ring_depth=8)
        b.register_session("s1")
        errors = []
        seen = []

        def writer(tag: int) -> None:
            for i in range(50):
                payload = f"w{tag}-{i}:".encode() * 20
                try:
                    b.report_turn("s1", _boundary(payload))
                except Exception as e:  # pragma: no cover - surfaced below
                    errors.append(e)

        def reader() -> None:
            for _ in range(100):
                try:
                    t = b.capture("s1")
                except EmptyRegistry:
                    continue
                except Exception as e:  # pragma: no cover - surfaced below
                    errors.append(e)
                    continue
                seen.append(t)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(2)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(b.list_turns("s1")), 8)
        self.assertEqual(b.list_turns("s1")[0].turn_id, "s1:200")
        for t in seen:
            unit = t.content[: t.content.index(b":") + 1]
            self.assertEqual(t.content, unit * 20)
            self.assertEqual(t.byte_length, len(t.content))


    def test_racing_captures_never_leave_an_older_turn_in_the_relay(self) -> None:
        b = _broker(ring_depth=4)
        b.register_session("s1")
        b.report_turn("s1", _boundary(b"seed"))
        regressions = []
        done = threading.Event()

        def writer() -> None:
            for i in range(300):
                b.report_turn("s1", _boundary(f"t{i}".encode()))
            done.set()

        def capturer() -> None:
            while not done.is_set():
                t = b.capture("s1")
                # A later capture can only resolve the same or a newer turn.
                if b.relay_turn().seq < t.seq:
                    regressions.append((t.seq, b.relay_turn().seq))

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=capturer) for _ in range(3)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        self.assertEqual(regressions, [])
        self.assertEqual(b.capture("s1").turn_id, "s1:301")

if __name__ == "__main__":
    unittest.main()
