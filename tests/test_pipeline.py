import threading
import unittest

from kcallgraph.dispatcher import QUEUE_SIZE, Dispatcher, normalize_symbol_name
from kcallgraph.resolver import DebugInfoUnavailable, ResolutionRecord, Resolver
from kcallgraph.sink import SinkExecutionFailure
from kcallgraph.worker import NONE_LOCATION, ResolutionCache, format_statement, select_location

TEMPLATE = "INSERT INTO xrefs VALUES (1,2,3,'%s');"


class MapReader:
    def __init__(self, frames=None):
        self.frames = frames or {}
        self.queried = []

    def lookup(self, address):
        self.queried.append(address)
        return self.frames.get(address, [])


class DeadReader:
    def lookup(self, address):
        raise EOFError("addr2line exited")


class RecordingSink:
    def __init__(self):
        self.statements = []
        self.done = threading.Event()
        self.expected = None

    def execute(self, statement):
        self.statements.append(statement)
        if self.expected is not None and len(self.statements) >= self.expected:
            self.done.set()


class FailingSink(RecordingSink):
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def execute(self, statement):
        if len(self.statements) + 1 == self.fail_on:
            raise SinkExecutionFailure(statement, RuntimeError("relation does not exist"))
        super().execute(statement)


class GatedSink(RecordingSink):
    """Blocks in execute() until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def execute(self, statement):
        self.entered.set()
        self.release.wait(10)
        super().execute(statement)


def _pipeline(frames=None):
    reader = MapReader(frames)
    return Dispatcher(Resolver(reader)), reader


class TestSelectLocation(unittest.TestCase):
    def setUp(self):
        self.inlined = [
            ResolutionRecord("x.c", 10, "inner"),
            ResolutionRecord("y.c", 20, "foo"),
        ]

    def test_match_wins(self):
        records = [ResolutionRecord("x.c", 10, "foo"), ResolutionRecord("y.c", 20, "outer")]
        self.assertEqual(select_location(records, "foo"), "x.c:10")

    def test_last_wins_without_match(self):
        self.assertEqual(select_location(self.inlined, "bar"), "y.c:20")

    def test_empty(self):
        self.assertEqual(select_location([], "foo"), NONE_LOCATION)
        self.assertEqual(NONE_LOCATION, "NONE")

    def test_format_statement(self):
        self.assertEqual(format_statement(TEMPLATE, "a/b.c:42"), "INSERT INTO xrefs VALUES (1,2,3,'a/b.c:42');")


class TestScenarios(unittest.TestCase):
    def _run_one(self, frames, expected_symbol, template=TEMPLATE, address=0x1000):
        dispatcher, _ = _pipeline({address: frames})
        sink = RecordingSink()
        dispatcher.enqueue(sink, address, expected_symbol, template)
        dispatcher.drain()
        self.assertEqual(len(sink.statements), 1)
        return sink.statements[0]

    def test_single_frame(self):
        stmt = self._run_one([("foo", "./a/b.c", 42)], "foo")
        self.assertEqual(stmt, "INSERT INTO xrefs VALUES (1,2,3,'a/b.c:42');")

    def test_inlined_match_wins(self):
        stmt = self._run_one([("inner", "x.c", 10), ("foo", "y.c", 20)], "foo")
        self.assertTrue(stmt.endswith("'y.c:20');"))

    def test_inlined_match_on_inner_frame(self):
        stmt = self._run_one([("foo", "x.c", 10), ("outer", "y.c", 20)], "foo")
        self.assertTrue(stmt.endswith("'x.c:10');"))

    def test_inlined_no_match(self):
        stmt = self._run_one([("inner", "x.c", 10), ("foo", "y.c", 20)], "bar")
        self.assertTrue(stmt.endswith("'y.c:20');"))

    def test_empty_resolution(self):
        stmt = self._run_one([], "foo")
        self.assertEqual(stmt, "INSERT INTO xrefs VALUES (1,2,3,'NONE');")

    def test_passthrough_is_verbatim(self):
        dispatcher, reader = _pipeline()
        sink = RecordingSink()
        statement = "INSERT INTO tags VALUES ('x');"
        dispatcher.enqueue(sink, 0x1000, "None", statement)
        dispatcher.execute(sink, "INSERT INTO tags VALUES ('100%s');")
        dispatcher.drain()
        self.assertEqual(sink.statements, [statement, "INSERT INTO tags VALUES ('100%s');"])
        self.assertEqual(reader.queried, [])

    def test_sym_prefix_is_stripped_at_enqueue(self):
        stmt = self._run_one([("inner", "x.c", 10), ("foo", "y.c", 20), ("outer", "z.c", 30)], "sym.foo")
        self.assertTrue(stmt.endswith("'y.c:20');"))

    def test_substituted_paths_are_canonical(self):
        stmt = self._run_one([("foo", "/src//linux/./kernel/../mm/slab.c", 7)], "foo")
        self.assertIn("'/src/linux/mm/slab.c:7'", stmt)
        self.assertNotIn("./", stmt)
        self.assertNotIn("//", stmt)


class TestOrdering(unittest.TestCase):
    def test_sink_sees_jobs_in_enqueue_order(self):
        n = 200
        frames = {i: [("f%d" % i, "file%d.c" % i, i)] for i in range(n)}
        dispatcher, _ = _pipeline(frames)
        sink = RecordingSink()
        for i in range(n):
            if i % 7 == 0:
                dispatcher.execute(sink, "INSERT INTO tags (id) VALUES (%d);" % i)
            else:
                dispatcher.enqueue(sink, i, "f%d" % i, "INSERT INTO xrefs VALUES (%d, '%%s');" % i)
        dispatcher.drain()

        self.assertEqual(len(sink.statements), n)
        for i, stmt in enumerate(sink.statements):
            if i % 7 == 0:
                self.assertEqual(stmt, "INSERT INTO tags (id) VALUES (%d);" % i)
            else:
                self.assertEqual(stmt, "INSERT INTO xrefs VALUES (%d, 'file%d.c:%d');" % (i, i, i))


class TestBackpressure(unittest.TestCase):
    def test_producer_blocks_when_queue_is_full(self):
        dispatcher, _ = _pipeline()
        sink = GatedSink()

        # The worker takes the first job and blocks inside the sink.
        dispatcher.execute(sink, "INSERT 0;")
        self.assertTrue(sink.entered.wait(5))

        for i in range(QUEUE_SIZE):
            dispatcher.execute(sink, "INSERT %d;" % (i + 1))
        self.assertEqual(dispatcher.pending, QUEUE_SIZE)

        finished = threading.Event()

        def one_more():
            dispatcher.execute(sink, "INSERT %d;" % (QUEUE_SIZE + 1))
            finished.set()

        producer = threading.Thread(target=one_more, daemon=True)
        producer.start()
        self.assertFalse(finished.wait(0.3))
        self.assertEqual(dispatcher.pending, QUEUE_SIZE)

        sink.release.set()
        self.assertTrue(finished.wait(5))
        producer.join(5)
        dispatcher.drain()
        self.assertEqual(sink.statements, ["INSERT %d;" % i for i in range(QUEUE_SIZE + 2)])


class TestFailure(unittest.TestCase):
    def test_sink_failure_is_fatal(self):
        dispatcher, _ = _pipeline()
        sink = FailingSink(fail_on=3)
        with self.assertLogs("worker", level="ERROR"):
            for i in range(3):
                dispatcher.execute(sink, "INSERT %d;" % i)
            with self.assertRaises(SinkExecutionFailure) as ctx:
                dispatcher.drain()

        self.assertEqual(ctx.exception.statement, "INSERT 2;")
        self.assertEqual(sink.statements, ["INSERT 0;", "INSERT 1;"])

        with self.assertRaises(SinkExecutionFailure):
            dispatcher.execute(sink, "INSERT 99;")

    def test_dead_reader_fails_the_drain(self):
        dispatcher = Dispatcher(Resolver(DeadReader()))
        sink = RecordingSink()
        with self.assertLogs("resolver", level="ERROR"):
            dispatcher.enqueue(sink, 0x10, "f", TEMPLATE)
            dispatcher.enqueue(sink, 0x20, "f", TEMPLATE)
            with self.assertRaises(DebugInfoUnavailable):
                dispatcher.drain()
        self.assertEqual(sink.statements, ["INSERT INTO xrefs VALUES (1,2,3,'NONE');"] * 2)

    def test_bad_template_is_fatal(self):
        dispatcher, _ = _pipeline({0x10: [("f", "a.c", 1)]})
        sink = RecordingSink()
        with self.assertLogs("worker", level="ERROR"):
            dispatcher.enqueue(sink, 0x10, "f", "INSERT INTO xrefs VALUES ('%s', '%s');")
            with self.assertRaises(TypeError):
                dispatcher.drain()
        self.assertEqual(sink.statements, [])


class TestResolutionCache(unittest.TestCase):
    def test_nothing_is_remembered_by_default(self):
        dispatcher, _ = _pipeline({0x2000: [("foo", "a.c", 1)]})
        sink = RecordingSink()
        for _ in range(3):
            dispatcher.enqueue(sink, 0x2000, "foo", TEMPLATE)
        dispatcher.drain()

        self.assertIsNone(dispatcher.cache)
        self.assertEqual(dispatcher.has_seen(0x2000), (False, ""))
        self.assertEqual(len(sink.statements), 3)

    def test_has_seen_after_resolution(self):
        reader = MapReader({0x2000: [("foo", "./a/b.c", 42)]})
        dispatcher = Dispatcher(Resolver(reader), cache=ResolutionCache())
        sink = RecordingSink()

        self.assertEqual(dispatcher.has_seen(0x2000), (False, ""))
        dispatcher.enqueue(sink, 0x2000, "foo", TEMPLATE)
        dispatcher.enqueue(sink, 0x3000, "foo", TEMPLATE)
        dispatcher.drain()

        self.assertEqual(dispatcher.has_seen(0x2000), (True, "a/b.c:42"))
        # Empty resolutions are not remembered.
        self.assertEqual(dispatcher.has_seen(0x3000), (False, ""))


class TestNormalizeSymbolName(unittest.TestCase):
    def test_strip_once(self):
        self.assertEqual(normalize_symbol_name("sym.do_sys_open"), "do_sys_open")
        self.assertEqual(normalize_symbol_name("do_sys_open"), "do_sys_open")
        self.assertEqual(normalize_symbol_name("sym.sym.x"), "sym.x")


if __name__ == "__main__":
    unittest.main()
