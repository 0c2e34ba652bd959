import asyncio
import io
import tempfile
import threading
import unittest
from pathlib import Path

from aiohttp.test_utils import TestServer

from chatstore.ws_transport import create_app

from chatlink.cli import EXIT_FAILURE, EXIT_OK, EXIT_USAGE, format_message, main
from chatlink.models import Message, Pending, Resolved


class StoreServerThread:
    """Runs a store server on its own event loop so the CLI can ``asyncio.run``."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.server: TestServer | None = None

    def start(self) -> str:
        self.thread.start()
        self.server = self._call(self._start())
        return str(self.server.make_url("")).rstrip("/")

    def stop(self) -> None:
        if self.server is not None:
            self._call(self.server.close())
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)
        self.loop.close()

    async def _start(self) -> TestServer:
        server = TestServer(create_app())
        await server.start_server()
        return server

    def _call(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout=10)


class CliOfflineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.identity = str(Path(self.tmpdir.name) / "identity.json")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str]:
        output = io.StringIO()
        code = main(["--identity", self.identity, *argv], output=output)
        return code, output.getvalue()

    def test_key_is_symmetric(self):
        code, out = self.run_cli("key", "u2", "u1")
        self.assertEqual((code, out), (EXIT_OK, "u1_u2\n"))

    def test_key_rejects_delimiter(self):
        code, out = self.run_cli("key", "a_b", "c")
        self.assertEqual(code, EXIT_USAGE)
        self.assertIn("error:", out)

    def test_whoami_without_identity(self):
        code, out = self.run_cli("whoami")
        self.assertEqual(code, EXIT_USAGE)
        self.assertIn("not signed in", out)

    def test_logout_without_identity(self):
        code, out = self.run_cli("logout")
        self.assertEqual((code, out), (EXIT_OK, "not signed in\n"))

    def test_unreachable_store_is_failure(self):
        output = io.StringIO()
        code = main(
            ["--identity", self.identity, "--url", "http://127.0.0.1:9", "login", "--uid", "u1", "--name", "Ann",
             "--email", "ann@example.com"],
            output=output,
        )
        self.assertEqual(code, EXIT_FAILURE)
        self.assertIn("cannot connect", output.getvalue())


class CliFormattingTests(unittest.TestCase):
    def test_pending_messages_are_marked(self):
        resolved = Message("m1", "hi", "u1", "Ann", Resolved(5))
        pending = Message("m2", "yo", "u1", "Ann", Pending(6))

        self.assertEqual(format_message(resolved), "[5] Ann: hi")
        self.assertEqual(format_message(pending), "[6]*Ann: yo")


class CliOnlineTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.server = StoreServerThread()
        cls.url = cls.server.start()

    @classmethod
    def tearDownClass(cls) -> None:
        cls.server.stop()

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def run_as(self, name: str, *argv: str) -> tuple[int, str]:
        output = io.StringIO()
        identity = str(Path(self.tmpdir.name) / f"{name}.json")
        code = main(["--url", self.url, "--identity", identity, *argv], output=output)
        return code, output.getvalue()

    def test_login_users_send_tail_threads(self):
        code, out = self.run_as("ann", "login", "--uid", "ann", "--name", "Ann", "--email", "ann@example.com")
        self.assertEqual((code, out), (EXIT_OK, "signed in as ann\n"))
        code, _ = self.run_as("bob", "login", "--uid", "bob", "--name", "Bob", "--phone", "+1555")
        self.assertEqual(code, EXIT_OK)

        code, out = self.run_as("ann", "users")
        self.assertEqual(code, EXIT_OK)
        self.assertIn("bob\tBob\t+1555", out.splitlines())
        self.assertNotIn("ann", [line.split("\t")[0] for line in out.splitlines()])

        code, out = self.run_as("ann", "send", "bob", "hello bob")
        self.assertEqual(code, EXIT_OK)
        self.assertIn("to ann_bob", out)

        code, out = self.run_as("bob", "tail", "ann")
        self.assertEqual(code, EXIT_OK)
        self.assertTrue(out.rstrip("\n").endswith(" Ann: hello bob"))

        code, out = self.run_as("bob", "threads")
        self.assertEqual((code, out), (EXIT_OK, "ann_bob\tAnn\thello bob\n"))

        code, out = self.run_as("ann", "whoami")
        self.assertEqual((code, out), (EXIT_OK, "ann\tAnn\tann@example.com\n"))

    def test_send_to_unknown_recipient(self):
        self.run_as("cy", "login", "--uid", "cy", "--name", "Cy", "--email", "cy@example.com")

        code, out = self.run_as("cy", "send", "nobody", "hi")

        self.assertEqual(code, EXIT_USAGE)
        self.assertIn("unknown recipient", out)

    def test_blank_message_is_not_sent(self):
        self.run_as("dee", "login", "--uid", "dee", "--name", "Dee", "--email", "dee@example.com")
        self.run_as("eve", "login", "--uid", "eve", "--name", "Eve", "--email", "eve@example.com")

        code, out = self.run_as("dee", "send", "eve", "   ")

        self.assertEqual((code, out), (EXIT_OK, "nothing to send\n"))

    def test_commands_need_identity(self):
        code, out = self.run_as("nobody", "threads")
        self.assertEqual(code, EXIT_USAGE)
        self.assertIn("sign in required", out)


if __name__ == "__main__":
    unittest.main()
