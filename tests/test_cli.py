import base64
import io
import json
import os
import tempfile
import unittest
from unittest.mock import patch


def _ok(result):
    return {"v": 1, "ok": True, "result": result, "error": None}


def _err(code: str):
    return {"v": 1, "ok": False, "result": {}, "error": {"code": code, "message": code, "details": {}}}


class _Recorder:
    def __init__(self, resp):
        self.resp = resp
        self.requests = []

    def __call__(self, req, **kw):
        self.requests.append(req)
        return self.resp


class TestCli(unittest.TestCase):
    def _run(self, argv, resp=None):
        from turnrelay import cli

        rec = _Recorder(resp if resp is not None else _ok({}))
        out = io.TextIOWrapper(io.BytesIO(), encoding="utf-8")
        err = io.StringIO()
        with patch.object(cli, "call_daemon", rec), patch("sys.stdout", new=out), patch("sys.stderr", new=err):
            code = cli.main(argv)
            out.flush()
            stdout_bytes = out.buffer.getvalue()
        return code, stdout_bytes, err.getvalue(), rec.requests

    def test_get_turn_separates_content_from_metadata(self) -> None:
        meta = {"turn_id": "s1:1", "session_id": "s1", "byte_length": 5}
        resp = _ok({"turn": meta, "content_b64": base64.b64encode(b"Hello").decode("ascii")})
        code, stdout, stderr, reqs = self._run(["get-turn", "s1:1"], resp)
        self.assertEqual(code, 0)
        self.assertEqual(stdout, b"Hello")
        printed = json.loads(stderr)
        self.assertEqual(printed["result"]["turn"]["turn_id"], "s1:1")
        self.assertNotIn("content_b64", printed["result"])
        self.assertEqual(reqs[0]["args"], {"turn_id": "s1:1", "metadata_only": False})

    def test_get_turn_metadata_only_prints_json_to_stdout(self) -> None:
        resp = _ok({"turn": {"turn_id": "s1:1"}})
        code, stdout, stderr, reqs = self._run(["get-turn", "s1:1", "--metadata-only"], resp)
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(stdout.decode("utf-8"))["result"]["turn"]["turn_id"], "s1:1")
        self.assertEqual(stderr, "")
        self.assertTrue(reqs[0]["args"]["metadata_only"])

    def test_exit_codes(self) -> None:
        code, _, _, _ = self._run(["capture", "s1"], _err("empty_registry"))
        self.assertEqual(code, 2)
        code, _, _, _ = self._run(["capture", "s1"], _err("daemon_unavailable"))
        self.assertEqual(code, 1)
        code, stdout, _, reqs = self._run(["capture", "s1"], _ok({"turn": {"turn_id": "s1:3"}}))
        self.assertEqual(code, 0)
        self.assertEqual(reqs[0], {"op": "capture", "args": {"session_id": "s1"}})
        self.assertEqual(json.loads(stdout.decode("utf-8"))["result"]["turn"]["turn_id"], "s1:3")

    def test_deliver_validates_cross_field_args(self) -> None:
        code, stdout, _, reqs = self._run(["deliver", "file"])
        self.assertEqual(code, 2)
        self.assertEqual(json.loads(stdout.decode("utf-8"))["error"]["code"], "invalid_args")
        self.assertEqual(reqs, [])

        code, _, _, reqs = self._run(["deliver", "inject"])
        self.assertEqual(code, 2)
        self.assertEqual(reqs, [])

        with self.assertRaises(SystemExit):
            self._run(["deliver", "printer"])

    def test_deliver_file_sends_absolute_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            old = os.getcwd()
            os.chdir(td)
            try:
                code, _, _, reqs = self._run(["deliver", "file", "--path", "out.txt"])
            finally:
                os.chdir(old)
            self.assertEqual(code, 0)
            sink = reqs[0]["args"]["sink"]
            self.assertEqual(sink["kind"], "file")
            self.assertTrue(os.path.isabs(sink["path"]))
            self.assertEqual(os.path.basename(sink["path"]), "out.txt")

    def test_deliver_inject_and_list_turns_args(self) -> None:
        _, _, _, reqs = self._run(["deliver", "inject", "--session", "s2"])
        self.assertEqual(reqs[0]["args"]["sink"], {"kind": "inject", "session_id": "s2"})
        _, _, _, reqs = self._run(["list-turns", "s1", "--limit", "3"])
        self.assertEqual(reqs[0], {"op": "list_turns", "args": {"session_id": "s1", "limit": 3}})

    def test_version(self) -> None:
        from turnrelay import __version__

        code, stdout, _, _ = self._run(["version"])
        self.assertEqual(code, 0)
        self.assertEqual(stdout.decode("utf-8").strip(), __version__)

    def test_wrap_requires_command(self) -> None:
        code, stdout, _, _ = self._run(["wrap", "--standalone"])
        self.assertEqual(code, 2)
        self.assertEqual(json.loads(stdout.decode("utf-8"))["error"]["code"], "invalid_args")

    def test_config_init_writes_settings_once(self) -> None:
        import yaml

        old_home = os.environ.get("TURNRELAY_HOME")
        with tempfile.TemporaryDirectory() as td:
            os.environ["TURNRELAY_HOME"] = td
            try:
                code, stdout, _, requests = self._run(["config", "show"])
                self.assertEqual(code, 0)
                self.assertEqual(requests, [])
                shown = json.loads(stdout.decode("utf-8"))["result"]
                self.assertEqual(shown["settings"]["registry"]["ring_depth"], 32)
                path = os.path.join(td, "settings.yaml")
                self.assertFalse(os.path.exists(path))

                code, _, _, _ = self._run(["config", "init"])
                self.assertEqual(code, 0)
                with open(path, "r", encoding="utf-8") as f:
                    self.assertEqual(yaml.safe_load(f)["registry"]["ring_depth"], 32)

                code, stdout, _, _ = self._run(["config", "init"])
                self.assertEqual(code, 2)
                self.assertEqual(json.loads(stdout.decode("utf-8"))["error"]["code"], "invalid_args")
                code, _, _, _ = self._run(["config", "init", "--force"])
                self.assertEqual(code, 0)
            finally:
                if old_home is None:
                    os.environ.pop("TURNRELAY_HOME", None)
                else:
                    os.environ["TURNRELAY_HOME"] = old_home


if __name__ == "__main__":
    unittest.main()
