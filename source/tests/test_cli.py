from __future__ import annotations

import io
import json
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

from helpers import SECRET, bootstrap_tests
from test_settings import CONFIG

bootstrap_tests()

from pvefleet.app.cli import EXIT_INVALID, EXIT_OK, build_parser, main  # noqa: E402


class CliTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        base = Path(self.tmpdir.name)
        self.config = base / "fleet.yaml"
        self.config.write_text(CONFIG, encoding="utf-8")
        self.state_db = base / "state" / "fleet.db"
        self.env = mock.patch.dict("os.environ", {"PM_API_TOKEN_SECRET": SECRET})
        self.env.start()

    def tearDown(self):
        self.env.stop()
        self.tmpdir.cleanup()

    def _run(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(["--config", str(self.config), "--state-db", str(self.state_db), "--log-level", "ERROR", *argv])
        return code, out.getvalue()

    def test_parser_commands(self):
        args = build_parser().parse_args(["output", "--format", "inventory"])
        self.assertEqual((args.command, args.format), ("output", "inventory"))
        args = build_parser().parse_args(["plan", "--destroy"])
        self.assertTrue(args.destroy)

    def test_output_on_empty_state(self):
        code, out = self._run("output")
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(json.loads(out), {"ip_addresses": [], "names": [], "ids": []})
        self.assertNotIn(SECRET, out)

    def test_show_and_force_unlock(self):
        code, out = self._run("show")
        self.assertEqual(code, EXIT_OK)
        self.assertIn("No managed nodes recorded.", out)
        code, out = self._run("force-unlock")
        self.assertEqual(code, EXIT_OK)
        self.assertIn("No lock was held.", out)

    def test_output_for_unknown_fleet_is_invalid(self):
        code, _ = self._run("output", "--fleet", "db")
        self.assertEqual(code, EXIT_INVALID)

    def test_forget_unknown_node_is_invalid(self):
        code, _ = self._run("forget", "k3s-node-09")
        self.assertEqual(code, EXIT_INVALID)

    def test_missing_config_is_invalid(self):
        self.config.unlink()
        code, _ = self._run("plan")
        self.assertEqual(code, EXIT_INVALID)


if __name__ == "__main__":
    unittest.main()
