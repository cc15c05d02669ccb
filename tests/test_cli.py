import io
import json
import unittest
from contextlib import redirect_stdout
from unittest import mock

from concord.cli import build_parser, main


def run_cli(*argv):
    buffer = io.StringIO()
    with redirect_stdout(buffer):
        code = main(list(argv))
    return code, buffer.getvalue()


class CliTests(unittest.TestCase):
    def test_route(self):
        code, out = run_cli("--offline", "route", "What is council deliberation")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["target"], "knowledge")

    def test_run_with_citations(self):
        code, out = run_cli("--offline", "run", "What is council deliberation", "--citations")
        self.assertEqual(code, 0)
        data = json.loads(out)
        self.assertIn("**Sources:**", data["response"]["content"])
        self.assertEqual(data["execution"]["metadata"]["strategy"], "single")

    def test_workflows_listing(self):
        code, out = run_cli("--offline", "workflows")
        self.assertEqual(code, 0)
        self.assertEqual([w["name"] for w in json.loads(out)], ["research", "quick_answer", "comprehensive", "validation"])

    def test_unknown_workflow_reports_error(self):
        code, out = run_cli("--offline", "workflow", "nope", "hello")
        self.assertEqual(code, 2)
        self.assertEqual(json.loads(out)["error"], "UnknownWorkflowError")

    def test_no_command_prints_help(self):
        code, _ = run_cli()
        self.assertEqual(code, 1)

    def test_parser_rejects_unknown_strategy(self):
        with self.assertRaises(SystemExit):
            with redirect_stdout(io.StringIO()), mock.patch("sys.stderr", io.StringIO()):
                build_parser().parse_args(["run", "x", "--strategy", "telepathy"])


if __name__ == "__main__":
    unittest.main()
