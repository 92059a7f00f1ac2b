import json
import tempfile
import unittest
from pathlib import Path

from typer.testing import CliRunner

from docgraph.cli import app

from fakes import report_graph


class TestCli(unittest.TestCase):
    def setUp(self):
        self.runner = CliRunner()
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def write(self, data) -> str:
        path = Path(self.tmp.name) / "graph.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return str(path)

    def test_stats_on_a_valid_graph(self):
        res = self.runner.invoke(app, ["stats", self.write(report_graph().serialize())])
        self.assertEqual(res.exit_code, 0, res.output)

    def test_bad_font_metadata_exits_with_load_error(self):
        data = report_graph().serialize()
        data["nodes"][0]["metadata"]["font"] = {"family": "Inter", "size": 11, "colour": "red"}
        res = self.runner.invoke(app, ["stats", self.write(data)])
        self.assertEqual(res.exit_code, 2)
        self.assertIn("Could not load graph", res.output)


if __name__ == "__main__":
    unittest.main()
