from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import main
from pipeline.trend_orchestrator import NoEvidenceError
from schemas.orchestration import OrchestrationStep, ToolCall
from schemas.trend_strategy import ContentIdea, TikTokLink, TikTokScript, TrendStrategy

LINK = TikTokLink(url="https://www.tiktok.com/@a/video/1", trend_context="Thermal-core")


def make_strategy() -> TrendStrategy:
    idea = ContentIdea(
        title="Rain hat ASMR",
        tiktok_script=TikTokScript(
            hook="Flash pops on a rain-soaked hat",
            visual_direction="Low-angle 14mm fisheye",
            audio_spec="Espresso - Sabrina Carpenter (sped up)",
        ),
        source_links=[LINK],
        cultural_context="Utility as a joke",
    )
    return TrendStrategy(
        strategic_brief="The 'Weatherproof Joke' Strategy",
        content_ideas=[idea, idea, idea],
        tiktok_links=[LINK],
    )


class CliTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        self.caps = MagicMock()
        self.patches = [
            patch("main.setup_logging"),
            patch("main.default_capabilities", return_value=self.caps),
        ]
        for p in self.patches:
            p.start()

    def tearDown(self):
        for p in self.patches:
            p.stop()
        self.tmp.cleanup()

    def run_cli(self, *argv: str) -> int:
        with patch("sys.argv", ["main.py", *argv]):
            with self.assertRaises(SystemExit) as ctx:
                main.main()
        return ctx.exception.code

    def test_analyze_saves_strategy(self):
        image = self.dir / "hat.png"
        image.write_bytes(b"\x89PNG")
        out = self.dir / "strategy.json"

        def fake_orchestrate(capabilities, image, media_type, image_url=None, on_step=None):
            on_step(OrchestrationStep(step_number=1, tool_calls=[ToolCall(call_id="c1", tool_name="analyzeImage")]))
            return make_strategy()

        with patch("main.orchestrate_trend_match", side_effect=fake_orchestrate) as orchestrate:
            code = self.run_cli("analyze", str(image), "--image-url", "https://cdn.example/hat.png", "--out", str(out))

        self.assertEqual(code, 0)
        args = orchestrate.call_args
        self.assertIs(args.args[0], self.caps)
        self.assertTrue(args.args[1].startswith("data:image/png;base64,"))
        self.assertEqual(args.args[2], "image/png")
        self.assertEqual(args.kwargs["image_url"], "https://cdn.example/hat.png")
        saved = json.loads(out.read_text("utf-8"))
        self.assertEqual(len(saved["contentIdeas"]), 3)
        self.assertEqual(saved["tiktokLinks"][0]["url"], LINK.url)

    def test_analyze_missing_image(self):
        with patch("main.orchestrate_trend_match") as orchestrate:
            code = self.run_cli("analyze", str(self.dir / "nope.png"))
        self.assertEqual(code, 1)
        orchestrate.assert_not_called()

    def test_analyze_failure_exits_nonzero(self):
        image = self.dir / "hat.png"
        image.write_bytes(b"\x89PNG")
        with patch("main.orchestrate_trend_match", side_effect=NoEvidenceError("No trend evidence")):
            code = self.run_cli("analyze", str(image), "--out", str(self.dir / "strategy.json"))
        self.assertEqual(code, 1)
        self.assertFalse((self.dir / "strategy.json").exists())

    def test_refine_reads_and_saves_strategy(self):
        current = self.dir / "strategy_hat.json"
        current.write_text(json.dumps(make_strategy().to_wire()), "utf-8")
        out = self.dir / "refined.json"

        with patch("main.refine_trend_strategy", return_value=make_strategy()) as refine:
            code = self.run_cli("refine", str(current), "--feedback", "More chaos", "--out", str(out))

        self.assertEqual(code, 0)
        args = refine.call_args
        self.assertEqual(args.args[1], "More chaos")
        self.assertEqual(args.args[2].strategic_brief, "The 'Weatherproof Joke' Strategy")
        self.assertIsNone(args.kwargs["image_url"])
        self.assertTrue(out.exists())

    def test_refine_rejects_invalid_strategy_file(self):
        current = self.dir / "broken.json"
        current.write_text('{"strategicBrief": "x"}', "utf-8")
        with patch("main.refine_trend_strategy") as refine:
            code = self.run_cli("refine", str(current), "--feedback", "More chaos")
        self.assertEqual(code, 1)
        refine.assert_not_called()


if __name__ == "__main__":
    unittest.main()
