from __future__ import annotations

import base64
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from pipeline.capabilities import Capabilities
from pipeline.image_analysis import (
    AnalysisError,
    analysis_to_strategic_brief,
    analyze_image,
    embed_image_analysis,
)
from pipeline.image_input import load_image_file, normalize_image_input, resolve_image_url
from pipeline.llm import LLMError, _coerce_llm_output
from schemas.image_analysis import ImageAnalysis


def make_analysis(**overrides) -> ImageAnalysis:
    data = {
        "title": "Rain hat",
        "shortDescription": "A bucket hat in the rain",
        "aestheticStyle": "Gorpcore",
        "colorPalette": ["olive", "rust"],
        "brandArchetype": "The Explorer",
        "visualKeywords": ["matte", "utility"],
        "targetAudience": "Urban hikers",
        "marketSegment": "Premium",
        "text": "STAY DRY",
    }
    data.update(overrides)
    return ImageAnalysis.model_validate(data)


def make_capabilities(vision) -> Capabilities:
    return Capabilities(
        vision=vision,
        embed=MagicMock(return_value=[0.1, 0.2]),
        search=MagicMock(),
        answer=MagicMock(),
        structured=MagicMock(),
        tool_turn=MagicMock(),
    )


class StrategicBriefTests(unittest.TestCase):
    def test_brief_layout(self):
        brief = analysis_to_strategic_brief(make_analysis())
        self.assertEqual(
            brief,
            "CORE AESTHETIC: Gorpcore | BRAND PERSONALITY: The Explorer | "
            "VISUAL LANGUAGE: A bucket hat in the rain with a olive, rust palette. | "
            "STYLE MARKERS: matte, utility | MARKET POSITION: Premium targeting Urban hikers | "
            "TEXT / BRAND TEXT: STAY DRY",
        )

    def test_brief_is_deterministic(self):
        self.assertEqual(
            analysis_to_strategic_brief(make_analysis()),
            analysis_to_strategic_brief(make_analysis()),
        )

    def test_embed_uses_brief(self):
        caps = make_capabilities(MagicMock())
        vector = embed_image_analysis(caps, make_analysis())
        self.assertEqual(vector, [0.1, 0.2])
        caps.embed.assert_called_once_with(analysis_to_strategic_brief(make_analysis()))


class AnalyzeImageTests(unittest.TestCase):
    def test_returns_analysis(self):
        vision = MagicMock(return_value=make_analysis())
        analysis = analyze_image(make_capabilities(vision), "data:image/png;base64,AA", "image/png")
        self.assertEqual(analysis.market_segment, "Premium")
        self.assertEqual(vision.call_args.args[3], ImageAnalysis)

    def test_provider_error_becomes_analysis_error(self):
        vision = MagicMock(side_effect=LLMError("invalid json", provider="openai", model="gpt-4.1-mini"))
        with self.assertRaises(AnalysisError) as ctx:
            analyze_image(make_capabilities(vision), "data:image/png;base64,AA", "image/png")
        self.assertEqual(ctx.exception.provider, "openai")

    def test_wrong_shape_is_rejected(self):
        vision = MagicMock(return_value={"aestheticStyle": "Gorpcore"})
        with self.assertRaises(AnalysisError):
            analyze_image(make_capabilities(vision), "data:image/png;base64,AA", "image/png")

    def test_market_segment_casing_is_coerced(self):
        raw = make_analysis().model_dump(by_alias=True)
        raw["marketSegment"] = "premium"
        _coerce_llm_output(raw)
        fixed = ImageAnalysis.model_validate(raw)
        self.assertEqual(fixed.market_segment, "Premium")


class ImageInputTests(unittest.TestCase):
    def test_normalize_image_input(self):
        self.assertEqual(normalize_image_input("AAAA", "image/png"), "data:image/png;base64,AAAA")
        self.assertEqual(normalize_image_input("data:image/jpeg;base64,BB", "image/png"), "data:image/jpeg;base64,BB")
        self.assertEqual(normalize_image_input("https://cdn.example/a.png", "image/png"), "https://cdn.example/a.png")

    def test_resolve_image_url(self):
        self.assertEqual(resolve_image_url("AAAA", "  https://cdn.example/a.png "), "https://cdn.example/a.png")
        self.assertEqual(resolve_image_url("https://cdn.example/b.png"), "https://cdn.example/b.png")
        self.assertIsNone(resolve_image_url("AAAA", "   "))

    def test_load_image_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "hat.png"
            path.write_bytes(b"\x89PNG")
            data_url, media_type = load_image_file(path)
        self.assertEqual(media_type, "image/png")
        self.assertEqual(data_url, "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode("ascii"))


if __name__ == "__main__":
    unittest.main()
