from __future__ import annotations

import unittest

from pipeline.strategy_helpers import (
    build_fallback_research_queries,
    ensure_diverse_idea_links,
    extract_urls,
    normalize_links,
)
from schemas.image_analysis import ImageAnalysis
from schemas.trend_strategy import ContentIdea, TikTokLink, TikTokScript, TrendStrategy

URL_A = "https://www.tiktok.com/@studio/video/1"
URL_B = "https://www.tiktok.com/@studio/video/2"
URL_C = "https://www.highsnobiety.com/p/thermal-core/"


def make_idea(title: str, links: list[TikTokLink] | None = None, evidence: str = "") -> ContentIdea:
    return ContentIdea(
        title=title,
        tiktok_script=TikTokScript(
            hook="Flash pops on a rain-soaked hat",
            visual_direction="Low-angle 14mm fisheye, tungsten 3200K",
            audio_spec="Espresso - Sabrina Carpenter (sped up)",
        ),
        source_evidence=evidence,
        source_links=links or [],
        cultural_context="Gorpcore kids want utility that reads as a joke",
    )


def make_strategy(ideas: list[ContentIdea], pool: list[TikTokLink]) -> TrendStrategy:
    return TrendStrategy(
        strategic_brief="The 'Uncanny Bakery' Strategy",
        content_ideas=ideas,
        tiktok_links=pool,
        reasoning="",
    )


class ExtractUrlsTests(unittest.TestCase):
    def test_strips_trailing_punctuation_and_normalizes(self):
        text = f"Seen at {URL_A}, and again on www.example.com/trend. Also {URL_A}!"
        self.assertEqual(extract_urls(text), [URL_A, "https://www.example.com/trend"])

    def test_no_urls(self):
        self.assertEqual(extract_urls("nothing here"), [])
        self.assertEqual(extract_urls(""), [])


class EnsureDiverseIdeaLinksTests(unittest.TestCase):
    def test_ideas_sharing_one_url_get_distinct_first_links(self):
        shared = TikTokLink(url=URL_A, trend_context="Thermal-core")
        strategy = make_strategy(
            [
                make_idea("One", [shared]),
                make_idea("Two", [shared]),
                make_idea("Three", [shared]),
            ],
            pool=[shared, TikTokLink(url=URL_B, trend_context="Glitch-Western")],
        )

        ideas = ensure_diverse_idea_links(strategy).content_ideas

        self.assertEqual(ideas[0].source_links[0].url, URL_A)
        self.assertEqual(ideas[1].source_links[0].url, URL_B)
        self.assertNotEqual(ideas[0].source_links[0].url, ideas[1].source_links[0].url)
        # the original link is never removed
        self.assertIn(URL_A, [l.url for l in ideas[1].source_links])
        for idea in ideas:
            self.assertGreaterEqual(len(idea.source_links), 1)
            self.assertLessEqual(len(idea.source_links), 3)

    def test_linkless_ideas_with_single_link_pool(self):
        strategy = make_strategy(
            [make_idea("One"), make_idea("Two"), make_idea("Three")],
            pool=[TikTokLink(url=URL_C, trend_context="")],
        )

        ideas = ensure_diverse_idea_links(strategy).content_ideas

        for idea in ideas:
            self.assertEqual([l.url for l in idea.source_links], [URL_C])
            self.assertEqual(idea.source_links[0].trend_context, "Supporting source")

    def test_linkless_ideas_spread_over_pool(self):
        pool = [TikTokLink(url=u, trend_context="t") for u in (URL_A, URL_B, URL_C)]
        strategy = make_strategy([make_idea("One"), make_idea("Two"), make_idea("Three")], pool)

        ideas = ensure_diverse_idea_links(strategy).content_ideas

        self.assertEqual([i.source_links[0].url for i in ideas], [URL_A, URL_B, URL_C])

    def test_evidence_urls_are_merged(self):
        idea = make_idea(
            "One",
            [TikTokLink(url=URL_A, trend_context="  ")],
            evidence=f"Creators on {URL_B}. Also {URL_A}",
        )
        strategy = make_strategy([idea, make_idea("Two"), make_idea("Three")], pool=[])

        result = ensure_diverse_idea_links(strategy).content_ideas[0].source_links

        self.assertEqual([l.url for l in result], [URL_A, URL_B])
        self.assertEqual(result[0].trend_context, "Supporting source")
        self.assertEqual(result[1].trend_context, "Mentioned in source evidence")

    def test_truncates_to_three_links(self):
        links = [TikTokLink(url=f"https://example.com/{i}", trend_context="t") for i in range(5)]
        strategy = make_strategy([make_idea("One", links), make_idea("Two"), make_idea("Three")], pool=links)

        ideas = ensure_diverse_idea_links(strategy).content_ideas

        self.assertEqual(len(ideas[0].source_links), 3)

    def test_deterministic(self):
        pool = [TikTokLink(url=URL_A, trend_context="t"), TikTokLink(url=URL_B, trend_context="t")]
        strategy = make_strategy(
            [make_idea("One", pool[:1]), make_idea("Two", pool[:1]), make_idea("Three")],
            pool,
        )
        self.assertEqual(
            ensure_diverse_idea_links(strategy).model_dump(),
            ensure_diverse_idea_links(strategy).model_dump(),
        )


class NormalizeLinksTests(unittest.TestCase):
    def test_drops_unusable_urls_and_defaults_context(self):
        links = normalize_links([
            TikTokLink(url="#gorpcore trend", trend_context="Trend 0"),
            TikTokLink(url="see trend above"),
            TikTokLink(url="WWW.TikTok.com/@studio/video/1."),
            TikTokLink(url=URL_A, trend_context="dupe"),
        ])
        self.assertEqual([l.url for l in links], ["https://www.tiktok.com/@studio/video/1"])
        self.assertEqual(links[0].trend_context, "Supporting source")

    def test_all_unusable_is_empty(self):
        self.assertEqual(normalize_links([TikTokLink(url="#gorpcore trend")]), [])


class FallbackQueryTests(unittest.TestCase):
    def test_queries_from_analysis(self):
        analysis = ImageAnalysis(
            short_description="A bucket hat in the rain",
            aesthetic_style="Gorpcore",
            color_palette=["olive", "rust"],
            brand_archetype="The Explorer",
            visual_keywords=["matte", "grainy", "utility", "rain", "nylon", "hiking"],
            target_audience="Urban hikers 20-30",
            market_segment="Premium",
        )

        queries = build_fallback_research_queries(analysis)

        self.assertEqual(queries, [
            "Gorpcore TikTok microtrend",
            "The Explorer creator trend TikTok",
            "matte grainy utility rain viral TikTok format",
            "Premium audience TikTok trend report",
        ])


if __name__ == "__main__":
    unittest.main()
