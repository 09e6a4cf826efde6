from __future__ import annotations

import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from pipeline.capabilities import Capabilities
from pipeline.exa import SearchError
from pipeline.llm import LLMError
from pipeline.trend_research import (
    build_query_variants,
    dedupe_sources,
    is_within_last_year,
    normalize_external_url,
    research_trends,
    to_iso,
    to_recent_source,
)
from schemas.trend_research import RecentSource, TrendItem, TrendSynthesis

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)
RECENT = "2026-02-10T00:00:00Z"
STALE = "2024-01-01T00:00:00Z"


def make_item(url: str, name: str = "Thermal-core", observed: str = RECENT) -> TrendItem:
    return TrendItem(
        trend_name=name,
        visual_vibe="Harsh flash, 15fps jump cuts",
        audio_or_slang="Espresso - Sabrina Carpenter (sped up)",
        source_url=url,
        observed_at_iso=observed,
        why_its_viral="Reads as lo-fi and unbranded",
    )


def make_capabilities(search=None, structured=None, answer=None) -> Capabilities:
    return Capabilities(
        vision=MagicMock(),
        embed=MagicMock(return_value=[1.0, 0.0]),
        search=search or MagicMock(return_value=[]),
        answer=answer or MagicMock(return_value={"trends": []}),
        structured=structured or MagicMock(return_value=TrendSynthesis(trends=[])),
        tool_turn=MagicMock(),
    )


class RecencyWindowTests(unittest.TestCase):
    def test_inside_window(self):
        self.assertTrue(is_within_last_year(NOW - timedelta(days=10), NOW))
        self.assertTrue(is_within_last_year(NOW - timedelta(days=365), NOW))
        self.assertTrue(is_within_last_year(NOW, NOW))

    def test_outside_window(self):
        self.assertFalse(is_within_last_year(NOW - timedelta(days=366), NOW))
        self.assertFalse(is_within_last_year(NOW - timedelta(days=365, seconds=1), NOW))
        self.assertFalse(is_within_last_year(NOW + timedelta(days=1), NOW))

    def test_unparseable_is_outside(self):
        self.assertFalse(is_within_last_year("last tuesday", NOW))
        self.assertFalse(is_within_last_year(None, NOW))

    def test_iso_strings_with_z_suffix(self):
        self.assertTrue(is_within_last_year("2026-02-28T12:00:00Z", NOW))
        self.assertEqual(to_iso(NOW), "2026-03-01T00:00:00.000Z")


class NormalizeExternalUrlTests(unittest.TestCase):
    def test_adds_https_to_bare_host(self):
        self.assertEqual(
            normalize_external_url("tiktok.com/@creator/video/123"),
            "https://tiktok.com/@creator/video/123",
        )

    def test_lowercases_host_and_adds_root_path(self):
        self.assertEqual(normalize_external_url("HTTPS://Example.COM"), "https://example.com/")

    def test_rejects_non_http_schemes_and_blanks(self):
        self.assertIsNone(normalize_external_url("ftp://files.example.com/a"))
        self.assertIsNone(normalize_external_url("   "))
        self.assertIsNone(normalize_external_url(None))

    def test_idempotent(self):
        for raw in ("www.highsnobiety.com/p/gorpcore", "http://a.example/x?y=1#z"):
            once = normalize_external_url(raw)
            self.assertEqual(normalize_external_url(once), once)


class QueryVariantTests(unittest.TestCase):
    def test_variants_carry_current_and_previous_year(self):
        variants = build_query_variants("office-core", NOW)
        self.assertEqual(variants[0], "office-core")
        self.assertEqual(len(variants), 5)
        self.assertIn("office-core tiktok microtrend 2026", variants)
        self.assertIn("office-core tiktok aesthetic breakdown 2025 2026", variants)
        self.assertEqual(len(set(variants)), len(variants))
        for variant in variants:
            self.assertTrue(variant.startswith("office-core"))


class RecentSourceTests(unittest.TestCase):
    def test_undated_row_kept_only_when_server_filtered(self):
        row = {"url": "https://blog.example.com/a", "title": "A", "text": "body"}
        kept = to_recent_source(row, server_date_filtered=True, now=NOW)
        self.assertIsNotNone(kept)
        self.assertEqual(kept.published_at, "2026-03-01T00:00:00.000Z")
        self.assertIsNone(to_recent_source(row, server_date_filtered=False, now=NOW))

    def test_legacy_date_field_and_snippet_defaults(self):
        row = {"url": "blog.example.com/b", "published_date": RECENT}
        source = to_recent_source(row, server_date_filtered=False, now=NOW)
        self.assertEqual(source.url, "https://blog.example.com/b")
        self.assertEqual(source.title, "https://blog.example.com/b")
        self.assertEqual(source.snippet, "No snippet provided.")
        self.assertEqual(source.published_at, "2026-02-10T00:00:00.000Z")

    def test_snippet_trimmed_and_capped(self):
        row = {"url": "https://x.example/", "publishedDate": RECENT, "text": "  " + "a" * 900}
        source = to_recent_source(row, server_date_filtered=False, now=NOW)
        self.assertEqual(len(source.snippet), 500)

    def test_stale_row_dropped(self):
        row = {"url": "https://x.example/", "publishedDate": STALE}
        self.assertIsNone(to_recent_source(row, server_date_filtered=True, now=NOW))

    def test_dedupe_prefers_latest_then_longest_snippet(self):
        older = RecentSource(url="https://a.example/", title="t", published_at="2026-01-01T00:00:00.000Z", snippet="long snippet")
        newer = RecentSource(url="https://a.example/", title="t", published_at="2026-02-01T00:00:00.000Z", snippet="s")
        tie_short = RecentSource(url="https://b.example/", title="t", published_at=RECENT, snippet="s")
        tie_long = RecentSource(url="https://b.example/", title="t", published_at=RECENT, snippet="much longer")

        deduped = dedupe_sources([older, tie_short, newer, tie_long])
        self.assertEqual([s.url for s in deduped], ["https://a.example/", "https://b.example/"])
        self.assertEqual(deduped[0].snippet, "s")
        self.assertEqual(deduped[1].snippet, "much longer")

    def test_dedupe_is_order_independent_for_distinct_timestamps(self):
        older = RecentSource(url="https://a.example/", title="t", published_at="2026-01-01T00:00:00.000Z", snippet="old")
        newer = RecentSource(url="https://a.example/", title="t", published_at="2026-02-01T00:00:00.000Z", snippet="new")
        self.assertEqual(dedupe_sources([older, newer]), dedupe_sources([newer, older]))
        self.assertEqual(dedupe_sources([older, newer])[0].snippet, "new")


class ResearchTrendsTests(unittest.TestCase):
    def test_filters_items_to_pool_urls_and_recency(self):
        def fake_search(query, start_published_date=None, include_domains=None, num_results=10):
            return [
                {"url": "https://trends.example/gorpcore", "title": "Gorpcore", "publishedDate": RECENT, "text": "x"},
                {"url": "https://old.example/", "title": "Old", "publishedDate": STALE},
            ]

        structured = MagicMock(return_value=TrendSynthesis(trends=[
            make_item("trends.example/gorpcore"),
            make_item("https://trends.example/gorpcore", name="THERMAL-CORE"),
            make_item("https://not-in-pool.example/"),
            make_item("https://old.example/"),
            make_item("https://trends.example/gorpcore", name="Stale signal", observed=STALE),
        ]))
        caps = make_capabilities(search=MagicMock(side_effect=fake_search), structured=structured)

        output = research_trends(caps, "gorpcore", now=NOW)

        self.assertEqual(len(output.trends), 1)
        self.assertEqual(output.trends[0].source_url, "https://trends.example/gorpcore")
        self.assertEqual(output.trends[0].observed_at_iso, "2026-02-10T00:00:00.000Z")
        self.assertEqual(structured.call_args.args[0], "trend_synthesis")
        caps.answer.assert_not_called()

    def test_empty_pool_skips_synthesis(self):
        caps = make_capabilities(search=MagicMock(side_effect=SearchError("boom")))
        output = research_trends(caps, "gorpcore", now=NOW)
        self.assertEqual(output.trends, [])
        caps.structured.assert_not_called()
        caps.answer.assert_not_called()

    def test_unfiltered_retry_when_date_filtered_search_is_empty(self):
        calls = []
        lock = threading.Lock()

        def fake_search(query, start_published_date=None, include_domains=None, num_results=10):
            with lock:
                calls.append(start_published_date)
            if start_published_date:
                return []
            return [{"url": "https://a.example/", "publishedDate": RECENT}]

        caps = make_capabilities(search=MagicMock(side_effect=fake_search))
        research_trends(caps, "gorpcore", now=NOW)

        self.assertEqual(calls.count(None), 5)
        self.assertEqual(len([c for c in calls if c]), 5)
        caps.structured.assert_called_once()

    def test_failing_variant_does_not_drop_the_others(self):
        def fake_search(query, start_published_date=None, include_domains=None, num_results=10):
            if "microtrend" in query:
                raise SearchError("HTTP 502")
            slug = "base" if query == "gorpcore" else query.split()[2]
            return [{"url": f"https://{slug}.example/", "publishedDate": RECENT, "text": "signal"}]

        search = MagicMock(side_effect=fake_search)
        structured = MagicMock(return_value=TrendSynthesis(trends=[make_item("https://base.example/")]))
        caps = make_capabilities(search=search, structured=structured)

        output = research_trends(caps, "gorpcore", now=NOW)

        self.assertEqual([t.source_url for t in output.trends], ["https://base.example/"])
        user_prompt = structured.call_args.args[2]
        for url in ("https://base.example/", "https://emerging.example/", "https://trend.example/", "https://aesthetic.example/"):
            self.assertIn(url, user_prompt)
        self.assertNotIn("microtrend.example", user_prompt)
        # the failing variant was tried with and without the date filter
        failed = [c for c in search.call_args_list if "microtrend" in c.args[0]]
        self.assertEqual(len(failed), 2)

    def test_synthesis_failure_falls_back_to_answer_mode(self):
        search = MagicMock(return_value=[{"url": "https://a.example/", "publishedDate": RECENT}])
        answer = MagicMock(return_value={"trends": [
            make_item("https://a.example/").model_dump(),
            {"trend_name": "missing fields"},
        ]})
        caps = make_capabilities(
            search=search,
            structured=MagicMock(side_effect=LLMError("rate limited", provider="openai")),
            answer=answer,
        )

        output = research_trends(caps, "gorpcore", now=NOW)

        self.assertEqual([t.source_url for t in output.trends], ["https://a.example/"])
        system_prompt = answer.call_args.args[0]
        self.assertIn("https://a.example/", system_prompt)

    def test_answer_failure_returns_empty(self):
        caps = make_capabilities(
            search=MagicMock(return_value=[{"url": "https://a.example/", "publishedDate": RECENT}]),
            answer=MagicMock(side_effect=SearchError("down")),
        )
        output = research_trends(caps, "gorpcore", now=NOW)
        self.assertEqual(output.trends, [])

    def test_items_capped(self):
        items = [make_item("https://a.example/", name=f"Trend {i}") for i in range(20)]
        caps = make_capabilities(
            search=MagicMock(return_value=[{"url": "https://a.example/", "publishedDate": RECENT}]),
            structured=MagicMock(return_value=TrendSynthesis(trends=items)),
        )
        output = research_trends(caps, "gorpcore", now=NOW)
        self.assertEqual(len(output.trends), 15)
        self.assertEqual(output.trends[0].trend_name, "Trend 0")


if __name__ == "__main__":
    unittest.main()
