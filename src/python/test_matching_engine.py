#!/usr/bin/env python3
"""
End-to-end tests for the matching engine (matching_engine.py).

Runs the full pipeline against the fixture corpus in testdata/ (a KJV sample
as the builtin translation plus a WEB sample in the user folder). Embedding
backends are fakes, so no model is downloaded.

Covers:
- Direct citations: lookup, ranges, spans, translation selection
- Citation precedence over paraphrase matching
- Paraphrase matching: lexical only, with embeddings, with a failing backend
- Determinism, threshold monotonicity, idempotent caching
- Single-flight index builds and embedding computations
- Reset while a verse embedding is in flight
- Fail-open behavior (short input, empty library)
"""

import sys
import os
import asyncio
import threading
import unittest
from collections import Counter
from pathlib import Path

import numpy as np

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from embedding_model import EmbeddingBackend
from matcher_config import MatchingConfig
from matching_engine import MatchingEngine
from translation_library import DirectoryCorpusProvider, InMemoryCorpusProvider, TranslationLibrary

TESTDATA = Path(__file__).parent / "testdata"

QUOTE = "For God so loved the world, that he gave his only begotten Son"
ROMANS_PARAPHRASE = "we know all things work together for good to them that love God"
JOHN_3_16_TEXT = ("For God so loved the world, that he gave his only begotten Son, that whosoever "
                  "believeth in him should not perish, but have everlasting life.")


class ConstantBackend(EmbeddingBackend):
    """Every text maps to the same vector, so every semantic score is 1.0."""

    def __init__(self):
        self.load_calls = 0
        self.embedded = []

    def load(self):
        self.load_calls += 1

    def embed(self, text):
        self.embedded.append(text)
        return np.array([1.0, 0.0, 0.0], dtype=np.float32)


class FailingLoadBackend(EmbeddingBackend):

    def load(self):
        raise RuntimeError("model not available")

    def embed(self, text):
        raise AssertionError("embed called without a loaded model")


class VerseEmbedFailureBackend(ConstantBackend):
    """Windows embed fine; single verse embeddings fail."""

    def embed_texts(self, texts):
        return np.tile(np.array([1.0, 0.0, 0.0], dtype=np.float32), (len(texts), 1))

    def embed(self, text):
        raise RuntimeError("encoder crashed")


class GatedBackend(ConstantBackend):
    """embed() blocks until released, holding a verse embedding in flight."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def embed(self, text):
        self.started.set()
        self.release.wait(5)
        return super().embed(text)


def make_library() -> TranslationLibrary:
    return TranslationLibrary(DirectoryCorpusProvider(
        TESTDATA / "kjv_sample.svjson", TESTDATA / "bibles"
    ))


def make_engine(backend=None, **config) -> MatchingEngine:
    config.setdefault("debug", False)
    return MatchingEngine(make_library(), backend, MatchingConfig(**config))


class TestDirectLookup(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine = make_engine()

    async def test_single_citation(self):
        refs = await self.engine.detect_and_lookup_references("John 3:16")
        self.assertEqual(len(refs), 1)
        ref = refs[0]
        self.assertEqual(ref.reference, "John 3:16")
        self.assertEqual(ref.display_ref, "John 3:16")
        self.assertEqual(ref.source, "direct")
        self.assertEqual(ref.translation_id, "kjv")
        self.assertEqual(ref.verse_text, JOHN_3_16_TEXT)
        self.assertEqual((ref.start_index, ref.end_index), (0, 9))
        self.assertEqual(ref.original_text, "John 3:16")

    async def test_range_expands_to_each_verse(self):
        refs = await self.engine.detect_and_lookup_references("read John 3:16-18 with me")
        self.assertEqual([r.verse for r in refs], [16, 17, 18])
        self.assertTrue(all(r.original_text == "John 3:16-18" for r in refs))

    async def test_markup_cleaned(self):
        refs = await self.engine.detect_and_lookup_references("Genesis 1:1")
        self.assertEqual(refs[0].verse_text, "In the beginning God created the heaven and the earth.")

    async def test_chapter_only_resolves_verse_one(self):
        refs = await self.engine.detect_and_lookup_references("Psalm 23")
        self.assertEqual([r.reference for r in refs], ["Psalms 23:1"])

    async def test_run_together_number_checked_against_corpus(self):
        refs = await self.engine.detect_and_lookup_references("Hebrews 725")
        self.assertEqual([r.reference for r in refs], ["Hebrews 7:25"])

    async def test_missing_verse_dropped(self):
        self.assertEqual(await self.engine.detect_and_lookup_references("John 3:99"), [])

    async def test_translation_selection(self):
        refs = await self.engine.detect_and_lookup_references("Psalm 23:1", "web")
        self.assertEqual(refs[0].verse_text, "Yahweh is my shepherd; I shall lack nothing.")
        self.assertEqual(refs[0].translation_id, "web")

    async def test_unknown_translation_falls_back_to_builtin(self):
        refs = await self.engine.detect_and_lookup_references("John 11:35", "niv")
        self.assertEqual(refs[0].translation_id, "kjv")
        self.assertEqual(refs[0].verse_text, "Jesus wept.")

    async def test_no_citation(self):
        self.assertEqual(await self.engine.detect_and_lookup_references("God is love"), [])
        self.assertEqual(await self.engine.detect_and_lookup_references(""), [])


class TestAnalyze(unittest.IsolatedAsyncioTestCase):

    async def test_citation_takes_precedence(self):
        engine = make_engine()
        result = await engine.analyze("John 3:16")
        self.assertEqual(len(result.references), 1)
        self.assertEqual(result.references[0].start_index, 0)
        self.assertEqual(result.references[0].end_index, len("John 3:16"))
        self.assertEqual(result.paraphrased_verses, [])
        # Paraphrase path never touched the index
        self.assertEqual(engine.search_index.build_count, 0)

    async def test_citation_with_quoted_text(self):
        engine = make_engine()
        result = await engine.analyze(f"Turn to John 3:16. {QUOTE}")
        self.assertEqual([r.reference for r in result.references], ["John 3:16"])
        self.assertEqual(result.paraphrased_verses, [])

    async def test_paraphrase_when_no_citation(self):
        engine = make_engine()
        result = await engine.analyze(QUOTE)
        self.assertEqual(result.references, [])
        self.assertEqual(result.paraphrased_verses[0].reference, "John 3:16")
        self.assertEqual(result.translation_id, "kjv")

    async def test_spoken_translation_cue(self):
        engine = make_engine()
        result = await engine.analyze("In the World English Bible, Psalm 23:1 says", translation_id="kjv")
        self.assertEqual(result.translation_id, "web")
        self.assertEqual(result.references[0].verse_text, "Yahweh is my shepherd; I shall lack nothing.")

    async def test_caller_translation_used_without_cue(self):
        engine = make_engine()
        result = await engine.analyze("Psalm 23:1", translation_id="web")
        self.assertEqual(result.translation_id, "web")

    async def test_options_passed_through(self):
        engine = make_engine()
        result = await engine.analyze(QUOTE, min_confidence=0.99)
        self.assertFalse(result.has_matches)

    async def test_to_dict_uses_camel_case(self):
        engine = make_engine()
        payload = (await engine.analyze("John 3:16")).to_dict()
        self.assertEqual(set(payload), {"paraphrasedVerses", "references", "translationId"})
        self.assertEqual(payload["references"][0]["displayRef"], "John 3:16")
        self.assertEqual(payload["references"][0]["startIndex"], 0)


class TestParaphraseLexical(unittest.IsolatedAsyncioTestCase):
    """No embedding backend: lexical scoring only."""

    async def asyncSetUp(self):
        self.engine = make_engine()

    async def test_john_3_16_quote(self):
        result = await self.engine.analyze_transcript_chunk_offline(QUOTE)
        top = result.paraphrased_verses[0]
        self.assertEqual(top.reference, "John 3:16")
        self.assertGreaterEqual(top.confidence, 0.6)
        self.assertAlmostEqual(top.confidence, 0.65)
        self.assertEqual(top.matched_phrase, QUOTE)
        self.assertEqual(top.translation_id, "kjv")
        self.assertFalse(self.engine.semantic_available)

    async def test_romans_paraphrase(self):
        result = await self.engine.analyze_transcript_chunk_offline(ROMANS_PARAPHRASE)
        self.assertEqual(result.paraphrased_verses[0].reference, "Romans 8:28")

    async def test_short_input_skips_index(self):
        result = await self.engine.analyze_transcript_chunk_offline("God is love")
        self.assertEqual(result.paraphrased_verses, [])
        self.assertEqual(self.engine.search_index.build_count, 0)

    async def test_min_words_override(self):
        result = await self.engine.analyze_transcript_chunk_offline(QUOTE, min_words=20)
        self.assertEqual(result.paraphrased_verses, [])
        self.assertEqual(self.engine.search_index.build_count, 0)

    async def test_love_query_without_embeddings(self):
        results = await self.engine.search_bible_text("love")
        self.assertTrue(results)
        self.assertTrue(all("lov" in r.text.lower() for r in results))

    async def test_deterministic(self):
        first = await self.engine.analyze_transcript_chunk_offline(QUOTE, min_confidence=0.0)
        second = await make_engine().analyze_transcript_chunk_offline(QUOTE, min_confidence=0.0)
        self.assertEqual(first.paraphrased_verses, second.paraphrased_verses)

    async def test_threshold_monotonicity(self):
        previous = None
        for threshold in (0.0, 0.2, 0.4, 0.6, 0.8):
            result = await self.engine.analyze_transcript_chunk_offline(
                QUOTE, min_confidence=threshold, max_results=50
            )
            references = {m.reference for m in result.paraphrased_verses}
            if previous is not None:
                self.assertTrue(references <= previous)
            previous = references

    async def test_results_sorted_and_capped(self):
        result = await self.engine.analyze_transcript_chunk_offline(QUOTE, min_confidence=0.0)
        confidences = [m.confidence for m in result.paraphrased_verses]
        self.assertLessEqual(len(confidences), 3)
        self.assertEqual(confidences, sorted(confidences, reverse=True))

    async def test_other_translation(self):
        result = await self.engine.analyze_transcript_chunk_offline(
            "Yahweh is my shepherd and I shall lack nothing", translation_id="web"
        )
        self.assertEqual(result.paraphrased_verses[0].reference, "Psalms 23:1")
        self.assertEqual(result.translation_id, "web")

    async def test_verse_tokens_cached(self):
        await self.engine.analyze_transcript_chunk_offline(QUOTE)
        tokens = self.engine.get_verse_tokens("kjv", "John 3:16", JOHN_3_16_TEXT)
        await self.engine.analyze_transcript_chunk_offline(QUOTE)
        self.assertIs(self.engine.get_verse_tokens("kjv", "John 3:16", JOHN_3_16_TEXT), tokens)


class TestParaphraseSemantic(unittest.IsolatedAsyncioTestCase):
    """Fake embedding backends."""

    async def test_semantic_boosts_confidence(self):
        backend = ConstantBackend()
        engine = make_engine(backend)
        result = await engine.analyze_transcript_chunk_offline(QUOTE)
        top = result.paraphrased_verses[0]
        self.assertEqual(top.reference, "John 3:16")
        self.assertAlmostEqual(top.confidence, 0.7 + 0.3 * 0.65, places=5)
        self.assertTrue(engine.semantic_available)
        self.assertEqual(backend.load_calls, 1)

    async def test_use_embeddings_false_per_call(self):
        backend = ConstantBackend()
        engine = make_engine(backend)
        result = await engine.analyze_transcript_chunk_offline(QUOTE, use_embeddings=False)
        self.assertAlmostEqual(result.paraphrased_verses[0].confidence, 0.65)
        self.assertEqual(backend.embedded, [])
        self.assertEqual(backend.load_calls, 0)

    async def test_failed_load_falls_back_to_lexical(self):
        engine = make_engine(FailingLoadBackend())
        lexical = await make_engine().analyze_transcript_chunk_offline(QUOTE)
        result = await engine.analyze_transcript_chunk_offline(QUOTE)
        self.assertEqual(result.paraphrased_verses, lexical.paraphrased_verses)
        self.assertFalse(engine.semantic_available)

        engine.retry_embeddings()
        self.assertTrue(engine.semantic_available)

    async def test_failed_verse_embedding_scores_lexically(self):
        engine = make_engine(VerseEmbedFailureBackend())
        result = await engine.analyze_transcript_chunk_offline(QUOTE)
        self.assertEqual(result.paraphrased_verses[0].reference, "John 3:16")
        self.assertAlmostEqual(result.paraphrased_verses[0].confidence, 0.65)
        self.assertNotIn(("kjv", "John 3:16"), engine._verse_embeddings)

    async def test_verse_embeddings_cached(self):
        backend = ConstantBackend()
        engine = make_engine(backend)
        await engine.analyze_transcript_chunk_offline(QUOTE)
        cached = engine._verse_embeddings[("kjv", "John 3:16")]
        await engine.analyze_transcript_chunk_offline(QUOTE)
        self.assertIs(engine._verse_embeddings[("kjv", "John 3:16")], cached)
        self.assertEqual(Counter(backend.embedded)[JOHN_3_16_TEXT], 1)

    async def test_concurrent_embeddings_coalesce(self):
        backend = ConstantBackend()
        engine = make_engine(backend)
        await asyncio.gather(
            engine.analyze_transcript_chunk_offline(QUOTE),
            engine.analyze_transcript_chunk_offline(QUOTE),
        )
        self.assertEqual(backend.load_calls, 1)
        self.assertEqual(Counter(backend.embedded)[JOHN_3_16_TEXT], 1)
        self.assertEqual(engine._embedding_tasks, {})

    async def test_semantic_gate_admits_low_overlap(self):
        engine = make_engine(ConstantBackend())
        result = await engine.analyze_transcript_chunk_offline(
            "the shepherd walked across distant hills today", max_results=10
        )
        self.assertIn("Psalms 23:1", [m.reference for m in result.paraphrased_verses])

        lexical = await make_engine().analyze_transcript_chunk_offline(
            "the shepherd walked across distant hills today", min_confidence=0.0
        )
        self.assertNotIn("Psalms 23:1", [m.reference for m in lexical.paraphrased_verses])


class TestConcurrencyAndLifecycle(unittest.IsolatedAsyncioTestCase):

    async def test_concurrent_analyze_builds_index_once(self):
        engine = make_engine()
        first, second = await asyncio.gather(
            engine.analyze(QUOTE), engine.analyze(ROMANS_PARAPHRASE)
        )
        self.assertEqual(engine.search_index.build_count, 1)
        self.assertEqual(first.paraphrased_verses[0].reference, "John 3:16")
        self.assertEqual(second.paraphrased_verses[0].reference, "Romans 8:28")

    async def test_reset_drops_caches(self):
        engine = make_engine()
        await engine.analyze_transcript_chunk_offline(QUOTE)
        engine.reset()
        self.assertFalse(engine.search_index.is_ready())
        await engine.analyze_transcript_chunk_offline(QUOTE)
        self.assertEqual(engine.search_index.build_count, 2)

    async def test_reset_discards_in_flight_embedding(self):
        backend = GatedBackend()
        engine = make_engine(backend)
        key = ("kjv", "John 3:16")
        task = asyncio.ensure_future(engine.get_verse_embedding(*key, JOHN_3_16_TEXT))
        await asyncio.to_thread(backend.started.wait, 5)
        engine.reset()
        backend.release.set()

        self.assertIsNotNone(await task)
        self.assertNotIn(key, engine._verse_embeddings)

        await engine.get_verse_embedding(*key, JOHN_3_16_TEXT)
        self.assertIn(key, engine._verse_embeddings)

    async def test_refresh_library(self):
        engine = make_engine()
        await engine.search_bible_text("god")
        summaries = engine.refresh_library()
        self.assertEqual([s.id for s in summaries], ["kjv", "web"])
        self.assertFalse(engine.search_index.is_ready())

    async def test_empty_library_fails_open(self):
        engine = MatchingEngine(TranslationLibrary(InMemoryCorpusProvider()),
                                config=MatchingConfig(debug=False))
        self.assertEqual(await engine.detect_and_lookup_references("John 3:16"), [])
        result = await engine.analyze(QUOTE)
        self.assertFalse(result.has_matches)
        self.assertEqual(await engine.search_bible_text("god"), [])


class TestSearchAndTranslations(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.engine = make_engine()

    async def test_search_as_references(self):
        refs = await self.engine.search_bible_text_as_references("shepherd")
        self.assertEqual(len(refs), 1)
        self.assertEqual(refs[0].source, "search")
        self.assertEqual(refs[0].reference, "Psalms 23:1")
        self.assertEqual(refs[0].translation_id, "kjv")

    async def test_resolve_references_prefers_citation(self):
        refs = await self.engine.resolve_references("Romans 8:28")
        self.assertEqual([(r.reference, r.source) for r in refs], [("Romans 8:28", "direct")])

    async def test_resolve_references_falls_back_to_search(self):
        refs = await self.engine.resolve_references("God")
        self.assertTrue(refs)
        self.assertLessEqual(len(refs), 5)
        self.assertTrue(all(r.source == "search" for r in refs))

    async def test_translation_delegates(self):
        self.assertEqual([s.short_name for s in self.engine.get_available_translations()],
                         ["KJV", "WEB"])
        self.assertEqual(self.engine.resolve_translation_token("King James"), "kjv")
        self.assertEqual(self.engine.find_translation_cue("from the web translation"), "web")


if __name__ == '__main__':
    unittest.main()
