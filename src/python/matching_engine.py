"""
Verse Matching Engine

Single entry point for turning live sermon transcript text into Bible verses.

Two paths, tried in order:
1. Direct citation - "John 3:16", "Romans chapter eight verse twenty-eight"
   parsed and looked up in the chosen translation
2. Paraphrase - no citation found, so the chunk is windowed, candidate verses
   are retrieved by keyword search and scored lexically (plus semantically
   when an embedding backend is available)

A MatchingEngine owns every piece of state: the translation library, the
per-translation search indexes, the verse token and embedding caches, and the
in-flight task maps that keep concurrent callers from repeating work. Nothing
here raises on bad input or missing data; failures are logged to stderr and
the affected step returns an empty result.

Usage:
    engine = MatchingEngine.create_default()
    result = await engine.analyze("as it says in John 3:16")
"""

import sys
import asyncio
from typing import List, Dict, Optional, Tuple

import numpy as np

from embedding_model import EmbeddingBackend, create_default_backend
from matcher_config import MatchingConfig, DEFAULT_CONFIG, effective_candidate_limit
from paraphrase_matcher import (
    TextWindow,
    VerseTokens,
    build_text_windows,
    collect_candidates,
    describe_candidates,
    rank_candidates,
    verse_token_data,
)
from reference_parser import detect_bible_references, expand_reference
from translation_library import TranslationLibrary, DirectoryCorpusProvider
from verse_model import (
    AnalysisResult,
    ScriptureReference,
    SearchResult,
    TranslationSummary,
    make_reference_key,
)
from verse_search import VerseSearchIndex

VerseKey = Tuple[str, str]  # (translation id, "Book C:V")

# Text-search fallback size for resolve_references()
RESOLVE_SEARCH_LIMIT = 5


def _log(message: str, prefix: str = "[OfflineParaphrase]"):
    print(f"{prefix} {message}", file=sys.stderr, flush=True)


class MatchingEngine:
    """
    Context object for verse matching.

    Args:
        library: Translation corpus (defaults to the on-disk builtin + user folder)
        embedding_backend: Optional semantic scoring backend; None means lexical only
        config: Tuned defaults; per-call options override them
    """

    def __init__(self, library: Optional[TranslationLibrary] = None,
                 embedding_backend: Optional[EmbeddingBackend] = None,
                 config: Optional[MatchingConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self.library = library or TranslationLibrary()
        self.search_index = VerseSearchIndex(self.library, debug=self.config.debug)
        self.embedding_backend = embedding_backend

        # None = not probed yet, True = loaded, False = failed to load
        self._embedder_ready: Optional[bool] = None
        self._embedder_task: Optional[asyncio.Task] = None

        self._verse_tokens: Dict[VerseKey, VerseTokens] = {}
        self._verse_embeddings: Dict[VerseKey, np.ndarray] = {}
        self._embedding_tasks: Dict[VerseKey, asyncio.Task] = {}
        # Bumped by reset(); embeddings started before a reset are not cached
        self._generation = 0

    @classmethod
    def create_default(cls, config: Optional[MatchingConfig] = None) -> 'MatchingEngine':
        """Engine over the configured Bible folders, with sentence-transformers when installed."""
        config = config or DEFAULT_CONFIG
        backend = create_default_backend(config.embedding_model) if config.use_embeddings else None
        return cls(TranslationLibrary(DirectoryCorpusProvider()), backend, config)

    # ========================================================================
    # TRANSLATIONS
    # ========================================================================

    def get_available_translations(self) -> List[TranslationSummary]:
        return self.library.get_available_translations()

    def resolve_translation_token(self, token: str) -> Optional[str]:
        return self.library.resolve_translation_token(token)

    def find_translation_cue(self, text: str) -> Optional[str]:
        return self.library.find_translation_cue(text)

    def refresh_library(self) -> List[TranslationSummary]:
        """Reload translations from disk and drop everything derived from the old corpus."""
        summaries = self.library.refresh()
        self.reset()
        return summaries

    def reset(self):
        """Drop indexes, caches and in-flight work. The embedder stays loaded."""
        self.search_index.reset()
        self._verse_tokens.clear()
        self._verse_embeddings.clear()
        self._embedding_tasks.clear()
        self._generation += 1

    # ========================================================================
    # EMBEDDINGS
    # ========================================================================

    @property
    def semantic_available(self) -> bool:
        """False when there is no backend or it failed to load."""
        return self.embedding_backend is not None and self._embedder_ready is not False

    def retry_embeddings(self):
        """Probe the backend again on the next analysis after a failed load."""
        self._embedder_ready = None
        self._embedder_task = None

    async def _load_embedder(self) -> bool:
        try:
            await asyncio.to_thread(self.embedding_backend.load)
        except Exception as e:
            _log(f"⚠ Failed to load embedder, semantic scoring disabled: {e}", "[Embedding]")
            self._embedder_ready = False
            return False
        self._embedder_ready = True
        return True

    async def _ensure_embedder(self) -> bool:
        if self.embedding_backend is None:
            return False
        if self._embedder_ready is not None:
            return self._embedder_ready
        if self._embedder_task is None:
            self._embedder_task = asyncio.ensure_future(self._load_embedder())
        return await asyncio.shield(self._embedder_task)

    async def _embed_windows(self, windows: List[TextWindow]):
        """Attach an embedding to every window; on failure windows keep None."""
        try:
            matrix = await asyncio.to_thread(self.embedding_backend.embed_texts,
                                             [w.text for w in windows])
        except Exception as e:
            _log(f"⚠ Window embedding failed, scoring lexically: {e}", "[Embedding]")
            return
        for window, row in zip(windows, matrix):
            window.embedding = np.asarray(row, dtype=np.float32)

    async def _compute_verse_embedding(self, key: VerseKey, text: str) -> Optional[np.ndarray]:
        generation = self._generation
        try:
            embedding = await asyncio.to_thread(self.embedding_backend.embed, text)
        except Exception as e:
            _log(f"⚠ Embedding failed for {key[1]}: {e}", "[Embedding]")
            return None
        embedding = np.asarray(embedding, dtype=np.float32)
        if generation == self._generation:
            self._verse_embeddings[key] = embedding
        return embedding

    def _forget_embedding_task(self, key: VerseKey, task: asyncio.Task):
        if self._embedding_tasks.get(key) is task:
            del self._embedding_tasks[key]

    async def get_verse_embedding(self, translation_id: str, reference: str,
                                  text: str) -> Optional[np.ndarray]:
        """Cached verse embedding; concurrent requests for one verse share a single computation."""
        key = (translation_id, reference)
        cached = self._verse_embeddings.get(key)
        if cached is not None:
            return cached

        task = self._embedding_tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute_verse_embedding(key, text))
            self._embedding_tasks[key] = task
            task.add_done_callback(lambda t, key=key: self._forget_embedding_task(key, t))
        return await asyncio.shield(task)

    def get_verse_tokens(self, translation_id: str, reference: str, text: str) -> VerseTokens:
        key = (translation_id, reference)
        tokens = self._verse_tokens.get(key)
        if tokens is None:
            tokens = verse_token_data(text)
            self._verse_tokens[key] = tokens
        return tokens

    # ========================================================================
    # DIRECT PATH
    # ========================================================================

    async def detect_and_lookup_references(self, text: str,
                                           translation_id: Optional[str] = None) -> List[ScriptureReference]:
        """
        Find explicit citations in text and look each verse up.

        Args:
            text: Transcript text
            translation_id: Translation to read from (builtin when unknown or None)

        Returns:
            One ScriptureReference per concrete verse, in citation order.
            Citations whose verses are missing from the translation are dropped.
        """
        if not text or not text.strip():
            return []

        resolved_id = self.library.resolve_loaded_id(translation_id)
        if resolved_id is None:
            _log(f"⚠ No translation loaded (requested {translation_id!r})", "[BibleLibrary]")
            return []

        def verse_lookup(book, chapter, verse):
            return self.library.get_verse_text(resolved_id, book, chapter, verse)

        def verse_exists(book, chapter, verse):
            return verse_lookup(book, chapter, verse) is not None

        references = []
        for parsed in detect_bible_references(text, verse_exists, verse_lookup):
            for resolved in expand_reference(parsed, verse_lookup):
                references.append(ScriptureReference(
                    reference=make_reference_key(resolved.book, resolved.chapter, resolved.verse),
                    display_ref=resolved.display_ref,
                    verse_text=resolved.text,
                    source="direct",
                    translation_id=resolved_id,
                    book=resolved.book,
                    chapter=resolved.chapter,
                    verse=resolved.verse,
                    original_text=parsed.original_text,
                    start_index=parsed.start_index,
                    end_index=parsed.end_index,
                ))
        return references

    # ========================================================================
    # TEXT SEARCH
    # ========================================================================

    async def search_bible_text(self, query: str, limit: int = 10,
                                translation_id: Optional[str] = None,
                                suggest: bool = False) -> List[SearchResult]:
        return await self.search_index.search(query, limit, translation_id, suggest)

    async def search_bible_text_as_references(self, query: str, limit: int = 10,
                                              translation_id: Optional[str] = None) -> List[ScriptureReference]:
        """Keyword search results shaped like direct-path references."""
        resolved_id = self.library.resolve_loaded_id(translation_id)
        results = await self.search_bible_text(query, limit, translation_id)
        return [
            ScriptureReference(
                reference=result.reference,
                display_ref=result.reference,
                verse_text=result.text,
                source="search",
                translation_id=resolved_id,
                book=result.book,
                chapter=result.chapter,
                verse=result.verse,
            )
            for result in results
        ]

    async def resolve_references(self, query: str,
                                 translation_id: Optional[str] = None) -> List[ScriptureReference]:
        """A typed query: citations when there are any, otherwise the top keyword hits."""
        direct = await self.detect_and_lookup_references(query, translation_id)
        if direct:
            return direct
        return await self.search_bible_text_as_references(query, RESOLVE_SEARCH_LIMIT, translation_id)

    # ========================================================================
    # PARAPHRASE PATH
    # ========================================================================

    async def analyze_transcript_chunk_offline(self, text: str,
                                               min_confidence: Optional[float] = None,
                                               max_results: Optional[int] = None,
                                               min_words: Optional[int] = None,
                                               use_embeddings: Optional[bool] = None,
                                               candidate_limit: Optional[int] = None,
                                               translation_id: Optional[str] = None) -> AnalysisResult:
        """
        Find verses paraphrased in a transcript chunk.

        Args:
            text: Transcript chunk
            min_confidence: Acceptance threshold in [0, 1]
            max_results: Maximum matches returned
            min_words: Chunks with fewer whitespace-separated words are skipped
            use_embeddings: False forces lexical-only scoring for this call
            candidate_limit: Overall candidate cap (floored at 30)
            translation_id: Translation to match against

        Returns:
            AnalysisResult with paraphrased_verses sorted by confidence
        """
        options = self.config.with_overrides(
            min_confidence=min_confidence,
            max_results=max_results,
            min_words=min_words,
            use_embeddings=use_embeddings,
            candidate_limit=candidate_limit,
        )

        trimmed = (text or '').strip()
        if not trimmed or len(trimmed.split()) < options.min_words:
            return AnalysisResult(translation_id=translation_id)

        windows = build_text_windows(trimmed, options)
        if not windows:
            return AnalysisResult(translation_id=translation_id)

        resolved_id = self.library.resolve_loaded_id(translation_id)
        if resolved_id is None:
            _log(f"⚠ No translation loaded (requested {translation_id!r})", "[BibleLibrary]")
            return AnalysisResult(translation_id=translation_id)

        semantic = bool(options.use_embeddings) and await self._ensure_embedder()
        if semantic:
            await self._embed_windows(windows)

        async def search(query: str, limit: int, suggest: bool) -> List[SearchResult]:
            return await self.search_index.search(query, limit, resolved_id, suggest)

        candidates = await collect_candidates(
            windows, search, effective_candidate_limit(options), options
        )
        if options.debug:
            _log(f"{len(windows)} windows, {len(candidates)} candidates: {describe_candidates(candidates)}")
        if not candidates:
            return AnalysisResult(translation_id=resolved_id)

        results = list(candidates.values())
        tokens = [self.get_verse_tokens(resolved_id, r.reference, r.text) for r in results]
        if semantic:
            embeddings = await asyncio.gather(
                *(self.get_verse_embedding(resolved_id, r.reference, r.text) for r in results)
            )
        else:
            embeddings = [None] * len(results)

        matches = rank_candidates(
            list(zip(results, tokens, embeddings)),
            windows,
            semantic_enabled=semantic,
            min_confidence=options.min_confidence,
            max_results=options.max_results,
            config=options,
            translation_id=resolved_id,
        )
        return AnalysisResult(paraphrased_verses=matches, translation_id=resolved_id)

    async def analyze(self, text: str, translation_id: Optional[str] = None,
                      **options) -> AnalysisResult:
        """
        Analyze a transcript chunk: citations first, paraphrases only when there are none.

        A translation named in the text ("in the King James") takes precedence
        over translation_id. Extra keyword options go to
        analyze_transcript_chunk_offline().
        """
        requested_id = self.find_translation_cue(text or '') or translation_id

        references = await self.detect_and_lookup_references(text, requested_id)
        if references:
            return AnalysisResult(references=references, translation_id=references[0].translation_id)

        return await self.analyze_transcript_chunk_offline(
            text, translation_id=requested_id, **options
        )
