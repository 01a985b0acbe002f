"""
Verse Text Search

Full-text keyword search over one translation's verses, used when direct
reference parsing finds nothing and as the candidate source for paraphrase
matching.

One whoosh index per translation, held in RAM storage. Indexes are built
lazily on first query; concurrent first queries for the same translation
await a single shared build task. Any build or search failure is logged and
turned into an empty result.

Query modes:
- exact:   every query word must match a verse word exactly or as a prefix
           ("forward" matching, so "everlast" finds "everlasting")
- suggest: any query word may match, and words of 4+ letters also match
           within one edit ("belive" finds "believe")
"""

import sys
import asyncio
from typing import List, Dict, Optional

from whoosh.analysis import StandardAnalyzer
from whoosh.fields import Schema, ID, STORED, TEXT
from whoosh.filedb.filestore import RamStorage
from whoosh.query import And, Or, Term, Prefix, FuzzyTerm

from verse_model import SearchResult, Translation, clean_verse_text

TEXT_FIELD = "text"

MIN_PREFIX_LENGTH = 3
MIN_FUZZY_LENGTH = 4

# Shared by every index schema and by query analysis
ANALYZER = StandardAnalyzer()


def _log(message: str):
    print(f"[VerseSearch] {message}", file=sys.stderr, flush=True)


def _build_schema() -> Schema:
    return Schema(
        reference=ID(stored=True, unique=True),
        book=STORED(),
        chapter=STORED(),
        verse=STORED(),
        text=TEXT(stored=True, analyzer=ANALYZER),
    )


def query_words(query: str) -> List[str]:
    """Analyzed query words (lowercased, stop words dropped), first occurrence order."""
    words = []
    for token in ANALYZER(query):
        if token.text not in words:
            words.append(token.text)
    return words


class TranslationIndex:
    """A built whoosh index for one translation."""

    def __init__(self, translation_id: str, index, document_count: int):
        self.translation_id = translation_id
        self.index = index
        self.document_count = document_count

    def build_query(self, words: List[str], suggest: bool):
        clauses = []
        for word in words:
            options = [Term(TEXT_FIELD, word)]
            if len(word) >= MIN_PREFIX_LENGTH:
                options.append(Prefix(TEXT_FIELD, word))
            if suggest and len(word) >= MIN_FUZZY_LENGTH:
                options.append(FuzzyTerm(TEXT_FIELD, word, maxdist=1, prefixlength=1))
            clauses.append(Or(options) if len(options) > 1 else options[0])

        if suggest:
            return Or(clauses)
        return And(clauses)

    def search(self, query: str, limit: int, suggest: bool = False) -> List[SearchResult]:
        words = query_words(query)
        if not words:
            return []

        results = []
        with self.index.searcher() as searcher:
            hits = searcher.search(self.build_query(words, suggest), limit=limit)
            for hit in hits:
                results.append(SearchResult(
                    reference=hit['reference'],
                    text=hit[TEXT_FIELD],
                    book=hit['book'],
                    chapter=hit['chapter'],
                    verse=hit['verse'],
                ))
        return results


def build_translation_index(translation: Translation) -> TranslationIndex:
    """Index every verse of a translation (blocking; run off the event loop)."""
    storage = RamStorage()
    index = storage.create_index(_build_schema())

    count = 0
    writer = index.writer()
    try:
        for entry in translation.iter_verses():
            writer.add_document(
                reference=entry.reference,
                book=entry.book,
                chapter=entry.chapter,
                verse=entry.verse,
                text=clean_verse_text(entry.text),
            )
            count += 1
    except Exception:
        writer.cancel()
        raise
    writer.commit()

    return TranslationIndex(translation.id, index, count)


class VerseSearchIndex:
    """Lazily built, cached search indexes keyed by translation id."""

    def __init__(self, library, debug: bool = False):
        self.library = library
        self.debug = debug
        self._indexes: Dict[str, TranslationIndex] = {}
        self._builds: Dict[str, asyncio.Task] = {}
        self._generation = 0
        # Build attempts, including failed ones
        self.build_count = 0

    def is_ready(self, translation_id: Optional[str] = None) -> bool:
        resolved = self.library.resolve_loaded_id(translation_id)
        return resolved is not None and resolved in self._indexes

    async def preload(self, translation_id: Optional[str] = None) -> bool:
        """Build the index ahead of the first search. Returns True when ready."""
        return await self._ensure_index(translation_id) is not None

    def reset(self):
        """Drop every built index. In-flight builds finish but are not cached."""
        self._indexes.clear()
        self._builds.clear()
        self._generation += 1

    def _forget_build(self, key: str, task: asyncio.Task):
        if self._builds.get(key) is task:
            del self._builds[key]

    async def _build(self, translation_id: str) -> Optional[TranslationIndex]:
        generation = self._generation
        self.build_count += 1

        translation = self.library.get_translation_by_id(translation_id)
        if translation is None:
            _log(f"⚠ Translation {translation_id} disappeared before indexing")
            return None

        _log(f"Initializing search index ({translation_id})...")
        try:
            built = await asyncio.to_thread(build_translation_index, translation)
        except Exception as e:
            _log(f"⚠ Failed to initialize index ({translation_id}): {e}")
            return None

        if generation == self._generation:
            self._indexes[translation_id] = built
        _log(f"✓ Indexed {built.document_count} verses successfully ({translation_id})")
        return built

    async def _ensure_index(self, translation_id: Optional[str]) -> Optional[TranslationIndex]:
        resolved = self.library.resolve_loaded_id(translation_id)
        if resolved is None:
            _log(f"⚠ No translation available to index (requested {translation_id!r})")
            return None

        built = self._indexes.get(resolved)
        if built is not None:
            return built

        task = self._builds.get(resolved)
        if task is None:
            task = asyncio.ensure_future(self._build(resolved))
            self._builds[resolved] = task
            task.add_done_callback(lambda t, key=resolved: self._forget_build(key, t))

        # One caller giving up must not cancel the build the others are awaiting
        return await asyncio.shield(task)

    async def search(self, query: str, limit: int = 10,
                     translation_id: Optional[str] = None,
                     suggest: bool = False) -> List[SearchResult]:
        """
        Keyword search over one translation.

        Args:
            query: Free text; stop words are ignored
            limit: Maximum number of results
            translation_id: Translation to search (builtin when unknown or None)
            suggest: Relaxed, typo-tolerant matching

        Returns:
            Results ranked by relevance; empty on any failure
        """
        if not query or limit <= 0 or not query_words(query):
            return []

        built = await self._ensure_index(translation_id)
        if built is None:
            return []

        try:
            results = built.search(query, limit, suggest=suggest)
        except Exception as e:
            _log(f"⚠ Search error: {e}")
            return []

        if self.debug:
            _log(f"query={query!r} suggest={suggest} -> {len(results)} results")
        return results
