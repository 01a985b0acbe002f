"""
Translation Library

Owns the mapping from translation id to verse text and resolves spoken or typed
translation names ("King James", "the ESV", "World English Bible") to an id.

Sources:
1. The builtin KJV (.svjson), loaded leniently
2. User translations: every *.svjson file in the user Bible folder, validated
   strictly and skipped with a warning when malformed

The loaded state is memoized. refresh() builds a complete new state and swaps
it in with a single assignment, so callers holding the previous LibraryState
keep reading a consistent snapshot.
"""

import re
import sys
import json
import threading
from pathlib import Path
from typing import List, Dict, Optional, Iterable, Tuple, Any

from matcher_config import BUILTIN_BIBLE_PATH, USER_BIBLE_DIR
from verse_model import (
    AliasEntry,
    BibleBooks,
    Translation,
    TranslationMetadata,
    TranslationSummary,
    VerseIndex,
    clean_verse_text,
    make_reference_key,
)

# ============================================================================
# BUILTIN TRANSLATION
# ============================================================================

BUILTIN_KJV_METADATA = TranslationMetadata(
    id="kjv",
    short_name="KJV",
    full_name="King James Version",
    language="en",
    source="Public Domain",
    aliases=["KJV", "King James", "King James Version"],
)

BUILTIN_TRANSLATION_ID = BUILTIN_KJV_METADATA.id

# Aliases this short need a contextual cue before find_translation_cue trusts them
SHORT_ALIAS_MAX_LENGTH = 4

TRANSLATION_CONTEXT_PATTERNS = [
    re.compile(r'\b(translation|version)\b', re.IGNORECASE),
    re.compile(r'\b(in|from)\s+the\b', re.IGNORECASE),
]

REQUIRED_STRING_FIELDS = ('id', 'shortName', 'fullName', 'language')


def _warn(message: str):
    print(f"[BibleLibrary] ⚠ {message}", file=sys.stderr, flush=True)


# ============================================================================
# CORPUS PROVIDERS
# ============================================================================

class CorpusProvider:
    """
    Supplies raw translation corpora to the library.

    Raw corpora are parsed .svjson dicts:
    {id, shortName, fullName, language, source?, aliases?, books: {...}}
    """

    def load_builtin(self) -> Optional[Dict[str, Any]]:
        return None

    def load_user_translations(self) -> Iterable[Tuple[str, Any]]:
        """Yield (source_path, raw) pairs. Unreadable sources are skipped."""
        return []


class DirectoryCorpusProvider(CorpusProvider):
    """Reads the builtin file and the *.svjson files in the user Bible folder."""

    def __init__(self, builtin_path: Optional[Path] = BUILTIN_BIBLE_PATH,
                 user_dir: Optional[Path] = USER_BIBLE_DIR):
        self.builtin_path = Path(builtin_path) if builtin_path else None
        self.user_dir = Path(user_dir) if user_dir else None

    def _read_json(self, path: Path) -> Optional[Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            _warn(f"Failed to load Bible file {path}: {e}")
            return None

    def load_builtin(self) -> Optional[Dict[str, Any]]:
        if not self.builtin_path:
            return None
        if not self.builtin_path.exists():
            _warn(f"Built-in KJV not found at {self.builtin_path}")
            return None
        return self._read_json(self.builtin_path)

    def load_user_translations(self) -> Iterable[Tuple[str, Any]]:
        if not self.user_dir or not self.user_dir.is_dir():
            return []

        loaded = []
        for path in sorted(self.user_dir.iterdir()):
            if path.is_dir() or path.suffix.lower() != '.svjson':
                continue
            raw = self._read_json(path)
            if raw is not None:
                loaded.append((str(path), raw))
        return loaded


class InMemoryCorpusProvider(CorpusProvider):
    """Serves corpora that the host has already parsed."""

    def __init__(self, builtin: Optional[Dict[str, Any]] = None,
                 user_translations: Optional[List[Any]] = None):
        self.builtin = builtin
        self.user_translations = list(user_translations or [])

    def load_builtin(self) -> Optional[Dict[str, Any]]:
        return self.builtin

    def load_user_translations(self) -> Iterable[Tuple[str, Any]]:
        return [(f"memory:{i}", raw) for i, raw in enumerate(self.user_translations)]


# ============================================================================
# NORMALIZATION & VALIDATION
# ============================================================================

def normalize_alias(value: str) -> str:
    return (value or '').strip().lower()


def alias_to_pattern(alias: str):
    """Word-boundary pattern for an alias; inner whitespace matches any run of spaces."""
    escaped = re.escape(normalize_alias(alias))
    spaced = re.sub(r'(\\\s)+|\s+', r'\\s+', escaped)
    return re.compile(rf'\b{spaced}\b', re.IGNORECASE)


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def build_verse_index(books: BibleBooks) -> VerseIndex:
    """Flatten book -> chapter -> verse data into "Book C:V" -> text."""
    index = {}

    for book_name, chapters in books.items():
        if not isinstance(chapters, dict):
            continue
        for chapter_key, verses in chapters.items():
            if not isinstance(verses, dict):
                continue
            chapter = _parse_int(chapter_key)
            if chapter is None:
                continue
            for verse_key, verse_value in verses.items():
                verse = _parse_int(verse_key)
                if verse is None:
                    continue
                if isinstance(verse_value, str):
                    text = verse_value
                elif isinstance(verse_value, dict):
                    text = verse_value.get('t')
                else:
                    text = None
                if not text or not isinstance(text, str):
                    continue
                index[make_reference_key(book_name, chapter, verse)] = text

    return index


def validate_user_translation(raw: Any) -> bool:
    """
    Strict check for user-supplied translation files.

    Requires the metadata string fields and a books mapping whose verses are all
    {"v": int, "t": str} objects. Problems are reported on stderr.
    """
    if not isinstance(raw, dict):
        return False

    for key in REQUIRED_STRING_FIELDS:
        if not isinstance(raw.get(key), str):
            return False

    books = raw.get('books')
    if not isinstance(books, dict):
        return False

    for book_name, chapters in books.items():
        if not isinstance(chapters, dict):
            _warn(f'Invalid chapters for book "{book_name}".')
            return False
        for chapter_key, verses in chapters.items():
            if not isinstance(verses, dict):
                _warn(f"Invalid verses for {book_name} {chapter_key}.")
                return False
            for verse_key, verse_value in verses.items():
                if not isinstance(verse_value, dict):
                    _warn(f"Verse {book_name} {chapter_key}:{verse_key} is not an object.")
                    return False
                v = verse_value.get('v')
                t = verse_value.get('t')
                if isinstance(v, bool) or not isinstance(v, int) or not isinstance(t, str):
                    _warn(f"Verse {book_name} {chapter_key}:{verse_key} missing v/t fields.")
                    return False

    return True


def normalize_translation(raw: Any, fallback: TranslationMetadata,
                          is_builtin: bool = False,
                          source_path: Optional[str] = None) -> Optional[Translation]:
    """Build a Translation from a raw corpus, filling metadata gaps from fallback."""
    if not isinstance(raw, dict):
        return None

    books = raw['books'] if isinstance(raw.get('books'), dict) else raw

    def text_field(key: str, default: Optional[str]) -> Optional[str]:
        value = raw.get(key)
        return value if isinstance(value, str) else default

    aliases = raw.get('aliases')
    if isinstance(aliases, list):
        aliases = [a for a in aliases if isinstance(a, str)]
    else:
        aliases = list(fallback.aliases)

    return Translation(
        id=text_field('id', fallback.id),
        short_name=text_field('shortName', fallback.short_name),
        full_name=text_field('fullName', fallback.full_name),
        language=text_field('language', fallback.language),
        source=text_field('source', fallback.source),
        aliases=aliases,
        books=books,
        verse_index=build_verse_index(books),
        is_builtin=is_builtin,
        source_path=source_path,
    )


def _metadata_from_raw(raw: Dict[str, Any]) -> TranslationMetadata:
    return TranslationMetadata(
        id=raw['id'],
        short_name=raw['shortName'],
        full_name=raw['fullName'],
        language=raw['language'],
        source=raw.get('source') if isinstance(raw.get('source'), str) else None,
    )


# ============================================================================
# LIBRARY STATE
# ============================================================================

class LibraryState:
    """One immutable snapshot of the loaded library."""

    def __init__(self, translations: Dict[str, Translation]):
        self.translations = translations

        summaries = [t.summary() for t in translations.values()]
        summaries.sort(key=lambda s: (not s.is_builtin, s.short_name.lower()))
        self.summaries: List[TranslationSummary] = summaries

        self.alias_index: Dict[str, str] = {}
        self.alias_entries: List[AliasEntry] = []
        for summary in summaries:
            self._add_alias(summary.id, summary.id)
            self._add_alias(summary.short_name, summary.id)
            self._add_alias(summary.full_name, summary.id)
            for alias in summary.aliases:
                self._add_alias(alias, summary.id)

        # Longest first so "king james version" is tried before "kjv"
        self.alias_entries.sort(key=lambda e: len(e.alias), reverse=True)

    def _add_alias(self, alias: str, translation_id: str):
        normalized = normalize_alias(alias)
        if not normalized or normalized in self.alias_index:
            return
        self.alias_index[normalized] = translation_id
        self.alias_entries.append(
            AliasEntry(alias=normalized, translation_id=translation_id,
                       pattern=alias_to_pattern(normalized))
        )


# ============================================================================
# TRANSLATION LIBRARY
# ============================================================================

class TranslationLibrary:
    """Memoized translation corpus with alias resolution."""

    def __init__(self, provider: Optional[CorpusProvider] = None):
        self.provider = provider or DirectoryCorpusProvider()
        self._state: Optional[LibraryState] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_builtin(self) -> Optional[Translation]:
        try:
            raw = self.provider.load_builtin()
        except Exception as e:
            _warn(f"Failed to fetch built-in KJV: {e}")
            return None
        if raw is None:
            return None
        return normalize_translation(raw, BUILTIN_KJV_METADATA, is_builtin=True)

    def _load_user_translations(self) -> List[Translation]:
        try:
            sources = list(self.provider.load_user_translations())
        except Exception as e:
            _warn(f"User Bible folder not available: {e}")
            return []

        translations = []
        for source_path, raw in sources:
            if not validate_user_translation(raw):
                _warn(f"Skipping invalid Bible file: {source_path}")
                continue
            translation = normalize_translation(
                raw, _metadata_from_raw(raw), is_builtin=False, source_path=source_path
            )
            if translation:
                translations.append(translation)
        return translations

    def _build_state(self) -> LibraryState:
        translations: Dict[str, Translation] = {}

        builtin = self._load_builtin()
        if builtin:
            translations[builtin.id] = builtin

        for translation in self._load_user_translations():
            if translation.id == BUILTIN_TRANSLATION_ID:
                _warn(f'Ignoring user translation with reserved id "{translation.id}".')
                continue
            translations[translation.id] = translation

        return LibraryState(translations)

    def state(self) -> LibraryState:
        """Current snapshot, loading it on first use."""
        state = self._state
        if state is not None:
            return state
        with self._lock:
            if self._state is None:
                self._state = self._build_state()
            return self._state

    def refresh(self) -> List[TranslationSummary]:
        """Rebuild from the provider and swap the new state in."""
        new_state = self._build_state()
        with self._lock:
            self._state = new_state
        return new_state.summaries

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_available_translations(self) -> List[TranslationSummary]:
        return list(self.state().summaries)

    def get_translation_by_id(self, translation_id: str) -> Optional[Translation]:
        if not translation_id:
            return None
        return self.state().translations.get(translation_id)

    def load_verses(self, translation_id: Optional[str] = None) -> Optional[VerseIndex]:
        """Verse index for the id, falling back to the builtin translation."""
        state = self.state()
        translation = state.translations.get(translation_id or BUILTIN_TRANSLATION_ID)
        if translation is None:
            translation = state.translations.get(BUILTIN_TRANSLATION_ID)
        return translation.verse_index if translation else None

    def resolve_loaded_id(self, translation_id: Optional[str] = None) -> Optional[str]:
        """The id load_verses() would actually serve, or None if nothing is loaded."""
        state = self.state()
        if translation_id and translation_id in state.translations:
            return translation_id
        if BUILTIN_TRANSLATION_ID in state.translations:
            return BUILTIN_TRANSLATION_ID
        return None

    def get_verse_text(self, translation_id: Optional[str], book: str,
                       chapter: int, verse: int) -> Optional[str]:
        verses = self.load_verses(translation_id)
        if not verses:
            return None
        text = verses.get(make_reference_key(book, chapter, verse))
        if not text:
            return None
        return clean_verse_text(text)

    # ------------------------------------------------------------------
    # Alias resolution
    # ------------------------------------------------------------------

    def resolve_translation_token(self, token: str) -> Optional[str]:
        normalized = normalize_alias(token)
        if not normalized:
            return None
        return self.state().alias_index.get(normalized)

    def find_translation_cue(self, text: str) -> Optional[str]:
        """
        Find a translation named in free text.

        Aliases are tried longest first. An alias longer than four characters
        wins on its own. A short one ("kjv", "web") needs a cue such as
        "version", "translation", "in the" or "from the", unless it is the only
        translation named anywhere in the text.
        """
        normalized = normalize_alias(text)
        if not normalized:
            return None

        has_context = any(p.search(normalized) for p in TRANSLATION_CONTEXT_PATTERNS)

        found: List[str] = []
        for entry in self.state().alias_entries:
            if not entry.pattern.search(normalized):
                continue
            if has_context or len(entry.alias) > SHORT_ALIAS_MAX_LENGTH:
                return entry.translation_id
            if entry.translation_id not in found:
                found.append(entry.translation_id)

        if len(found) == 1:
            return found[0]
        return None

    def resolve_translation_id(self, override: Optional[str],
                               default_id: Optional[str] = None) -> str:
        """Alias, then exact id, then the default (builtin when unset)."""
        fallback = default_id or BUILTIN_TRANSLATION_ID
        trimmed = (override or '').strip()
        if not trimmed:
            return fallback

        resolved = self.resolve_translation_token(trimmed)
        if resolved:
            return resolved

        if self.get_translation_by_id(trimmed):
            return trimmed

        return fallback
