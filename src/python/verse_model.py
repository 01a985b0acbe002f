"""
Verse Model - shared dataclasses for the verse matching engine.

These classes cross the boundary between the matching engine and its host
(the transcript pipeline). Every class that is handed to the host has a
to_dict() emitting camelCase keys so it can be JSON-serialized for IPC.

Design principles:
- Translations are built once and never mutated while in use
- Search results have one explicit shape regardless of index internals
- Scores are always floats in [0, 1]
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Pattern, Union


# ============================================================================
# TYPE ALIASES
# ============================================================================

TranslationId = str  # e.g. "kjv", "web"
VerseIndex = Dict[str, str]  # "John 3:16" -> verse text

# Raw nested corpus: book -> chapter -> verse -> {"v": int, "t": str} or plain text
VerseValue = Union[Dict[str, Any], str]
BibleBooks = Dict[str, Dict[str, Dict[str, VerseValue]]]


# ============================================================================
# VERSE TEXT HELPERS
# ============================================================================

REFERENCE_KEY_PATTERN = re.compile(r'^(.+?)\s+(\d+):(\d+)$')


def make_reference_key(book: str, chapter: int, verse: int) -> str:
    """Build the verse index key, e.g. ("John", 3, 16) -> "John 3:16"."""
    return f"{book} {chapter}:{verse}"


def clean_verse_text(text: str) -> str:
    """
    Strip corpus markup from verse text.

    The KJV source marks paragraph starts with a leading '#' and the translators'
    supplied words with [brackets]. Both are dropped for display and scoring.
    """
    text = re.sub(r'^#\s*', '', text or '')
    text = re.sub(r'\[([^\]]+)\]', r'\1', text)
    return text.strip()


# ============================================================================
# TRANSLATION TYPES
# ============================================================================

@dataclass
class TranslationMetadata:
    """Identity and naming of one translation."""
    id: TranslationId
    short_name: str
    full_name: str
    language: str
    source: Optional[str] = None
    aliases: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'shortName': self.short_name,
            'fullName': self.full_name,
            'language': self.language,
            'aliases': list(self.aliases),
        }
        if self.source is not None:
            result['source'] = self.source
        return result


@dataclass
class TranslationSummary(TranslationMetadata):
    """Translation listing entry (no verse data)."""
    is_builtin: bool = False
    source_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['isBuiltin'] = self.is_builtin
        if self.source_path is not None:
            result['sourcePath'] = self.source_path
        return result


@dataclass
class Translation(TranslationMetadata):
    """A loaded translation with its flattened verse index."""
    books: BibleBooks = field(default_factory=dict)
    verse_index: VerseIndex = field(default_factory=dict)
    is_builtin: bool = False
    source_path: Optional[str] = None

    def summary(self) -> TranslationSummary:
        return TranslationSummary(
            id=self.id,
            short_name=self.short_name,
            full_name=self.full_name,
            language=self.language,
            source=self.source,
            aliases=list(self.aliases),
            is_builtin=self.is_builtin,
            source_path=self.source_path,
        )

    def iter_verses(self):
        """Yield a VerseEntry for every well-formed key in the verse index."""
        for reference, text in self.verse_index.items():
            match = REFERENCE_KEY_PATTERN.match(reference)
            if not match:
                continue
            yield VerseEntry(
                reference=reference,
                book=match.group(1),
                chapter=int(match.group(2)),
                verse=int(match.group(3)),
                text=text,
            )


@dataclass
class VerseEntry:
    """One verse within a translation (raw text, markup included)."""
    reference: str
    book: str
    chapter: int
    verse: int
    text: str


@dataclass
class AliasEntry:
    """A normalized name/abbreviation that resolves to a translation id."""
    alias: str
    translation_id: TranslationId
    pattern: Pattern


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class SearchResult:
    """One keyword-search hit. Text is cleaned of corpus markup."""
    reference: str
    text: str
    book: str
    chapter: int
    verse: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reference': self.reference,
            'text': self.text,
            'book': self.book,
            'chapter': self.chapter,
            'verse': self.verse,
        }


@dataclass
class ScriptureReference:
    """A concrete verse found by direct citation or keyword search."""
    reference: str
    display_ref: str
    verse_text: str
    source: str  # 'direct' or 'search'
    translation_id: TranslationId
    book: str
    chapter: int
    verse: int
    original_text: Optional[str] = None
    start_index: Optional[int] = None
    end_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'reference': self.reference,
            'displayRef': self.display_ref,
            'verseText': self.verse_text,
            'source': self.source,
            'translationId': self.translation_id,
            'book': self.book,
            'chapter': self.chapter,
            'verse': self.verse,
        }
        if self.original_text is not None:
            result['originalText'] = self.original_text
        if self.start_index is not None:
            result['startIndex'] = self.start_index
            result['endIndex'] = self.end_index
        return result


@dataclass
class ParaphraseMatch:
    """A verse accepted by the paraphrase path."""
    reference: str
    confidence: float  # 0.0 to 1.0
    matched_phrase: str
    verse_text: str
    translation_id: Optional[TranslationId] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reference': self.reference,
            'confidence': self.confidence,
            'matchedPhrase': self.matched_phrase,
            'verseText': self.verse_text,
            'translationId': self.translation_id,
        }


@dataclass
class AnalysisResult:
    """Outcome of analyzing one transcript chunk."""
    paraphrased_verses: List[ParaphraseMatch] = field(default_factory=list)
    references: List[ScriptureReference] = field(default_factory=list)
    translation_id: Optional[TranslationId] = None

    @property
    def has_matches(self) -> bool:
        return bool(self.references or self.paraphrased_verses)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'paraphrasedVerses': [m.to_dict() for m in self.paraphrased_verses],
            'references': [r.to_dict() for r in self.references],
            'translationId': self.translation_id,
        }
