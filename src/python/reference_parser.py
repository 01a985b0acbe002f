#!/usr/bin/env python3
"""
Bible Reference Parser for Live Transcripts

First pass of verse matching: find explicit citations in transcript text and
resolve them to concrete verses.

Handles the formats speech-to-text produces:
- Standard: "John 3:16", "Genesis 1:1-5", "Romans 12:1, 2"
- Cross-chapter / cross-book: "John 3:16-4:2", "Genesis 50:26 - Exodus 1:2"
- Period / comma: "Romans 12.1", "Revelation 19, 16"
- Spoken enumeration: "Isaiah 9, 6, and 7" → Isaiah 9:6-7
- Verbose: "John chapter 3 verse 16", "Matthew 2 verses 1 through 12"
- Spoken verse numbers: "Romans 12 one" → Romans 12:1
- Run-together: "Hebrews 725" → Hebrews 7:25 (validated against the corpus)
- Chapter ranges: "Genesis 1-2"
"""

import re
from dataclasses import dataclass
from typing import List, Tuple, Dict, Optional, Callable

# Callbacks into the translation library
VerseExists = Callable[[str, int, int], bool]
VerseLookup = Callable[[str, int, int], Optional[str]]

# ============================================================================
# BIBLE BOOK DATA
# ============================================================================

# (canonical name, chapter count, short forms) in canonical order
BOOK_DATA = [
    # Old Testament
    ('Genesis', 50, ['gen']),
    ('Exodus', 40, ['exod', 'ex']),
    ('Leviticus', 27, ['lev']),
    ('Numbers', 36, ['num']),
    ('Deuteronomy', 34, ['deut']),
    ('Joshua', 24, ['josh']),
    ('Judges', 21, ['judg']),
    ('Ruth', 4, []),
    ('1 Samuel', 31, ['sam']),
    ('2 Samuel', 24, ['sam']),
    ('1 Kings', 22, ['kgs']),
    ('2 Kings', 25, ['kgs']),
    ('1 Chronicles', 29, ['chron', 'chr']),
    ('2 Chronicles', 36, ['chron', 'chr']),
    ('Ezra', 10, []),
    ('Nehemiah', 13, ['neh']),
    ('Esther', 10, ['esth', 'est']),
    ('Job', 42, []),
    ('Psalms', 150, ['psalm', 'psa', 'ps']),
    ('Proverbs', 31, ['prov', 'pro']),
    ('Ecclesiastes', 12, ['eccl', 'ecc']),
    ('Song of Solomon', 8, ['song of songs', 'song', 'sos']),
    ('Isaiah', 66, ['isa']),
    ('Jeremiah', 52, ['jer']),
    ('Lamentations', 5, ['lam']),
    ('Ezekiel', 48, ['ezek']),
    ('Daniel', 12, ['dan']),
    ('Hosea', 14, ['hos']),
    ('Joel', 3, []),
    ('Amos', 9, []),
    ('Obadiah', 1, ['obad']),
    ('Jonah', 4, []),
    ('Micah', 7, ['mic']),
    ('Nahum', 3, ['nah']),
    ('Habakkuk', 3, ['hab']),
    ('Zephaniah', 3, ['zeph']),
    ('Haggai', 2, ['hag']),
    ('Zechariah', 14, ['zech']),
    ('Malachi', 4, ['mal']),
    # New Testament
    ('Matthew', 28, ['matt', 'mat', 'mt']),
    ('Mark', 16, ['mk']),
    ('Luke', 24, ['lk']),
    ('John', 21, ['jn', 'jhn']),
    ('Acts', 28, []),
    ('Romans', 16, ['rom']),
    ('1 Corinthians', 16, ['cor']),
    ('2 Corinthians', 13, ['cor']),
    ('Galatians', 6, ['gal']),
    ('Ephesians', 6, ['eph']),
    ('Philippians', 4, ['phil', 'php']),
    ('Colossians', 4, ['col']),
    ('1 Thessalonians', 5, ['thess']),
    ('2 Thessalonians', 3, ['thess']),
    ('1 Timothy', 6, ['tim']),
    ('2 Timothy', 4, ['tim']),
    ('Titus', 3, ['tit']),
    ('Philemon', 1, ['phlm', 'phm']),
    ('Hebrews', 13, ['heb']),
    ('James', 5, ['jas']),
    ('1 Peter', 5, ['pet']),
    ('2 Peter', 3, ['pet']),
    ('1 John', 5, ['jn']),
    ('2 John', 1, ['jn']),
    ('3 John', 1, ['jn']),
    ('Jude', 1, []),
    ('Revelation', 22, ['rev', 'revelations']),
]

BOOK_CHAPTER_COUNTS: Dict[str, int] = {name: chapters for name, chapters, _ in BOOK_DATA}

SINGLE_CHAPTER_BOOKS = frozenset(name for name, chapters, _ in BOOK_DATA if chapters == 1)

# Spoken and written ordinals for numbered books
ORDINAL_PREFIXES = {
    '1': ['1 ', '1', 'first ', '1st '],
    '2': ['2 ', '2', 'second ', '2nd '],
    '3': ['3 ', '3', 'third ', '3rd '],
}


def _build_book_aliases() -> Dict[str, str]:
    aliases = {}
    for name, _, short_forms in BOOK_DATA:
        number, _, base = name.partition(' ')
        if number in ORDINAL_PREFIXES:
            for prefix in ORDINAL_PREFIXES[number]:
                for form in [base.lower()] + short_forms:
                    aliases.setdefault(f"{prefix}{form}", name)
        else:
            aliases.setdefault(name.lower(), name)
            for form in short_forms:
                aliases.setdefault(form, name)
    return aliases


# alias (lowercase) -> canonical book name
BIBLE_BOOKS = _build_book_aliases()

# Longest first so "1 john" wins over "john" and "song of songs" over "song"
BOOK_NAMES_PATTERN = '|'.join(
    re.escape(alias).replace(r'\ ', r'\s+')
    for alias in sorted(BIBLE_BOOKS, key=len, reverse=True)
)

_UNITS = ['one', 'two', 'three', 'four', 'five', 'six', 'seven', 'eight', 'nine',
          'ten', 'eleven', 'twelve', 'thirteen', 'fourteen', 'fifteen', 'sixteen',
          'seventeen', 'eighteen', 'nineteen']
_TENS = ['twenty', 'thirty', 'forty', 'fifty']


def _build_word_numbers() -> Dict[str, int]:
    numbers = {word: i for i, word in enumerate(_UNITS, start=1)}
    for t, tens_word in enumerate(_TENS, start=2):
        numbers[tens_word] = t * 10
        for u, unit_word in enumerate(_UNITS[:9], start=1):
            numbers[f"{tens_word}-{unit_word}"] = t * 10 + u
            numbers[f"{tens_word} {unit_word}"] = t * 10 + u
    return numbers


# Spoken verse numbers ("Romans 12 one" → "Romans 12:1")
WORD_TO_NUMBER = _build_word_numbers()

SPOKEN_NUMBERS_PATTERN = '|'.join(
    w.replace(' ', r'\s+') for w in sorted(WORD_TO_NUMBER, key=len, reverse=True)
)

# Longest chapter in the canon (Psalm 119)
MAX_VERSE_NUMBER = 176

# How far ahead of a reference the quoted text is expected to appear
RUNTOGETHER_CONTEXT_CHARS = 1500


def normalize_book_name(name: str) -> Optional[str]:
    """Canonical book name for an alias, or None if not recognized."""
    normalized = re.sub(r'\s+', ' ', name.lower().strip())
    return BIBLE_BOOKS.get(normalized)


def is_valid_chapter(book: str, chapter: int) -> bool:
    """Unknown books are accepted; known books are bounded by their chapter count."""
    if chapter < 1:
        return False
    count = BOOK_CHAPTER_COUNTS.get(book)
    if count is None:
        return True
    return chapter <= count


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ParsedReference:
    """A citation found in text, possibly a range."""
    book: str
    chapter: int
    verse_start: Optional[int] = None
    verse_end: Optional[int] = None
    end_book: Optional[str] = None
    end_chapter: Optional[int] = None
    original_text: str = ""
    start_index: int = 0
    end_index: int = 0

    @property
    def is_chapter_only(self) -> bool:
        return self.verse_start is None

    @property
    def is_cross_chapter(self) -> bool:
        """True when the range leaves the starting chapter (or book)."""
        if self.end_book and self.end_book != self.book:
            return True
        return self.end_chapter is not None and self.end_chapter != self.chapter

    @property
    def display_ref(self) -> str:
        start = f"{self.book} {self.chapter}"
        if self.verse_start is None:
            if self.end_chapter and self.end_chapter != self.chapter:
                return f"{start}-{self.end_chapter}"
            return start

        start = f"{start}:{self.verse_start}"
        if self.end_book and self.end_book != self.book:
            return f"{start} - {self.end_book} {self.end_chapter}:{self.verse_end}"
        if self.end_chapter is not None and self.end_chapter != self.chapter:
            return f"{start}-{self.end_chapter}:{self.verse_end}"
        if self.verse_end is not None and self.verse_end != self.verse_start:
            return f"{start}-{self.verse_end}"
        return start


@dataclass
class ResolvedVerse:
    """One concrete verse produced by expanding a ParsedReference."""
    book: str
    chapter: int
    verse: int
    text: str

    @property
    def display_ref(self) -> str:
        return f"{self.book} {self.chapter}:{self.verse}"


# ============================================================================
# PATTERNS
# ============================================================================

_BOOK = rf'\b(?P<book>{BOOK_NAMES_PATTERN})'
_DASH = r'\s*[-\u2013\u2014]\s*'

# Numbered book names that can follow "and N" without being a verse number
_NUMBERED_BOOK_BASES = r'peter|samuel|kings|chronicles|corinthians|thessalonians|timothy|john'

# (kind, pattern) in priority order: the first pattern to claim a span wins
REFERENCE_PATTERNS = [
    # "Genesis 50:26 - Exodus 1:2"
    ('cross_book', rf'{_BOOK}\s+(?P<ch>\d+):(?P<v1>\d+){_DASH}(?P<book2>{BOOK_NAMES_PATTERN})\s+(?P<ch2>\d+):(?P<v2>\d+)'),

    # "John 3:16-4:2"
    ('cross_chapter', rf'{_BOOK}\s+(?P<ch>\d+):(?P<v1>\d+){_DASH}(?P<ch2>\d+):(?P<v2>\d+)'),

    # "John chapter 3 verse 16", "Matthew 2, verses 1 through 12"
    ('verbose', rf'{_BOOK}\s+(?:chapter\s+)?(?P<ch>\d+),?\s+(?:and\s+)?verses?\s+(?P<v1>\d+)'
                rf'(?:\s*(?:through|to|and|-)\s*(?P<v2>\d+))?'),

    # "Romans 12:1, 2" → Romans 12:1-2
    ('colon_comma', rf'{_BOOK}\s+(?P<ch>\d+):(?P<v1>\d+),\s*(?P<v2>\d+)(?!\s*[,:\d])'),

    # "John 3:16", "Genesis 1:1-5"
    ('colon', rf'{_BOOK}\s+(?P<ch>\d+):(?P<v1>\d+)(?:{_DASH}(?P<v2>\d+)(?!\s*:))?'),

    # "Matthew 5, 44 and 45" → Matthew 5:44-45 (not "and 2 Peter", not "and 6, 21")
    ('enumeration', rf'{_BOOK}\s+(?P<ch>\d+),\s*(?P<v1>\d+),?\s*and\s+(?P<v2>\d+)'
                    rf'(?!\s*(?:{_NUMBERED_BOOK_BASES})|,\s*\d)'),

    # "Romans 12, 1, 2" → Romans 12:1-2
    ('enumeration', rf'{_BOOK}\s+(?P<ch>\d+),\s*(?P<v1>\d+),\s*(?P<v2>\d+)(?!\s*[,\d])'),

    # "Romans 12.1"
    ('period', rf'{_BOOK}\s+(?P<ch>\d+)\.(?P<v1>\d+)'),

    # "Revelation 19, 16"
    ('comma', rf'{_BOOK}\s+(?P<ch>\d+),\s*(?P<v1>\d+)(?!\s*,\s*\d)'),

    # "Genesis 1-2" (chapter range) or "Micah 5-2" (transcribed chapter:verse)
    ('hyphen', rf'{_BOOK}\s+(?P<ch>\d+){_DASH}(?P<ch2>\d+)(?![\d:.\-])'),

    # "Romans 12 one" → Romans 12:1
    ('spoken', rf'{_BOOK}\s+(?P<ch>\d+)\s+(?P<vword>{SPOKEN_NUMBERS_PATTERN})(?=\s|$|[,.!?;])'),

    # "Matthew chapter 2" (a later "verses 1 through 12" is attached in post-processing)
    ('chapter', rf'{_BOOK}\s+chapter\s+(?P<ch>\d+)(?![\d:])'),

    # "Romans 8", "Hebrews 725"
    ('bare', rf'{_BOOK}\s+(?P<num>\d+)(?![\d:\-]|\.\d|,\s*\d|\s+verses?\b)'),
]

COMPILED_PATTERNS = [(kind, re.compile(p, re.IGNORECASE)) for kind, p in REFERENCE_PATTERNS]

VERSE_RANGE_FOLLOWUP = re.compile(r'\bverses?\s+(\d+)\s+(?:through|to)\s+(\d+)', re.IGNORECASE)

CROSS_REFERENCE_FOLLOWUP = re.compile(
    rf'\s+and\s+(\d{{1,3}})\s*[:,.]\s*(\d{{1,3}})\b(?!\s*(?:{_NUMBERED_BOOK_BASES}))',
    re.IGNORECASE,
)


# ============================================================================
# HELPERS
# ============================================================================

def _get_words(text: str) -> List[str]:
    return re.sub(r'[^\w\s]', '', text.lower()).split()


def split_runtogether_number(num_str: str, book: str,
                             verse_exists: Optional[VerseExists] = None,
                             following_text: str = "",
                             verse_lookup: Optional[VerseLookup] = None) -> Optional[Tuple[int, int]]:
    """
    Split a run-together chapter/verse number like "725" into (7, 25).

    "Matthew 633" could be 63:3 or 6:33. Matthew has 28 chapters, so only 6:33
    survives. When several splits survive (e.g. "Psalm 231": 2:31 or 23:1) the
    corpus decides which verses exist, and the words that follow the reference
    break any remaining tie.

    Returns:
        (chapter, verse), or None when no split is plausible
    """
    if len(num_str) < 2:
        return None

    candidates = []
    for i in range(1, len(num_str)):
        chapter_str, verse_str = num_str[:i], num_str[i:]
        if verse_str.startswith('0'):
            continue
        chapter, verse = int(chapter_str), int(verse_str)
        if not is_valid_chapter(book, chapter) or not 1 <= verse <= MAX_VERSE_NUMBER:
            continue
        if verse_exists is not None and not verse_exists(book, chapter, verse):
            continue
        candidates.append((chapter, verse))

    if not candidates:
        return None
    if len(candidates) == 1 or verse_lookup is None or not following_text:
        return candidates[0]

    # Score each surviving split by how much of its verse follows the reference
    search_words = set(_get_words(following_text[:RUNTOGETHER_CONTEXT_CHARS]))
    best, best_score = candidates[0], -1.0
    for chapter, verse in candidates:
        verse_words = _get_words(verse_lookup(book, chapter, verse) or "")
        if not verse_words:
            continue
        fingerprint = verse_words[:5]
        score = sum(1 for w in fingerprint if w in search_words) / len(fingerprint)
        if score > best_score:
            best, best_score = (chapter, verse), score
    return best


def _overlaps(span: Tuple[int, int], claimed: List[Tuple[int, int]]) -> bool:
    start, end = span
    return any(start < c_end and c_start < end for c_start, c_end in claimed)


def _build_reference(kind: str, match, verse_exists: Optional[VerseExists],
                     verse_lookup: Optional[VerseLookup], text: str) -> Optional[ParsedReference]:
    groups = match.groupdict()
    book = normalize_book_name(groups['book'])
    if not book:
        return None

    chapter = None
    verse_start = None
    verse_end = None
    end_book = None
    end_chapter = None

    if kind == 'cross_book':
        end_book = normalize_book_name(groups['book2'])
        if not end_book:
            return None
        chapter, verse_start = int(groups['ch']), int(groups['v1'])
        end_chapter, verse_end = int(groups['ch2']), int(groups['v2'])

    elif kind == 'cross_chapter':
        chapter, verse_start = int(groups['ch']), int(groups['v1'])
        end_chapter, verse_end = int(groups['ch2']), int(groups['v2'])
        if end_chapter == chapter:
            end_chapter = None

    elif kind in ('verbose', 'colon_comma', 'colon', 'enumeration', 'period', 'comma'):
        chapter, verse_start = int(groups['ch']), int(groups['v1'])
        if groups.get('v2'):
            verse_end = int(groups['v2'])

    elif kind == 'hyphen':
        first, second = int(groups['ch']), int(groups['ch2'])
        if book in SINGLE_CHAPTER_BOOKS:
            # "Jude 1-3" is a verse range in the only chapter
            chapter, verse_start, verse_end = 1, first, second
        elif second > first and is_valid_chapter(book, second):
            chapter, end_chapter = first, second
        else:
            chapter, verse_start = first, second

    elif kind == 'spoken':
        chapter = int(groups['ch'])
        word = re.sub(r'\s+', ' ', groups['vword'].lower())
        verse_start = WORD_TO_NUMBER.get(word)

    elif kind == 'chapter':
        chapter = int(groups['ch'])

    elif kind == 'bare':
        num = groups['num']
        if book in SINGLE_CHAPTER_BOOKS:
            # "Jude 3" is verse 3 of the only chapter
            chapter, verse_start = 1, int(num)
        elif len(num) >= 2 and not is_valid_chapter(book, int(num)):
            split = split_runtogether_number(
                num, book, verse_exists, text[match.end():], verse_lookup
            )
            if not split:
                return None
            chapter, verse_start = split
        else:
            chapter = int(num)

    if not chapter or not is_valid_chapter(book, chapter):
        return None
    if verse_start is not None and verse_start < 1:
        return None
    if verse_end is not None and end_chapter is None and verse_end < verse_start:
        # "John 3:16-4" style slips: keep the start verse only
        verse_end = None

    return ParsedReference(
        book=book,
        chapter=chapter,
        verse_start=verse_start,
        verse_end=verse_end,
        end_book=end_book,
        end_chapter=end_chapter,
        original_text=match.group(),
        start_index=match.start(),
        end_index=match.end(),
    )


# ============================================================================
# DETECTION
# ============================================================================

def detect_bible_references(text: str,
                            verse_exists: Optional[VerseExists] = None,
                            verse_lookup: Optional[VerseLookup] = None) -> List[ParsedReference]:
    """
    Detect every explicit Bible citation in text.

    Args:
        text: Transcript text to search
        verse_exists: Optional corpus check used to split run-together numbers
                      and to validate "and C:V" follow-up references
        verse_lookup: Optional verse text lookup used to break ties between
                      run-together splits

    Returns:
        ParsedReference list sorted by position. Empty when there is no citation.
    """
    if not text or not text.strip():
        return []

    references: List[ParsedReference] = []
    claimed: List[Tuple[int, int]] = []

    for kind, pattern in COMPILED_PATTERNS:
        for match in pattern.finditer(text):
            span = (match.start(), match.end())
            if _overlaps(span, claimed):
                continue
            ref = _build_reference(kind, match, verse_exists, verse_lookup, text)
            if ref is None:
                continue
            references.append(ref)
            claimed.append(span)

    references.sort(key=lambda r: r.start_index)

    # Post-processing: "Matthew chapter 2 ... verses 1 through 12"
    for match in VERSE_RANGE_FOLLOWUP.finditer(text):
        if _overlaps((match.start(), match.end()), claimed):
            continue
        preceding = [r for r in references
                     if r.end_index <= match.start() and match.start() - r.start_index < 200]
        if preceding and preceding[-1].is_chapter_only and preceding[-1].end_chapter is None:
            ref = preceding[-1]
            ref.verse_start = int(match.group(1))
            ref.verse_end = int(match.group(2))
            ref.end_index = match.end()
            ref.original_text = text[ref.start_index:ref.end_index]
            claimed.append((match.start(), match.end()))

    # Post-processing: "Matthew 16:24 and 6:21" inherits the book name
    cross_refs = []
    for match in CROSS_REFERENCE_FOLLOWUP.finditer(text):
        span = (match.start(), match.end())
        if _overlaps(span, claimed):
            continue
        preceding = [r for r in references
                     if r.end_index <= match.start() and match.start() - r.end_index < 50]
        if not preceding or preceding[-1].verse_start is None:
            continue

        book = preceding[-1].book
        chapter, verse = int(match.group(1)), int(match.group(2))
        if not is_valid_chapter(book, chapter) or verse < 1:
            continue
        if verse_exists is not None and not verse_exists(book, chapter, verse):
            continue

        start = match.start() + len(match.group()) - len(match.group().lstrip())
        cross_refs.append(ParsedReference(
            book=book,
            chapter=chapter,
            verse_start=verse,
            original_text=text[start:match.end()],
            start_index=start,
            end_index=match.end(),
        ))
        claimed.append(span)

    references.extend(cross_refs)
    references.sort(key=lambda r: r.start_index)
    return references


# ============================================================================
# EXPANSION
# ============================================================================

def expand_reference(ref: ParsedReference, verse_lookup: VerseLookup) -> List[ResolvedVerse]:
    """
    Resolve a parsed reference into the verses the corpus actually has.

    Same-chapter ranges expand verse by verse. Ranges that cross a chapter or
    book boundary resolve only their first verse, and chapter-only references
    resolve to verse 1.
    """
    start_verse = ref.verse_start or 1

    if ref.is_cross_chapter or ref.verse_end is None:
        verse_numbers = [start_verse]
    else:
        end_verse = min(ref.verse_end, MAX_VERSE_NUMBER)
        verse_numbers = list(range(start_verse, end_verse + 1))

    resolved = []
    for verse in verse_numbers:
        text = verse_lookup(ref.book, ref.chapter, verse)
        if text:
            resolved.append(ResolvedVerse(book=ref.book, chapter=ref.chapter, verse=verse, text=text))
    return resolved
