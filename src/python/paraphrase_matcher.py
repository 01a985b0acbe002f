"""
Offline Paraphrase Matcher

Finds verses that a speaker is quoting loosely or paraphrasing, without a
spoken reference. The pipeline for one transcript chunk:

1. Windowing - the whole chunk, each sentence, and sliding windows over long
   run-on sentences, so a paraphrase is found whether it is a sentence, a clause,
   or buried in a long stretch of speech
2. Candidate retrieval - three derived keyword queries per window (frequent
   words, long words, frequent bigrams) against the verse search index
3. Scoring - lexical (token F1 + bigram Dice) and, when an embedding backend is
   available, semantic (cosine) similarity for every window/verse pair
4. Ranking - best window per verse, evidence gates, short-verse penalty,
   confidence threshold, top N

Everything here is a pure function of its inputs except collect_candidates,
which awaits the search callable it is given.
"""

import re
import sys
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple, Callable, Awaitable, Iterable, Any

import numpy as np

from embedding_model import cosine_similarity
from matcher_config import MatchingConfig, DEFAULT_CONFIG, effective_candidate_limit
from verse_model import ParaphraseMatch, SearchResult, clean_verse_text

# (query, limit, suggest) -> results
SearchFunction = Callable[[str, int, bool], Awaitable[List[SearchResult]]]

STOP_WORDS = frozenset([
    "a", "an", "the", "and", "or", "but", "if", "then", "so", "than", "that", "this",
    "these", "those", "is", "are", "was", "were", "be", "been", "being", "to", "of",
    "in", "on", "for", "with", "as", "at", "by", "from", "into", "over", "under",
    "about", "after", "before", "between", "through", "during", "without", "within",
    "not", "no", "nor", "too", "very", "can", "could", "should", "would", "will",
    "just", "only", "also", "even", "still", "yet", "him", "his", "her", "hers",
    "them", "their", "theirs", "you", "your", "yours", "we", "our", "ours", "i",
    "me", "my", "mine", "he", "she", "they", "it", "its", "us",
])

SENTENCE_SPLIT = re.compile(r'[.!?]+')


def _debug_log(message: str, debug: bool = False, prefix: str = "[OfflineParaphrase]"):
    """Print debug message if debug mode is enabled."""
    if debug:
        print(f"{prefix} {message}", file=sys.stderr, flush=True)


# ============================================================================
# TOKENIZATION
# ============================================================================

def normalize_text(text: str) -> str:
    """Lowercase, fold quotes and dashes, keep only [a-z0-9] and single spaces."""
    text = (text or '').lower()
    text = re.sub(r'[‘’“”]', "'", text)
    text = re.sub(r'[–—]', ' ', text)
    text = re.sub(r'[^a-z0-9\s]', ' ', text)
    return re.sub(r'\s+', ' ', text).strip()


def light_stem(token: str) -> str:
    """Strip one common suffix (-ing, -ed, -es, -ly, -s) from longer words."""
    if len(token) <= 4:
        return token
    if token.endswith('ing') and len(token) > 6:
        return token[:-3]
    if token.endswith(('ed', 'es', 'ly')) and len(token) > 5:
        return token[:-2]
    if token.endswith('s'):
        return token[:-1]
    return token


def tokenize(text: str) -> List[str]:
    normalized = normalize_text(text)
    if not normalized:
        return []
    tokens = (light_stem(t) for t in normalized.split(' '))
    return [t for t in tokens if len(t) > 2 and t not in STOP_WORDS]


def build_bigrams(tokens: List[str]) -> List[str]:
    return [f"{tokens[i]} {tokens[i + 1]}" for i in range(len(tokens) - 1)]


# ============================================================================
# WINDOWING
# ============================================================================

@dataclass
class TextWindow:
    """One scoring unit cut from the transcript chunk."""
    text: str
    tokens: List[str]
    bigrams: List[str]
    embedding: Optional[np.ndarray] = None

    @classmethod
    def from_text(cls, text: str) -> 'TextWindow':
        tokens = tokenize(text)
        return cls(text=text, tokens=tokens, bigrams=build_bigrams(tokens))


def build_text_windows(text: str, config: MatchingConfig = DEFAULT_CONFIG) -> List[TextWindow]:
    """
    Cut a transcript chunk into overlapping windows.

    The whole trimmed chunk always comes first. Sentences longer than
    window_max_words are re-sliced with a sliding window (step about a third of
    the window) so a phrase straddling a slice boundary still lands whole in
    some window. Windows with fewer than window_min_words tokens are dropped,
    duplicates (same token sequence) are removed, and at most max_windows
    are kept.
    """
    trimmed = (text or '').strip()
    if not trimmed:
        return []

    sentences = [s.strip() for s in SENTENCE_SPLIT.split(trimmed) if s.strip()] or [trimmed]

    windows = []
    for sentence in sentences:
        words = sentence.split()
        if len(words) <= config.window_max_words:
            window = TextWindow.from_text(sentence)
            if len(window.tokens) >= config.window_min_words:
                windows.append(window)
            continue

        for i in range(0, len(words), config.window_step):
            chunk = words[i:i + config.window_max_words]
            if len(chunk) < config.window_min_words:
                break
            window = TextWindow.from_text(' '.join(chunk))
            if len(window.tokens) >= config.window_min_words:
                windows.append(window)

    full = TextWindow.from_text(trimmed)
    if len(full.tokens) >= config.window_min_words:
        windows.insert(0, full)

    deduped = []
    seen = set()
    for window in windows:
        key = tuple(window.tokens)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(window)
        if len(deduped) >= config.max_windows:
            break
    return deduped


# ============================================================================
# CANDIDATE RETRIEVAL
# ============================================================================

def _count_in_order(items: List[str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for item in items:
        counts[item] = counts.get(item, 0) + 1
    return counts


def build_keyword_query(tokens: List[str], max_tokens: int = 8) -> str:
    """Most frequent tokens, longer first among equals."""
    counts = _count_in_order(tokens)
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], -len(kv[0])))
    return ' '.join(token for token, _ in ranked[:max_tokens])


def build_keyword_query_by_length(tokens: List[str], max_tokens: int = 6) -> str:
    """Longest distinct tokens: rare words discriminate between verses."""
    unique = list(dict.fromkeys(tokens))
    ranked = sorted(unique, key=len, reverse=True)
    return ' '.join(ranked[:max_tokens])


def build_bigram_query(bigrams: List[str], max_bigrams: int = 3) -> str:
    counts = _count_in_order(bigrams)
    ranked = sorted(counts.items(), key=lambda kv: -kv[1])
    return ' '.join(bigram for bigram, _ in ranked[:max_bigrams])


def build_candidate_queries(windows: List[TextWindow],
                            config: MatchingConfig = DEFAULT_CONFIG) -> List[Tuple[str, bool]]:
    """Distinct (query, suggest) pairs in first-seen order; exact mode wins over suggest for duplicates."""
    queries: Dict[str, bool] = {}

    def add(query: str, suggest: bool):
        if query:
            queries[query] = queries.get(query, True) and suggest

    for window in windows:
        add(build_keyword_query(window.tokens, config.frequency_query_tokens), False)
        add(build_keyword_query_by_length(window.tokens, config.length_query_tokens), True)
        add(build_bigram_query(window.bigrams, config.bigram_query_count), True)
    return list(queries.items())


async def collect_candidates(windows: List[TextWindow], search: SearchFunction,
                             limit: Optional[int] = None,
                             config: MatchingConfig = DEFAULT_CONFIG) -> Dict[str, SearchResult]:
    """
    Gather a bounded, deduplicated candidate set for the windows.

    Args:
        windows: Windows from build_text_windows
        search: Async keyword search (query, limit, suggest)
        limit: Overall candidate cap (floored at config.min_candidate_limit)
        config: Query sizes and per-query floor

    Returns:
        reference -> SearchResult, in retrieval order
    """
    max_candidates = effective_candidate_limit(config, limit)
    per_query_limit = max(config.min_per_query_limit, max_candidates // 4)

    candidates: Dict[str, SearchResult] = {}
    for query, suggest in build_candidate_queries(windows, config):
        if len(candidates) >= max_candidates:
            break
        for result in await search(query, per_query_limit, suggest):
            if result.reference not in candidates:
                candidates[result.reference] = result
                if len(candidates) >= max_candidates:
                    break
    return candidates


# ============================================================================
# SCORING
# ============================================================================

@dataclass
class VerseTokens:
    """Token data for one verse (cached per reference by the engine)."""
    tokens: List[str]
    bigrams: List[str]
    token_set: frozenset = field(default_factory=frozenset)
    bigram_set: frozenset = field(default_factory=frozenset)


def verse_token_data(text: str) -> VerseTokens:
    tokens = tokenize(clean_verse_text(text))
    bigrams = build_bigrams(tokens)
    return VerseTokens(tokens=tokens, bigrams=bigrams,
                       token_set=frozenset(tokens), bigram_set=frozenset(bigrams))


def overlap_count(a: Iterable[str], b: Iterable[str]) -> int:
    return len(set(a) & set(b))


def dice_coefficient(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return 2 * len(set_a & set_b) / (len(set_a) + len(set_b))


def f1_score(precision: float, recall: float) -> float:
    if precision <= 0 or recall <= 0:
        return 0.0
    return 2 * precision * recall / (precision + recall)


def normalize_score(value: float) -> float:
    """Clamp to [0, 1]; NaN and infinities become 0."""
    if value is None or not np.isfinite(value):
        return 0.0
    return min(max(float(value), 0.0), 1.0)


@dataclass
class PairScore:
    """Similarity of one window against one verse."""
    overlap: int
    bigram_dice: float
    lexical: float
    semantic: Optional[float]
    score: float
    passes_gate: bool


def score_pair(window: TextWindow, verse: VerseTokens,
               verse_embedding: Optional[np.ndarray] = None,
               semantic_enabled: bool = False,
               config: MatchingConfig = DEFAULT_CONFIG) -> PairScore:
    """
    Score a window against a verse.

    lexical  = 0.6 * token F1 + 0.4 * bigram Dice
    semantic = (cosine + 1) / 2, only when both embeddings exist
    score    = 0.7 * semantic + 0.3 * lexical, or lexical alone

    The pair passes the gate with at least two shared tokens, a bigram Dice of
    at least 0.15, or (semantic only) a semantic score of at least 0.62.
    """
    window_set = set(window.tokens)
    overlap = overlap_count(window_set, verse.token_set)
    precision = overlap / max(len(window_set), 1)
    recall = overlap / max(len(verse.token_set), 1)
    bigram_dice = dice_coefficient(window.bigrams, verse.bigram_set)
    lexical = normalize_score(
        config.token_f1_weight * f1_score(precision, recall) + config.bigram_weight * bigram_dice
    )

    semantic = None
    if semantic_enabled and window.embedding is not None and verse_embedding is not None:
        semantic = normalize_score((cosine_similarity(window.embedding, verse_embedding) + 1) / 2)

    if semantic is None:
        score = lexical
    else:
        score = normalize_score(config.semantic_weight * semantic + config.lexical_weight * lexical)

    overlap_gate = overlap >= config.overlap_gate_tokens or bigram_dice >= config.bigram_gate
    semantic_gate = semantic is not None and semantic >= config.semantic_gate

    return PairScore(
        overlap=overlap,
        bigram_dice=bigram_dice,
        lexical=lexical,
        semantic=semantic,
        score=score,
        passes_gate=overlap_gate or semantic_gate,
    )


# ============================================================================
# RANKING
# ============================================================================

@dataclass
class ScoredCandidate:
    reference: str
    verse_text: str
    token_count: int
    best_score: float = 0.0
    best_phrase: Optional[str] = None
    best_semantic: Optional[float] = None
    final_score: float = 0.0


def best_window_for_verse(reference: str, verse_text: str, verse: VerseTokens,
                          windows: List[TextWindow],
                          verse_embedding: Optional[np.ndarray] = None,
                          semantic_enabled: bool = False,
                          config: MatchingConfig = DEFAULT_CONFIG) -> ScoredCandidate:
    """Best gated window for a verse; earlier windows win ties."""
    scored = ScoredCandidate(reference=reference, verse_text=verse_text,
                             token_count=len(verse.tokens))

    for window in windows:
        pair = score_pair(window, verse, verse_embedding, semantic_enabled, config)
        if not pair.passes_gate:
            continue
        if scored.best_phrase is None or pair.score > scored.best_score:
            scored.best_score = pair.score
            scored.best_phrase = window.text
            scored.best_semantic = pair.semantic

    penalty = config.short_verse_penalty if scored.token_count < config.short_verse_tokens else 1.0
    scored.final_score = normalize_score(scored.best_score * penalty)
    return scored


def rank_candidates(candidates: List[Tuple[SearchResult, VerseTokens, Optional[np.ndarray]]],
                    windows: List[TextWindow],
                    semantic_enabled: bool = False,
                    min_confidence: Optional[float] = None,
                    max_results: Optional[int] = None,
                    config: MatchingConfig = DEFAULT_CONFIG,
                    translation_id: Optional[str] = None) -> List[ParaphraseMatch]:
    """
    Turn scored candidates into accepted matches.

    Args:
        candidates: (search result, verse tokens, verse embedding or None) per verse
        windows: Windows of the transcript chunk
        semantic_enabled: Whether semantic scoring is active for this call
        min_confidence: Acceptance threshold (config default when None)
        max_results: Result cap (config default when None)
        config: Weights, gates and penalty
        translation_id: Recorded on every match

    Returns:
        Matches sorted by confidence, highest first
    """
    threshold = config.min_confidence if min_confidence is None else min_confidence
    cap = config.max_results if max_results is None else max_results

    matches = []
    for result, verse, embedding in candidates:
        if not verse.tokens:
            continue

        verse_text = clean_verse_text(result.text)
        scored = best_window_for_verse(result.reference, verse_text, verse, windows,
                                       embedding, semantic_enabled, config)

        if scored.best_phrase is not None and scored.final_score >= threshold:
            matches.append(ParaphraseMatch(
                reference=result.reference,
                confidence=scored.final_score,
                matched_phrase=scored.best_phrase,
                verse_text=verse_text,
                translation_id=translation_id,
            ))
        elif scored.best_score > 0:
            _debug_log(
                f"candidate {result.reference} best={scored.best_score:.3f} "
                f"semantic={scored.best_semantic} final={scored.final_score:.3f}",
                config.debug,
            )

    matches.sort(key=lambda m: m.confidence, reverse=True)
    return matches[:max(cap, 0)]


def describe_candidates(candidates: Dict[str, Any]) -> str:
    """Short listing for debug output."""
    return ', '.join(list(candidates)[:10]) + (' ...' if len(candidates) > 10 else '')
