"""
Matcher Configuration

Tuned defaults for the verse matching engine plus the environment overrides
read at import time. The numeric defaults (weights and gates) were tuned by
hand against sermon transcripts and should be re-validated against a labeled
corpus before being changed.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

# ============================================================================
# CONFIGURATION
# ============================================================================

# Builtin translation file (KJV in .svjson layout). Hosts point this at their bundled copy.
BUILTIN_BIBLE_PATH = Path(
    os.environ.get(
        'VERSEMATCH_BUILTIN_BIBLE',
        str(Path(__file__).parent / "data" / "kjv.svjson"),
    )
)

# User-supplied translations are any *.svjson files directly inside this folder
USER_BIBLE_DIR = Path(
    os.environ.get(
        'VERSEMATCH_BIBLE_DIR',
        str(Path.home() / "Documents" / "SmartVerses" / "Bibles"),
    )
)

# Same model the live app ships for offline paraphrase detection
DEFAULT_EMBEDDING_MODEL = os.environ.get('VERSEMATCH_EMBEDDING_MODEL', "all-MiniLM-L6-v2")

DEBUG_PARAPHRASE = os.environ.get('VERSEMATCH_DEBUG_PARAPHRASE', '') == '1'


@dataclass(frozen=True)
class MatchingConfig:
    """Defaults for one MatchingEngine. Per-call options override these."""
    # Acceptance
    min_confidence: float = 0.6
    max_results: int = 3
    min_words: int = 4

    # Retrieval
    candidate_limit: int = 120
    min_candidate_limit: int = 30
    min_per_query_limit: int = 20
    frequency_query_tokens: int = 8
    length_query_tokens: int = 6
    bigram_query_count: int = 3

    # Windowing
    max_windows: int = 16
    window_min_words: int = 4
    window_max_words: int = 18

    # Scoring weights
    token_f1_weight: float = 0.6
    bigram_weight: float = 0.4
    semantic_weight: float = 0.7

    # Gates
    overlap_gate_tokens: int = 2
    bigram_gate: float = 0.15
    semantic_gate: float = 0.62

    # Short verses score high on overlap alone
    short_verse_tokens: int = 6
    short_verse_penalty: float = 0.85

    use_embeddings: bool = True
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    debug: bool = DEBUG_PARAPHRASE

    @property
    def lexical_weight(self) -> float:
        return 1.0 - self.semantic_weight

    @property
    def window_step(self) -> int:
        return max(4, self.window_max_words // 3)

    def with_overrides(self, **overrides) -> 'MatchingConfig':
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return replace(self, **changes)


DEFAULT_CONFIG = MatchingConfig()


def effective_candidate_limit(config: MatchingConfig, limit: Optional[int] = None) -> int:
    """Overall candidate cap, never below the configured floor."""
    requested = config.candidate_limit if limit is None else limit
    return max(config.min_candidate_limit, requested)
