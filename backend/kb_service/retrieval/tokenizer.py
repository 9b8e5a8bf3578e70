"""
Tokenizer utility for BM25 indexing and querying.

Lowercases, replaces anything outside ``[a-z0-9]`` with whitespace, splits,
and drops single-character tokens and common English stop-words.

CRITICAL: This tokenizer MUST be used for both indexing and querying
to ensure consistent tokenization across the BM25 pipeline.
"""

import re
from typing import List


STOPWORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "shall",
        "should", "may", "might", "must", "can", "could", "am", "it", "its",
        "this", "that", "these", "those", "i", "me", "my", "we", "our", "you",
        "your", "he", "him", "his", "she", "her", "they", "them", "their",
        "what", "which", "who", "whom", "where", "when", "why", "how", "all",
        "each", "every", "both", "few", "more", "most", "other", "some", "such",
        "no", "not", "only", "own", "same", "so", "than", "too", "very", "just",
        "of", "in", "on", "at", "to", "for", "with", "by", "from", "up", "about",
        "into", "through", "during", "before", "after", "above", "below",
        "between", "out", "off", "over", "under", "again", "further", "then",
        "once", "and", "but", "or", "nor", "if", "while", "as", "until",
        "although", "because", "since", "unless",
    }
)

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")

# Tokens shorter than this are noise ("a", "x", stray digits)
MIN_TOKEN_LENGTH = 2


def tokenize(text: str) -> List[str]:
    """
    Tokenize text into lowercase, punctuation-free terms without stop-words.

    This is the SINGLE SOURCE OF TRUTH for tokenization in the BM25 pipeline.

    Args:
        text: Input text to tokenize

    Returns:
        List of tokens, in order of appearance (duplicates kept)

    Examples:
        >>> tokenize("How do I create a Feathers service?")
        ['create', 'feathers', 'service']
        >>> tokenize("app.use('/users', new UserService())")
        ['app', 'use', 'users', 'new', 'userservice']
    """
    if not text or not text.strip():
        return []

    cleaned = _NON_ALNUM.sub(" ", text.lower())
    return [
        token for token in cleaned.split()
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS
    ]
