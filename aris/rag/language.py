"""
Language and Sentiment Strategies
=================================

Swappable keyword-based classifiers for inbound email text.

Language detection checks seed words in a fixed order (it, de, sl, hr,
fr, es); the first language that matches wins. Slovenian and Croatian
share short function words with each other, so their common words only
count when at least two distinct ones appear; their distinctive words
match alone. Anything unmatched falls back to English.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Set

DEFAULT_LANGUAGE = "en"

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> Set[str]:
    return set(_WORD_RE.findall(text.lower()))


@dataclass(frozen=True)
class LanguageRule:
    """Seed words for one language."""
    code: str
    strong: FrozenSet[str]
    weak: FrozenSet[str] = frozenset()
    weak_matches_required: int = 2

    def matches(self, tokens: Set[str]) -> bool:
        if self.strong & tokens:
            return True
        return bool(self.weak) and len(self.weak & tokens) >= self.weak_matches_required


DEFAULT_RULES: List[LanguageRule] = [
    LanguageRule("it", frozenset({"grazie", "prego", "posso", "vorrei", "prodotto", "prezzo", "ordine", "spedizione"})),
    LanguageRule("de", frozenset({"danke", "bitte", "können", "möchte", "produkt", "preis", "bestellung", "lieferung"})),
    LanguageRule(
        "sl",
        strong=frozenset({"lahko", "izdelek", "cena", "naročilo"}),
        weak=frozenset({"prosim", "lep", "pozdrav"}),
    ),
    LanguageRule(
        "hr",
        strong=frozenset({"mogu", "proizvod", "cijena", "narudžba"}),
        weak=frozenset({"molim", "brzom", "odgovoru"}),
    ),
    LanguageRule("fr", frozenset({"merci", "bonjour", "pouvez", "voudrais", "produit", "prix", "commande", "livraison"})),
    LanguageRule("es", frozenset({"gracias", "hola", "puedo", "quisiera", "producto", "precio", "pedido", "entrega"})),
]

DETECTION_ORDER = tuple(rule.code for rule in DEFAULT_RULES)


class LanguageDetector(ABC):
    """Detects the language of free text as a 2-letter code."""

    @abstractmethod
    def detect(self, text: str) -> str:
        pass


class KeywordLanguageDetector(LanguageDetector):
    """First-match seed word detector."""

    def __init__(
        self,
        rules: Optional[Iterable[LanguageRule]] = None,
        supported: Optional[Iterable[str]] = None,
        default: str = DEFAULT_LANGUAGE,
    ):
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)
        self.supported = set(supported) if supported is not None else None
        self.default = default

    def detect(self, text: str) -> str:
        tokens = tokenize(text or "")
        for rule in self.rules:
            if rule.matches(tokens):
                if self.supported is not None and rule.code not in self.supported:
                    return self.default
                return rule.code
        return self.default


# =============================================================================
# SENTIMENT
# =============================================================================

POSITIVE_WORDS = frozenset({
    "thanks", "thank", "great", "excellent", "happy", "satisfied", "love", "perfect", "good",
    "danke", "grazie", "hvala", "merci", "gracias", "super", "wonderful",
})

NEGATIVE_WORDS = frozenset({
    "complaint", "broken", "damaged", "refund", "disappointed", "unhappy", "angry", "terrible",
    "bad", "wrong", "late", "missing", "defective", "cancel", "problem", "issue", "worst",
    "reklamacija", "beschwerde", "reclamo", "defekt", "kaputt", "guasto",
})


class SentimentScorer(ABC):
    """Scores free text in [-1, 1]; negative means unhappy."""

    @abstractmethod
    def score(self, text: str) -> float:
        pass


class KeywordSentimentScorer(SentimentScorer):

    def __init__(self, positive: Iterable[str] = POSITIVE_WORDS, negative: Iterable[str] = NEGATIVE_WORDS):
        self.positive = frozenset(positive)
        self.negative = frozenset(negative)

    def score(self, text: str) -> float:
        tokens = _WORD_RE.findall((text or "").lower())
        pos = sum(1 for t in tokens if t in self.positive)
        neg = sum(1 for t in tokens if t in self.negative)
        if pos + neg == 0:
            return 0.0
        return (pos - neg) / (pos + neg)

