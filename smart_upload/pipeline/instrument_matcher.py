"""
Instrument fuzzy matcher.

Resolves free-text part labels ("Trumpet in Bb (opt)", "Tbn. 2") to the
canonical instrument catalog:

1. exact match on the normalized catalog name   -> 1.0
2. exact match on the catalog entry's alias list -> 0.95
3. Levenshtein ratio + family keyword bonus      -> accepted if >= threshold,
   capped below the alias score
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Union

import structlog
from rapidfuzz.distance import Levenshtein

from smart_upload.config import settings
from smart_upload.observability import metrics

logger = structlog.get_logger(__name__)


INSTRUMENT_ALIASES: dict[str, tuple[str, ...]] = {
    # Woodwinds
    "flute": ("fl", "flt", "piccolo", "picc"),
    "clarinet": ("cl", "clar", "b-flat clarinet", "bb clarinet", "bbc", "clari"),
    "oboe": ("ob", "oboe/english horn"),
    "bassoon": ("bsn", "bassoon/contrabassoon"),
    "saxophone": ("sax", "alto sax", "tenor sax", "baritone sax", "bari sax", "soprano sax"),
    "alto saxophone": ("asax", "alto sax", "altsax"),
    "tenor saxophone": ("tsax", "tenor sax", "tenorsax"),
    "baritone saxophone": ("bsax", "bari sax", "baritone sax", "barisax"),
    # Brass
    "trumpet": ("tpt", "trumpet/cornet", "cornet", "flugelhorn", "flh"),
    "horn": ("hn", "french horn", "f horn"),
    "trombone": ("tbn", "tenor trombone"),
    "bass trombone": ("btbn", "bass trmb"),
    "tuba": ("tba", "euphonium", "euph"),
    # Percussion
    "percussion": ("perc", "drums", "drumset", "drum set", "mallets", "keyboard percussion"),
    "drums": ("battery", "drumline"),
    "timpani": ("timp", "kettle drums"),
    "mallets": ("vibraphone", "marimba", "xylophone", "glockenspiel"),
    # Strings
    "violin": ("vln", "violin i", "violin ii", "first violin", "second violin"),
    "viola": ("vla",),
    "cello": ("vc", "violoncello"),
    "bass": ("string bass", "double bass", "contrabass", "acoustic bass"),
    # Keyboard / guitar
    "piano": ("piano/celesta", "celesta", "keyboard"),
    "guitar": ("gtr", "acoustic guitar", "electric guitar", "classical guitar"),
    # Voice
    "soprano": ("sop", "soprano voice"),
    "alto": ("alt", "alto voice"),
    "tenor": ("ten", "tenor voice"),
    "baritone": ("bar", "baritone voice"),
}

FAMILY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "woodwind": ("flute", "clarinet", "oboe", "bassoon", "saxophone", "sax", "reed"),
    "brass": ("trumpet", "horn", "trombone", "tuba", "cornet", "flugelhorn", "euphonium"),
    "percussion": ("percussion", "drums", "drum", "timpani", "mallets", "vibraphone", "marimba"),
    "strings": ("violin", "viola", "cello", "bass", "string"),
    "piano": ("piano", "keyboard"),
    "guitar": ("guitar", "gtr"),
}

EXACT_CONFIDENCE = 1.0
ALIAS_CONFIDENCE = 0.95

_KEY_QUALIFIER = re.compile(r"\s+in\s+[a-g][#b]?(?=\s)\s*")
_PARENTHETICAL = re.compile(r"\s*\(.*?\)\s*")
_BRACKETED = re.compile(r"\s*\[.*?\]\s*")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class CatalogInstrument:
    """Read-only view of a catalog row."""
    instrument_id: str
    name: str
    family: str
    sort_order: int = 0


@dataclass(frozen=True)
class InstrumentMatch:
    instrument_id: str
    instrument_name: str
    confidence: float
    normalized_input: str
    method: str


@dataclass(frozen=True)
class Unresolved:
    label: str
    normalized_input: str
    best_score: float = 0.0


MatchResult = Union[InstrumentMatch, Unresolved]


@dataclass
class MatchOptions:
    threshold: float = 0.5
    family_bonus: float = 0.3
    fuzzy_cap: float = 0.9

    @classmethod
    def from_settings(cls) -> "MatchOptions":
        return cls(
            threshold=settings.INSTRUMENT_MATCH_THRESHOLD,
            family_bonus=settings.INSTRUMENT_FAMILY_BONUS,
            fuzzy_cap=settings.INSTRUMENT_FUZZY_CAP,
        )


def normalize_instrument_name(label: str) -> str:
    """
    Lowercase, drop key qualifiers ("in Bb", "in F"), drop parenthetical and
    bracketed annotations, collapse whitespace.

    >>> normalize_instrument_name("Trumpet in Bb (opt)")
    'trumpet'
    """
    if not label:
        return ""
    value = f" {label.lower().strip()} "
    value = _KEY_QUALIFIER.sub(" ", value)
    value = _PARENTHETICAL.sub(" ", value)
    value = _BRACKETED.sub(" ", value)
    return _WHITESPACE.sub(" ", value).strip()


def similarity_ratio(a: str, b: str) -> float:
    """1 - edit distance / max length, in [0, 1]."""
    return Levenshtein.normalized_similarity(a, b)


def family_bonus(normalized_input: str, family: str, bonus: float = 0.3) -> float:
    for keyword in FAMILY_KEYWORDS.get(family.lower(), ()):
        if keyword in normalized_input:
            return bonus
    return 0.0


def match_instrument(
    label: str,
    catalog: Sequence[CatalogInstrument],
    options: Optional[MatchOptions] = None,
) -> MatchResult:
    """Resolve one label. Never guesses: below threshold is Unresolved."""
    opts = options or MatchOptions.from_settings()
    normalized = normalize_instrument_name(label)
    if not normalized or not catalog:
        return Unresolved(label=label, normalized_input=normalized)

    normalized_catalog = [(entry, normalize_instrument_name(entry.name)) for entry in catalog]

    for entry, name in normalized_catalog:
        if normalized == name:
            metrics.instrument_matches_total.labels(method="exact").inc()
            return InstrumentMatch(entry.instrument_id, entry.name, EXACT_CONFIDENCE, normalized, "exact")

    for entry, name in normalized_catalog:
        if normalized in INSTRUMENT_ALIASES.get(name, ()):
            metrics.instrument_matches_total.labels(method="alias").inc()
            return InstrumentMatch(entry.instrument_id, entry.name, ALIAS_CONFIDENCE, normalized, "alias")

    best: Optional[InstrumentMatch] = None
    best_score = 0.0
    for entry, name in normalized_catalog:
        score = similarity_ratio(normalized, name) + family_bonus(normalized, entry.family, opts.family_bonus)
        score = min(opts.fuzzy_cap, score)
        if score > best_score:
            best_score = score
            if score >= opts.threshold:
                best = InstrumentMatch(entry.instrument_id, entry.name, round(score, 2), normalized, "fuzzy")

    if best is None:
        metrics.instrument_matches_total.labels(method="unresolved").inc()
        logger.debug("instrument_unresolved", label=label, normalized=normalized, best_score=round(best_score, 2))
        return Unresolved(label=label, normalized_input=normalized, best_score=round(best_score, 2))

    metrics.instrument_matches_total.labels(method="fuzzy").inc()
    return best


@dataclass
class MappingResult:
    matches: list[InstrumentMatch]
    unresolved: list[Unresolved]
    by_label: dict[str, MatchResult]


def map_instruments(
    labels: Iterable[str],
    catalog: Sequence[CatalogInstrument],
    options: Optional[MatchOptions] = None,
) -> MappingResult:
    """
    Resolve many labels. Matches are deduplicated by instrument id, keeping
    the highest confidence seen for that instrument.
    """
    ordered_catalog = sorted(catalog, key=lambda c: (c.family, c.sort_order, c.name))
    best_by_id: dict[str, InstrumentMatch] = {}
    order: list[str] = []
    unresolved: list[Unresolved] = []
    by_label: dict[str, MatchResult] = {}

    for label in labels:
        result = match_instrument(label, ordered_catalog, options)
        by_label[label] = result
        if isinstance(result, Unresolved):
            unresolved.append(result)
            continue
        existing = best_by_id.get(result.instrument_id)
        if existing is None:
            order.append(result.instrument_id)
            best_by_id[result.instrument_id] = result
        elif result.confidence > existing.confidence:
            best_by_id[result.instrument_id] = result

    return MappingResult(
        matches=[best_by_id[i] for i in order],
        unresolved=unresolved,
        by_label=by_label,
    )
