"""
Part boundary detection from page header text.

A band packet is usually one part after another, each part's first page
carrying the instrument name in its header. Labelling every page and
grouping consecutive runs gives cutting instructions without calling the
analysis backend.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from smart_upload.schemas.metadata import CuttingInstruction

logger = structlog.get_logger(__name__)

HEADER_LINES = 3
UNKNOWN_PART = "Unknown Part"

# Most specific first; the first pattern that matches wins.
PART_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(p, re.IGNORECASE), label) for p, label in [
        (r"\bfull\s+score\b", "Full Score"),
        (r"\bcondensed\s+score\b", "Condensed Score"),
        (r"\bconductor\b", "Conductor Score"),
        (r"\b(1st|first|1)\b.{0,20}(clarinet|cl\.?)\b", "1st Bb Clarinet"),
        (r"\b(2nd|second|2)\b.{0,20}(clarinet|cl\.?)\b", "2nd Bb Clarinet"),
        (r"\b(3rd|third|3)\b.{0,20}(clarinet|cl\.?)\b", "3rd Bb Clarinet"),
        (r"\bbass\s+clarinet\b", "Bass Clarinet"),
        (r"\beb\s+clarinet\b", "Eb Clarinet"),
        (r"\bclarinet\b", "Bb Clarinet"),
        (r"\bpicco?lo\b", "Piccolo"),
        (r"\b(1st|first|1)\b.{0,20}flute\b", "1st Flute"),
        (r"\b(2nd|second|2)\b.{0,20}flute\b", "2nd Flute"),
        (r"\bflute\b", "Flute"),
        (r"\boboe\b", "Oboe"),
        (r"\bbassoon\b", "Bassoon"),
        (r"\b(1st|first|1)\b.{0,20}alto\s+sax", "1st Eb Alto Saxophone"),
        (r"\b(2nd|second|2)\b.{0,20}alto\s+sax", "2nd Eb Alto Saxophone"),
        (r"\balto\s+sax", "Eb Alto Saxophone"),
        (r"\btenor\s+sax", "Bb Tenor Saxophone"),
        (r"\bbari(tone)?\s+sax", "Eb Baritone Saxophone"),
        (r"\bsax(ophone)?\b", "Saxophone"),
        (r"\b(1st|first|1)\b.{0,20}trumpet", "1st Bb Trumpet"),
        (r"\b(2nd|second|2)\b.{0,20}trumpet", "2nd Bb Trumpet"),
        (r"\b(3rd|third|3)\b.{0,20}trumpet", "3rd Bb Trumpet"),
        (r"\btrumpet\b", "Bb Trumpet"),
        (r"\bcornet\b", "Bb Cornet"),
        (r"\b(1st|first|1)\b.{0,20}(f\s*)?horn", "1st F Horn"),
        (r"\b(2nd|second|2)\b.{0,20}(f\s*)?horn", "2nd F Horn"),
        (r"\b(french\s+)?horn\b", "F Horn"),
        (r"\bbass\s+trombone\b", "Bass Trombone"),
        (r"\b(1st|first|1)\b.{0,20}trombone", "1st Trombone"),
        (r"\b(2nd|second|2)\b.{0,20}trombone", "2nd Trombone"),
        (r"\btrombone\b", "Trombone"),
        (r"\beuphonium\b", "Euphonium"),
        (r"\btuba\b", "Tuba"),
        (r"\bbaritone\b", "Baritone"),
        (r"\btimpani\b", "Timpani"),
        (r"\bsnare\b", "Snare Drum"),
        (r"\bbass\s+drum\b", "Bass Drum"),
        (r"\bmallet", "Mallet Percussion"),
        (r"\bmarimba\b", "Marimba"),
        (r"\bxylophone\b", "Xylophone"),
        (r"\bvibraphone\b", "Vibraphone"),
        (r"\bpercussion\b", "Percussion"),
        (r"\bviolin\b", "Violin"),
        (r"\bviola\b", "Viola"),
        (r"\bcello\b", "Cello"),
        (r"\b(string\s+)?bass\b", "String Bass"),
        (r"\bpiano\b", "Piano"),
        (r"\bharp\b", "Harp"),
        (r"\bguitar\b", "Guitar"),
    ]
]

HEADER_MATCH_CONFIDENCE = 0.8
PROPAGATED_CONFIDENCE = 0.4
BLIP_CONFIDENCE_CAP = 0.6
BACKFILL_CONFIDENCE = 0.3
CONFIDENT_PAGE = 0.7


@dataclass
class PageLabel:
    page_index: int
    label: str
    raw_header: str
    confidence: float


@dataclass
class SegmentationResult:
    page_labels: list[PageLabel] = field(default_factory=list)
    cutting_instructions: list[CuttingInstruction] = field(default_factory=list)
    segmentation_confidence: float = 0.0


def header_of(page_text: str, lines: int = HEADER_LINES) -> str:
    """The first few non-empty lines of a page."""
    kept = [line.strip() for line in page_text.splitlines() if line.strip()]
    return " ".join(kept[:lines])


def label_from_header(header_text: str) -> Optional[str]:
    text = header_text.strip()
    if len(text) < 3:
        return None
    for pattern, label in PART_PATTERNS:
        if pattern.search(text):
            return label
    return None


def _smooth_blips(labels: list[PageLabel]) -> list[PageLabel]:
    """A single page whose neighbours agree takes the neighbours' label."""
    if len(labels) <= 2:
        return labels
    smoothed = list(labels)
    for i in range(1, len(smoothed) - 1):
        prev, curr, nxt = smoothed[i - 1], smoothed[i], smoothed[i + 1]
        if prev.label and prev.label == nxt.label and curr.label != prev.label:
            smoothed[i] = PageLabel(
                page_index=curr.page_index,
                label=prev.label,
                raw_header=curr.raw_header,
                confidence=min(curr.confidence, BLIP_CONFIDENCE_CAP),
            )
    return smoothed


def detect_part_boundaries(page_texts: Sequence[str]) -> SegmentationResult:
    """
    Label pages from their headers and group consecutive runs into
    0-indexed inclusive cutting instructions.
    """
    if not page_texts:
        return SegmentationResult()

    labels: list[PageLabel] = []
    for index, text in enumerate(page_texts):
        header = header_of(text)
        label = label_from_header(header)
        labels.append(PageLabel(
            page_index=index,
            label=label or "",
            raw_header=header,
            confidence=HEADER_MATCH_CONFIDENCE if label else 0.0,
        ))

    # Continuation pages inherit the previous label
    last = ""
    for i, page in enumerate(labels):
        if page.label:
            last = page.label
        elif last:
            labels[i] = PageLabel(page.page_index, last, page.raw_header, PROPAGATED_CONFIDENCE)

    labels = _smooth_blips(labels)

    # Leading unlabelled pages belong to the first labelled part
    first = next((p for p in labels if p.label), None)
    for i, page in enumerate(labels):
        if page.label:
            break
        labels[i] = PageLabel(
            page.page_index,
            first.label if first else UNKNOWN_PART,
            page.raw_header,
            BACKFILL_CONFIDENCE if first else 0.0,
        )

    instructions: list[CuttingInstruction] = []
    run_start = 0
    for i in range(1, len(labels) + 1):
        if i == len(labels) or labels[i].label != labels[run_start].label:
            instructions.append(CuttingInstruction(
                part_name=labels[run_start].label,
                page_start=labels[run_start].page_index,
                page_end=labels[i - 1].page_index,
            ))
            run_start = i

    confident = sum(1 for p in labels if p.confidence >= CONFIDENT_PAGE)
    result = SegmentationResult(
        page_labels=labels,
        cutting_instructions=instructions,
        segmentation_confidence=round(confident / len(labels), 2),
    )

    logger.info(
        "part_boundaries_detected",
        total_pages=len(labels),
        segments=len(instructions),
        segmentation_confidence=result.segmentation_confidence,
    )
    return result
