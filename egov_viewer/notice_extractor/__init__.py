"""e-Gov notice extractor package."""
from __future__ import annotations

from . import extract, parser, premium, renderer, synonyms
from .extract import ExtractionOptions, UniversalRecord

__all__ = [
    "parser",
    "synonyms",
    "extract",
    "premium",
    "renderer",
    "analyze_text",
]


def analyze_text(text: str | bytes, options: ExtractionOptions | None = None) -> UniversalRecord:
    """Convenience wrapper: parse ``text`` and build its universal record."""
    tree = parser.parse_xml(text)
    return extract.extract_universal_record(tree, options)
