"""Projection of a parsed notice tree into a universal record."""
from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import asdict, dataclass, field

from .parser import ElementNode
from .synonyms import (
    DEFAULT_SYNONYM_TABLE,
    RECORD_FIELDS,
    SynonymTable,
    normalize_name,
)

logger = logging.getLogger(__name__)

TITLE_STRATEGIES = ("fingerprint", "header_label")
GENERIC_KIND = "generic"


@dataclass(frozen=True)
class Section:
    """Rows flattened from one repeated child tag.

    Rows are not padded: a header missing from a row means the cell is
    absent, which :meth:`cell` reports as ``None``.
    """

    name: str
    is_table: bool
    headers: list[str]
    rows: list[dict[str, str]]

    def cell(self, row_index: int, header: str) -> str | None:
        return self.rows[row_index].get(header)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class UniversalRecord:
    """Flat view of one notice document."""

    title: str
    notice_kind: str = GENERIC_KIND
    arrival_number: str | None = None
    post_code: str | None = None
    address: str | None = None
    company_name: str | None = None
    recipient_name: str | None = None
    creation_date: str | None = None
    office_name: str | None = None
    submission_date: str | None = None
    doc_number: str | None = None
    author_affiliation: str | None = None
    author_name: str | None = None
    notice_box: str | None = None
    phone: str | None = None
    paragraphs: list[str] = field(default_factory=list)
    office_info: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    sections: list[Section] = field(default_factory=list)

    def known_fields(self) -> dict[str, str]:
        values = {name: getattr(self, name) for name in RECORD_FIELDS}
        return {name: value for name, value in values.items() if value is not None}

    def table_sections(self) -> list[Section]:
        return [section for section in self.sections if section.is_table]

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class ExtractionOptions:
    table: SynonymTable = DEFAULT_SYNONYM_TABLE
    title_strategy: str = "fingerprint"

    def __post_init__(self) -> None:
        if self.title_strategy not in TITLE_STRATEGIES:
            raise ValueError(f"unknown title strategy: {self.title_strategy!r}")


def detect_list_tag(children: Sequence[ElementNode]) -> str | None:
    """Return the first-seen tag name that occurs at least twice."""
    counts = Counter(child.name for child in children)
    for name, count in counts.items():
        if count >= 2:
            return name
    return None


def flatten_row(item: ElementNode) -> dict[str, str]:
    """Flatten one list item into ``{path: value}``.

    Keys join the tag names below the item with ``_``; the item's own name
    only appears when the item itself is a leaf.
    """
    row: dict[str, str] = {}
    if item.is_leaf:
        row[item.name] = item.content or ""
        return row
    _flatten_into(row, item.children, "")
    return row


def _flatten_into(row: dict[str, str], nodes: Sequence[ElementNode], prefix: str) -> None:
    for node in nodes:
        if node.is_leaf:
            row[prefix + node.name] = node.content or ""
        else:
            _flatten_into(row, node.children, f"{prefix}{node.name}_")


def build_section(name: str, items: Sequence[ElementNode]) -> Section:
    rows = [flatten_row(item) for item in items]
    headers = list(dict.fromkeys(key for row in rows for key in row))
    return Section(name=name, is_table=True, headers=headers, rows=rows)


def iter_leaves(node: ElementNode) -> Iterator[ElementNode]:
    if node.is_leaf:
        yield node
        return
    for child in node.children:
        yield from iter_leaves(child)


class _RecordBuilder:
    def __init__(self, table: SynonymTable) -> None:
        self.table = table
        self.fields: dict[str, str] = {}
        self.office_info: dict[str, str] = {}
        self.headers: dict[str, str] = {}
        self.sections: list[Section] = []
        self.paragraphs: list[str] = []
        self.leaf_values: dict[str, str] = {}

    def _compose(self, node: ElementNode) -> str:
        for group in self.table.group_formats:
            formatted = group.format(node)
            if formatted is not None:
                return formatted
        return " ".join(leaf.content for leaf in iter_leaves(node) if leaf.content)

    def capture(self, node: ElementNode, path: str) -> None:
        if node.is_leaf:
            self.leaf_values[node.name] = node.content or ""
        matched = self.table.matching_fields(node.name, path)
        is_office = self.table.office_info.matches(node.name, path)
        is_paragraph = node.is_leaf and node.name in self.table.paragraph_tags
        if not (matched or is_office or is_paragraph):
            return
        value = node.content if node.is_leaf else self._compose(node)
        if not value:
            return
        for field_name in matched:
            self.fields[field_name] = value
        if is_office:
            self.office_info[node.name] = value
        if is_paragraph:
            self.paragraphs.append(value)

    def capture_subtree(self, node: ElementNode, path: str) -> None:
        self.capture(node, path)
        child_path = f"{path}{node.name}_"
        for child in node.children:
            self.capture_subtree(child, child_path)

    def walk(self, node: ElementNode, path: str) -> None:
        self.capture(node, path)
        if node.is_leaf:
            if node.content:
                self.headers[path + node.name] = node.content
            return
        child_path = f"{path}{node.name}_"
        remaining: Sequence[ElementNode] = node.children
        list_tag = detect_list_tag(node.children)
        if list_tag is not None:
            items = [child for child in node.children if child.name == list_tag]
            self.sections.append(build_section(node.name, items))
            logger.debug("List %s under %s: %d rows", list_tag, node.name, len(items))
            # List items still feed the semantic fields, but not headers.
            for item in items:
                self.capture_subtree(item, child_path)
            remaining = [child for child in node.children if child.name != list_tag]
        for child in remaining:
            self.walk(child, child_path)

    def apply_composites(self) -> None:
        for rule in self.table.composites:
            value = rule.compose(self.leaf_values)
            if value is None:
                continue
            if rule.field == "office_info" and rule.office_key:
                self.office_info[rule.office_key] = value
            elif rule.field in RECORD_FIELDS:
                self.fields[rule.field] = value
            else:
                logger.warning("Ignoring composite rule for unknown field %r", rule.field)


def _title_from_headers(headers: Mapping[str, str], table: SynonymTable) -> str | None:
    labels = [normalize_name(label) for label in table.title_labels]
    for key, value in headers.items():
        normalized = normalize_name(key)
        if any(label in normalized for label in labels):
            return value
    return None


def resolve_title(
    root: ElementNode,
    headers: Mapping[str, str],
    options: ExtractionOptions,
) -> tuple[str, str]:
    """Return ``(title, notice_kind)`` for a document."""
    fingerprint = options.table.fingerprint_for(root)
    kind = fingerprint.kind if fingerprint else GENERIC_KIND
    if options.title_strategy == "fingerprint" and fingerprint and fingerprint.title:
        return fingerprint.title, kind
    if options.title_strategy == "header_label" or fingerprint:
        title = _title_from_headers(headers, options.table)
        if title:
            return title, kind
    return root.name, kind


def extract_universal_record(
    root: ElementNode,
    options: ExtractionOptions | None = None,
) -> UniversalRecord:
    options = options or ExtractionOptions()
    builder = _RecordBuilder(options.table)
    builder.walk(root, "")
    builder.apply_composites()
    title, kind = resolve_title(root, builder.headers, options)
    return UniversalRecord(
        title=title,
        notice_kind=kind,
        paragraphs=builder.paragraphs,
        office_info=builder.office_info,
        headers=builder.headers,
        sections=builder.sections,
        **builder.fields,
    )
