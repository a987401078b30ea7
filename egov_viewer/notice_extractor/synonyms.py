"""Synonym tables used to recognise well-known notice fields.

The tables are plain data: each field owns an ordered list of matchers that
are tried against the NFKC-normalised tag name (or the underscore path of the
node). New document variants are supported by adding matchers here, or by
loading a JSON file of the same shape with :func:`load_synonym_table`.
"""
from __future__ import annotations

import json
import logging
import re
import unicodedata
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

if TYPE_CHECKING:
    from .parser import ElementNode

logger = logging.getLogger(__name__)

SYNONYM_TABLE_VERSION = "2024.10"

MATCH_KINDS = {"exact", "contains", "regex"}
MATCH_TARGETS = {"name", "path"}

RECORD_FIELDS = (
    "arrival_number",
    "post_code",
    "address",
    "company_name",
    "recipient_name",
    "creation_date",
    "office_name",
    "submission_date",
    "doc_number",
    "author_affiliation",
    "author_name",
    "notice_box",
    "phone",
)

PREMIUM_COLUMNS = ("health", "pension", "birth_date")


class SynonymTableError(ValueError):
    """Raised when a synonym table file cannot be used."""


def normalize_name(value: str) -> str:
    return unicodedata.normalize("NFKC", value).strip().casefold()


@dataclass(frozen=True)
class Matcher:
    pattern: str
    kind: str = "contains"
    target: str = "name"

    def matches(self, name: str, path: str = "") -> bool:
        subject = normalize_name(path + name if self.target == "path" else name)
        if self.kind == "exact":
            return subject == normalize_name(self.pattern)
        if self.kind == "contains":
            return normalize_name(self.pattern) in subject
        return re.search(self.pattern, subject, re.IGNORECASE) is not None


@dataclass(frozen=True)
class FieldSynonyms:
    """Matchers for one logical field; ``excludes`` veto a name outright."""

    field: str
    matchers: tuple[Matcher, ...]
    excludes: tuple[str, ...] = ()

    def matches(self, name: str, path: str = "") -> bool:
        normalized = normalize_name(name)
        if any(normalize_name(word) in normalized for word in self.excludes):
            return False
        return any(matcher.matches(name, path) for matcher in self.matchers)


@dataclass(frozen=True)
class NoticeFingerprint:
    """Structural signature of a known notice type.

    A fingerprint without ``title`` only fixes the notice kind; the title is
    then taken from the document's own title label.
    """

    kind: str
    title: str | None = None
    root_pattern: str | None = None
    child: str | None = None
    grandchild_contains: str | None = None

    def matches(self, root: ElementNode) -> bool:
        if self.root_pattern and re.fullmatch(self.root_pattern, root.name):
            return True
        if not self.child:
            return False
        candidates = [child for child in root.children if child.name == self.child]
        if self.grandchild_contains is None:
            return bool(candidates)
        return any(
            self.grandchild_contains in grandchild.name
            for candidate in candidates
            for grandchild in candidate.children
        )


@dataclass(frozen=True)
class CompositeRule:
    """Builds one value from sibling leaves split by some variants.

    ``field`` is a record field, or ``office_info`` together with
    ``office_key``.
    """

    field: str
    parts: tuple[str, ...]
    template: str
    office_key: str | None = None

    def compose(self, values: Mapping[str, str]) -> str | None:
        if not any(part in values for part in self.parts):
            return None
        return self.template.format(*(values.get(part, "") for part in self.parts))


@dataclass(frozen=True)
class GroupFormat:
    """Formats an internal node whose children are the named parts."""

    parts: tuple[str, ...]
    template: str

    def format(self, node: ElementNode) -> str | None:
        leaves = {child.name: child.content or "" for child in node.children}
        if not all(part in leaves for part in self.parts):
            return None
        return self.template.format(*(leaves[part] for part in self.parts))


@dataclass(frozen=True)
class SynonymTable:
    version: str
    fields: tuple[FieldSynonyms, ...]
    office_info: FieldSynonyms
    paragraph_tags: tuple[str, ...] = ()
    title_labels: tuple[str, ...] = ()
    fingerprints: tuple[NoticeFingerprint, ...] = ()
    composites: tuple[CompositeRule, ...] = ()
    group_formats: tuple[GroupFormat, ...] = ()
    premium_columns: tuple[FieldSynonyms, ...] = field(default_factory=tuple)

    def matching_fields(self, name: str, path: str = "") -> list[str]:
        return [entry.field for entry in self.fields if entry.matches(name, path)]

    def premium_column(self, column: str) -> FieldSynonyms | None:
        for entry in self.premium_columns:
            if entry.field == column:
                return entry
        return None

    def fingerprint_for(self, root: ElementNode) -> NoticeFingerprint | None:
        for fingerprint in self.fingerprints:
            if fingerprint.matches(root):
                return fingerprint
        return None


def _exact(*patterns: str) -> tuple[Matcher, ...]:
    return tuple(Matcher(pattern, "exact") for pattern in patterns)


def _contains(*patterns: str) -> tuple[Matcher, ...]:
    return tuple(Matcher(pattern, "contains") for pattern in patterns)


def _path(pattern: str) -> Matcher:
    return Matcher(pattern, "regex", "path")


# Generic codes T001..T007 are used by the positional form variants.
DEFAULT_SYNONYM_TABLE = SynonymTable(
    version=SYNONYM_TABLE_VERSION,
    fields=(
        FieldSynonyms(
            "arrival_number",
            _contains("到達番号") + _exact("ArrivalNumber", "T001"),
        ),
        FieldSynonyms(
            "post_code",
            _contains("郵便番号", "PostCode", "ZipCode") + _exact("T002"),
        ),
        FieldSynonyms(
            "address",
            _contains("所在地", "住所") + _exact("Address", "T003"),
            excludes=("郵便番号", "電話"),
        ),
        FieldSynonyms(
            "company_name",
            _contains("事業所名称")
            + _exact("会社名", "法人名", "CompanyName", "T004")
            + (_path(r"(^|_)to_aff$"),),
        ),
        FieldSynonyms(
            "recipient_name",
            _contains("事業主氏名")
            + _exact("代表者氏名", "宛名", "RecipientName", "T005")
            + (_path(r"(^|_)to_name$"),),
        ),
        FieldSynonyms(
            "creation_date",
            _exact("通知年月日", "作成年月日", "発行年月日", "CreationDate", "T006")
            + (_path(r"(^|_)body_date$"),),
        ),
        FieldSynonyms(
            "office_name",
            _contains("事務所名") + _exact("OfficeName", "T007"),
        ),
        FieldSynonyms("submission_date", _exact("提出年月日", "SubmissionDate")),
        FieldSynonyms(
            "doc_number",
            _exact("通知管理番号", "文書番号", "DocNo")
            + (_path(r"(^|_)body_docno$"),),
        ),
        FieldSynonyms("author_affiliation", (_path(r"(^|_)author_aff$"),)),
        FieldSynonyms("author_name", (_path(r"(^|_)author_name$"),)),
        FieldSynonyms("notice_box", _contains("お知らせ")),
        FieldSynonyms("phone", _exact("電話番号", "TEL", "PhoneNumber")),
    ),
    office_info=FieldSynonyms(
        "office_info",
        _exact("事業所整理記号", "事業所番号", "OfficeSortCode", "OfficeNumber"),
    ),
    paragraph_tags=("P",),
    title_labels=("表題", "件名", "通知書名", "文書名", "タイトル", "TITLE"),
    fingerprints=(
        NoticeFingerprint(
            "standard",
            "健康保険・厚生年金保険被保険者標準報酬決定通知書",
            root_pattern=r"N7130001",
        ),
        NoticeFingerprint(
            "bonus",
            "健康保険・厚生年金保険標準賞与額決定通知書",
            root_pattern=r"N7150001",
            child="_被保険者",
            grandchild_contains="賞与",
        ),
        NoticeFingerprint("summary_sheet", "CSV形式届書総括票", child="A-330526-001_1"),
        NoticeFingerprint("document", root_pattern=r"DOC"),
    ),
    composites=(
        CompositeRule(
            "post_code",
            ("事業所所在地x郵便番号x親番号", "事業所所在地x郵便番号x子番号"),
            "{0}-{1}",
        ),
        CompositeRule("arrival_number", ("識別情報x提出元ID", "識別情報x通番"), "{0} - {1}"),
        CompositeRule(
            "office_info",
            (
                "事業所整理記号x都道府県コード",
                "事業所整理記号x郡市区記号",
                "事業所整理記号x事業所記号",
            ),
            "{0}{1}-{2}",
            office_key="事業所整理記号",
        ),
    ),
    group_formats=(
        GroupFormat(("年", "月", "日"), "令和 {0}年 {1}月 {2}日"),
        GroupFormat(("市外局番", "局番", "番号"), "{0} ({1}) {2}"),
    ),
    premium_columns=(
        FieldSynonyms(
            "health",
            (
                Matcher(r"(標準|報酬|賞与|金額).*(健保|健康保険)", "regex"),
                Matcher(r"(健保|健康保険).*(標準|報酬|賞与|金額)", "regex"),
            )
            + _exact("Health", "HealthAmount"),
        ),
        FieldSynonyms(
            "pension",
            (
                Matcher(r"(標準|報酬|賞与|金額).*(厚年|厚生年金)", "regex"),
                Matcher(r"(厚年|厚生年金).*(標準|報酬|賞与|金額)", "regex"),
            )
            + _exact("Pension", "PensionAmount"),
        ),
        FieldSynonyms("birth_date", _contains("生年月日") + _exact("Birth", "BirthDate")),
    ),
)


def _load_matchers(raw: Iterable[Any], source: str) -> tuple[Matcher, ...]:
    matchers: list[Matcher] = []
    for entry in raw:
        if isinstance(entry, str):
            matchers.append(Matcher(entry))
            continue
        if not isinstance(entry, Mapping) or "pattern" not in entry:
            raise SynonymTableError(f"{source}: matcher needs a pattern: {entry!r}")
        kind = str(entry.get("kind", "contains"))
        target = str(entry.get("target", "name"))
        if kind not in MATCH_KINDS:
            raise SynonymTableError(f"{source}: unknown matcher kind {kind!r}")
        if target not in MATCH_TARGETS:
            raise SynonymTableError(f"{source}: unknown matcher target {target!r}")
        if kind == "regex":
            try:
                re.compile(str(entry["pattern"]))
            except re.error as exc:
                raise SynonymTableError(f"{source}: bad regex {entry['pattern']!r}: {exc}") from exc
        matchers.append(Matcher(str(entry["pattern"]), kind, target))
    return tuple(matchers)


def _load_field(name: str, raw: Any) -> FieldSynonyms:
    if not isinstance(raw, Mapping):
        raise SynonymTableError(f"field {name!r} must be an object")
    return FieldSynonyms(
        name,
        _load_matchers(raw.get("matchers", []), name),
        tuple(str(word) for word in raw.get("excludes", [])),
    )


def _merge_fields(
    current: tuple[FieldSynonyms, ...],
    raw: Mapping[str, Any],
    allowed: Iterable[str],
) -> tuple[FieldSynonyms, ...]:
    allowed_names = set(allowed)
    merged = {entry.field: entry for entry in current}
    for name, value in raw.items():
        if name not in allowed_names:
            raise SynonymTableError(f"unknown field {name!r}")
        merged[name] = _load_field(name, value)
    return tuple(merged.values())


def _load_fingerprint(entry: Mapping[str, Any]) -> NoticeFingerprint:
    fingerprint = NoticeFingerprint(**entry)
    if fingerprint.root_pattern is not None:
        try:
            re.compile(fingerprint.root_pattern)
        except re.error as exc:
            raise SynonymTableError(
                f"fingerprint {fingerprint.kind!r}: bad root_pattern {fingerprint.root_pattern!r}: {exc}"
            ) from exc
    return fingerprint


def table_from_dict(
    data: Mapping[str, Any],
    base: SynonymTable = DEFAULT_SYNONYM_TABLE,
) -> SynonymTable:
    """Overlay ``data`` on ``base``; fields are replaced one by one."""
    table = base
    if "version" in data:
        table = replace(table, version=str(data["version"]))
    if "fields" in data:
        table = replace(
            table,
            fields=_merge_fields(table.fields, cast(Mapping[str, Any], data["fields"]), RECORD_FIELDS),
        )
    if "office_info" in data:
        table = replace(table, office_info=_load_field("office_info", data["office_info"]))
    if "premium_columns" in data:
        table = replace(
            table,
            premium_columns=_merge_fields(
                table.premium_columns,
                cast(Mapping[str, Any], data["premium_columns"]),
                PREMIUM_COLUMNS,
            ),
        )
    if "paragraph_tags" in data:
        table = replace(table, paragraph_tags=tuple(str(tag) for tag in data["paragraph_tags"]))
    if "title_labels" in data:
        table = replace(table, title_labels=tuple(str(label) for label in data["title_labels"]))
    try:
        if "fingerprints" in data:
            table = replace(
                table,
                fingerprints=tuple(_load_fingerprint(entry) for entry in data["fingerprints"]),
            )
        if "composites" in data:
            table = replace(
                table,
                composites=tuple(
                    CompositeRule(
                        field=entry["field"],
                        parts=tuple(entry["parts"]),
                        template=entry["template"],
                        office_key=entry.get("office_key"),
                    )
                    for entry in data["composites"]
                ),
            )
        if "group_formats" in data:
            table = replace(
                table,
                group_formats=tuple(
                    GroupFormat(tuple(entry["parts"]), entry["template"])
                    for entry in data["group_formats"]
                ),
            )
    except (TypeError, KeyError) as exc:
        raise SynonymTableError(f"invalid synonym table entry: {exc}") from exc
    return table


def load_synonym_table(path: Path) -> SynonymTable:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise SynonymTableError(f"cannot read synonym table {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise SynonymTableError(f"synonym table {path} must be a JSON object")
    table = table_from_dict(data)
    logger.info("Loaded synonym table %s (version %s)", path, table.version)
    return table
