"""Rendering utilities for extracted notice records."""
from __future__ import annotations

import csv
from collections.abc import Iterable, Mapping
from datetime import date
from pathlib import Path

import pandas as pd

from .extract import Section, UniversalRecord
from .parser import ElementNode
from .premium import PremiumRates, PremiumRow, calculate_premiums, find_premium_section

MISSING_CELL = "-"

FIELD_LABELS = {
    "arrival_number": "到達番号",
    "post_code": "郵便番号",
    "address": "所在地",
    "company_name": "事業所名称",
    "recipient_name": "事業主氏名",
    "creation_date": "作成年月日",
    "office_name": "年金事務所名",
    "submission_date": "提出年月日",
    "doc_number": "文書番号",
    "author_affiliation": "発信者所属",
    "author_name": "発信者氏名",
    "notice_box": "お知らせ",
    "phone": "電話番号",
}

PREMIUM_COLUMNS = (
    "本人負担:健康保険",
    "本人負担:厚生年金",
    "本人負担:介護保険",
    "本人負担合計",
)


def escape_cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", "<br>")


def format_row(values: Iterable[str]) -> str:
    return "| " + " | ".join(escape_cell(value) for value in values) + " |"


def format_section(section: Section) -> list[str]:
    lines = [f"### {section.name}", ""]
    if not section.headers:
        lines.append("_No rows._")
        return lines
    lines.append(format_row(section.headers))
    lines.append("| " + " | ".join("---" for _ in section.headers) + " |")
    for row in section.rows:
        lines.append(format_row(row.get(header, MISSING_CELL) for header in section.headers))
    return lines


def format_mapping(values: Mapping[str, str], key_label: str = "項目") -> list[str]:
    lines = [format_row([key_label, "値"]), "| --- | --- |"]
    for key, value in values.items():
        lines.append(format_row([key, value]))
    return lines


def render_record(record: UniversalRecord) -> str:
    """Render a record as a Markdown document preview."""
    lines = [f"# {record.title}", ""]
    known = record.known_fields()
    if known:
        for name, value in known.items():
            lines.append(f"- **{FIELD_LABELS.get(name, name)}:** {value}")
        lines.append("")
    if record.office_info:
        office = " / ".join(f"{key}: {value}" for key, value in record.office_info.items())
        lines.append(f"**事業所情報:** {office}")
        lines.append("")
    if record.paragraphs:
        for paragraph in record.paragraphs:
            lines.append(paragraph)
            lines.append("")
    if record.headers:
        lines.append("## 項目")
        lines.append("")
        lines.extend(format_mapping(record.headers))
        lines.append("")
    for section in record.sections:
        lines.extend(format_section(section))
        lines.append("")
    return "\n".join(lines)


def render_tree(node: ElementNode, indent: str = "  ") -> str:
    """Render the element tree as indented text, one element per line."""
    lines: list[str] = []

    def walk(current: ElementNode, depth: int) -> None:
        label = current.name
        if current.attributes:
            attributes = " ".join(f'{key}="{value}"' for key, value in current.attributes.items())
            label = f"{label} {attributes}"
        if current.is_leaf and current.content:
            label = f"{label}: {current.content}"
        lines.append(f"{indent * depth}{label}")
        for child in current.children:
            walk(child, depth + 1)

    for target, data in node.instructions():
        lines.append(f"<?{target} {data}?>")
    walk(node, 0)
    return "\n".join(lines)


def premium_frame(section: Section, premiums: list[PremiumRow]) -> pd.DataFrame:
    records = []
    for result in premiums:
        values = {header: result.row.get(header, "") for header in section.headers}
        values.update(
            zip(
                PREMIUM_COLUMNS,
                (result.health, result.pension, result.nursing, result.total),
            )
        )
        records.append(values)
    return pd.DataFrame(records, columns=[*section.headers, *PREMIUM_COLUMNS])


def write_premium_csv(
    path: Path,
    record: UniversalRecord,
    rates: PremiumRates | None = None,
    *,
    today: date | None = None,
) -> int:
    """Write table rows with employee-share columns; returns the row count."""
    section = find_premium_section(record)
    if section is None:
        return 0
    premiums = calculate_premiums(record, rates, today=today)
    frame = premium_frame(section, premiums)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=False, encoding="utf-8-sig", quoting=csv.QUOTE_ALL)
    return len(frame)
