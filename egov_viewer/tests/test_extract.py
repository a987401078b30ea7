from __future__ import annotations

from pathlib import Path

import pytest

from egov_viewer.notice_extractor import extract, parser, premium
from egov_viewer.notice_extractor.extract import ExtractionOptions

SAMPLES = Path(__file__).resolve().parents[1] / "samples"


def _record(xml: str, options: ExtractionOptions | None = None) -> extract.UniversalRecord:
    return extract.extract_universal_record(parser.parse_xml(xml), options)


def _sample(name: str, options: ExtractionOptions | None = None) -> extract.UniversalRecord:
    return _record((SAMPLES / name).read_text(encoding="utf-8"), options)


def test_detect_list_tag_returns_first_repeated_tag() -> None:
    root = parser.parse_xml("<R><A/><B/><A/><C/><B/></R>")
    assert extract.detect_list_tag(root.children) == "A"


def test_detect_list_tag_without_repeats() -> None:
    root = parser.parse_xml("<R><A/><B/><C/></R>")
    assert extract.detect_list_tag(root.children) is None
    assert extract.detect_list_tag([]) is None


def test_flatten_row_skips_item_name() -> None:
    item = parser.parse_xml("<Item><X>1</X><Y><Z>2</Z></Y></Item>")
    assert extract.flatten_row(item) == {"X": "1", "Y_Z": "2"}


def test_flatten_row_keeps_deep_prefixes_and_empty_values() -> None:
    item = parser.parse_xml("<Item><A><B><C>3</C></B></A><D/></Item>")
    assert extract.flatten_row(item) == {"A_B_C": "3", "D": ""}


def test_leaf_list_items_use_their_own_name() -> None:
    record = _record("<List><V>1</V><V>2</V></List>")
    (section,) = record.sections
    assert section.headers == ["V"]
    assert section.rows == [{"V": "1"}, {"V": "2"}]


def test_section_headers_are_union_in_first_seen_order() -> None:
    record = _record(
        "<Root><Row><A>1</A><B>2</B></Row><Row><C>3</C><A>4</A></Row></Root>"
    )
    (section,) = record.sections
    assert section.name == "Root"
    assert section.is_table is True
    assert section.headers == ["A", "B", "C"]
    assert section.rows[1] == {"C": "3", "A": "4"}
    assert section.cell(1, "B") is None


def test_end_to_end_items_table() -> None:
    record = _record(
        "<Notice><Office>社名A</Office><Items>"
        "<Item><Name>山田太郎</Name><Health>300</Health></Item>"
        "<Item><Name>鈴木花子</Name><Health>450千円</Health></Item>"
        "</Items></Notice>"
    )
    assert record.title == "Notice"
    assert record.notice_kind == extract.GENERIC_KIND
    assert record.headers == {"Notice_Office": "社名A"}
    (section,) = record.sections
    assert section.name == "Items"
    assert section.is_table is True
    assert section.headers == ["Name", "Health"]
    assert section.rows == [
        {"Name": "山田太郎", "Health": "300"},
        {"Name": "鈴木花子", "Health": "450千円"},
    ]
    assert premium.parse_amount(section.rows[1]["Health"]) == 450000


def test_unknown_structure_degrades_to_headers() -> None:
    record = _record("<Unknown><Deep><Deeper>x</Deeper></Deep><Other/></Unknown>")
    assert record.title == "Unknown"
    assert record.sections == []
    assert record.headers == {"Unknown_Deep_Deeper": "x"}
    assert record.known_fields() == {}


def test_last_matching_node_wins() -> None:
    record = _record(
        "<Root><所在地>A</所在地><Group><住所>B</住所></Group><Tail><住所></住所></Tail></Root>"
    )
    assert record.address == "B"


def test_generic_codes_are_recognised() -> None:
    record = _record(
        "<Form><T001>0001</T001><T002>100-0001</T002><T003>東京都</T003>"
        "<T004>会社</T004><T005>代表</T005><T006>R06</T006><T007>事務所</T007></Form>"
    )
    assert record.arrival_number == "0001"
    assert record.post_code == "100-0001"
    assert record.address == "東京都"
    assert record.company_name == "会社"
    assert record.recipient_name == "代表"
    assert record.creation_date == "R06"
    assert record.office_name == "事務所"


def test_only_first_repeated_tag_becomes_a_section() -> None:
    record = _record("<Root><A>1</A><B>x</B><A>2</A><B>y</B></Root>")
    (section,) = record.sections
    assert section.headers == ["A"]
    assert section.rows == [{"A": "1"}, {"A": "2"}]
    assert record.headers == {"Root_B": "y"}


def test_empty_leaves_stay_out_of_headers() -> None:
    record = _record("<Root><Empty/><Full>1</Full></Root>")
    assert record.headers == {"Root_Full": "1"}


def test_bonus_notice_sample() -> None:
    record = _sample("bonus_notice.xml")
    assert record.notice_kind == "bonus"
    assert record.title == "健康保険・厚生年金保険標準賞与額決定通知書"
    assert record.headers == {}
    (section,) = record.sections
    assert section.name == "N7150001"
    assert len(section.rows) == 3
    assert section.headers[-1] == "機構からのお知らせ"
    assert "機構からのお知らせ" not in section.rows[1]
    assert record.arrival_number == "202407150000123456"
    assert record.post_code == "100-0013"
    assert record.address == "東京都千代田区霞が関1-2-2"
    assert record.company_name == "株式会社サンプル商事"
    assert record.recipient_name == "代表取締役 見本一郎"
    assert record.creation_date == "令和6年8月1日"
    assert record.notice_box == "賞与支払届の内容に基づき決定しました。"
    assert record.office_info == {"事業所整理記号": "01-アイウ", "事業所番号": "12345"}


def test_summary_sheet_sample_composes_split_fields() -> None:
    record = _sample("summary_sheet.xml")
    assert record.notice_kind == "summary_sheet"
    assert record.title == "CSV形式届書総括票"
    assert record.arrival_number == "SUB0001 - 0042"
    assert record.post_code == "100-0013"
    assert record.address == "東京都千代田区霞が関1-2-2"
    assert record.creation_date == "令和 6年 9月 30日"
    assert record.submission_date == "令和 6年 10月 1日"
    assert record.phone == "03 (1234) 5678"
    assert record.office_info == {"事業所番号": "12345", "事業所整理記号": "01チヨ-アイウ"}
    assert record.sections == []
    assert record.headers["DataRoot_A-330526-001_1_作成年月日_年"] == "6"


def test_document_sample_uses_title_label() -> None:
    record = _sample("doc_notice.xml")
    assert record.notice_kind == "document"
    assert record.title == "算定基礎届の提出について（お願い）"
    assert record.doc_number == "年第1234号"
    assert record.creation_date == "令和6年10月1日"
    assert record.company_name == "株式会社サンプル商事"
    assert record.recipient_name == "見本一郎"
    assert record.author_affiliation == "日本年金機構 千代田年金事務所"
    assert record.author_name == "所長"
    assert len(record.paragraphs) == 2
    (section,) = record.sections
    assert section.name == "MAINTXT"
    assert section.headers == ["P"]


def test_header_label_strategy() -> None:
    options = ExtractionOptions(title_strategy="header_label")
    bonus = _sample("bonus_notice.xml", options)
    assert bonus.title == "N7150001"
    assert bonus.notice_kind == "bonus"
    record = _record("<Root><件名>お知らせ文書</件名></Root>", options)
    assert record.title == "お知らせ文書"


def test_fingerprint_strategy_ignores_labels_for_unknown_roots() -> None:
    record = _record("<Root><件名>お知らせ文書</件名></Root>")
    assert record.title == "Root"


def test_unknown_title_strategy_is_rejected() -> None:
    with pytest.raises(ValueError):
        ExtractionOptions(title_strategy="guess")


def test_record_to_dict_is_json_friendly() -> None:
    data = _sample("doc_notice.xml").to_dict()
    assert data["title"] == "算定基礎届の提出について（お願い）"
    sections = data["sections"]
    assert isinstance(sections, list)
    assert sections[0]["rows"][0] == {"P": "日頃より厚生年金保険事業にご協力いただきありがとうございます。"}
