from __future__ import annotations

import json

import pytest

from egov_viewer.notice_extractor import gemini
from egov_viewer.notice_extractor.gemini import AnalysisShapeError

RESPONSE = {
    "title": "標準賞与額決定通知書",
    "summary": "賞与額が決定されました。",
    "officeInfo": {"officeSortCode": "01-アイウ", "事業所番号": "12345"},
    "mainDetails": [{"label": "事業所名称", "value": "株式会社サンプル商事"}],
    "tableData": {
        "headers": ["被保険者氏名", "標準賞与額(健保)"],
        "rows": [["山田 太郎", "500千円", "extra"], ["鈴木 花子"]],
    },
}


def test_build_prompt_truncates_long_documents() -> None:
    prompt = gemini.build_prompt("あ" * 20, max_chars=5)
    assert "あああああ" + gemini.TRUNCATION_MARKER in prompt
    assert "あ" * 6 not in prompt
    assert "被保険者氏名" in prompt


def test_record_from_analysis_maps_shape() -> None:
    record = gemini.record_from_analysis(RESPONSE)
    assert record.title == "標準賞与額決定通知書"
    assert record.notice_kind == "ai"
    assert record.paragraphs == ["賞与額が決定されました。"]
    assert record.office_info == {"事業所整理記号": "01-アイウ", "事業所番号": "12345"}
    assert record.headers == {"事業所名称": "株式会社サンプル商事"}
    (section,) = record.sections
    assert section.name == gemini.AI_SECTION_NAME
    assert section.rows == [
        {"被保険者氏名": "山田 太郎", "標準賞与額(健保)": "500千円"},
        {"被保険者氏名": "鈴木 花子"},
    ]


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"title": ""},
        {"title": "x", "mainDetails": {"label": "a"}},
        {"title": "x", "mainDetails": [{"value": "a"}]},
        {"title": "x", "tableData": {"headers": "a", "rows": []}},
        {"title": "x", "tableData": {"headers": ["a"], "rows": ["a"]}},
        {"title": "x", "officeInfo": ["a"]},
    ],
)
def test_record_from_analysis_rejects_bad_shapes(payload: object) -> None:
    with pytest.raises(AnalysisShapeError):
        gemini.record_from_analysis(payload)


def test_analyze_with_gemini_uses_model_response(monkeypatch: pytest.MonkeyPatch) -> None:
    prompts: list[str] = []

    def fake_call(prompt: str, **_: object) -> str:
        prompts.append(prompt)
        return json.dumps(RESPONSE, ensure_ascii=False)

    monkeypatch.setattr(gemini, "call_gemini", fake_call)
    record = gemini.analyze_with_gemini("<Root/>")
    assert record.title == "標準賞与額決定通知書"
    assert "<Root/>" in prompts[0]


def test_analyze_with_gemini_rejects_non_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(gemini, "call_gemini", lambda prompt, **_: "not json")
    with pytest.raises(AnalysisShapeError):
        gemini.analyze_with_gemini("<Root/>")


def test_call_gemini_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(gemini.ENV_KEY, raising=False)
    with pytest.raises(ValueError):
        gemini.call_gemini("prompt")
