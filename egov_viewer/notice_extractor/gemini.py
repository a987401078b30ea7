"""Best-effort notice extraction through the Gemini API.

Environment:
  GEMINI_API_KEY   API key (required; may also come from a ``.env`` file)

The model output is validated against the universal record shape before use;
callers are expected to fall back to the deterministic extractor when
:func:`analyze_with_gemini` raises.
"""
from __future__ import annotations

import functools
import json
import logging
import os
import re
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from .extract import Section, UniversalRecord

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).resolve().parents[2] / ".env")

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_RETRIES = 3
MAX_CHAR_LIMIT = 500_000
TRUNCATION_MARKER = "\n...(省略)"
ENV_KEY = "GEMINI_API_KEY"
AI_SECTION_NAME = "被保険者データ"
OFFICE_INFO_KEYS = {
    "officeSortCode": "事業所整理記号",
    "officeNumber": "事業所番号",
}

TABLE_HEADERS = [
    "整理番号",
    "被保険者氏名",
    "賞与支払年月日",
    "標準賞与額(健保)",
    "標準賞与額(厚年)",
    "生年月日",
    "種別",
]

PROMPT_TEMPLATE = """\
e-GovのXML公文書から被保険者情報を抽出してください。
JSONオブジェクトのみを返してください。
【抽出項目】
- title: 文書の表題
- summary: 文書の要約
- officeInfo: {{"事業所整理記号": "...", "事業所番号": "..."}}
- mainDetails: [{{"label": "...", "value": "..."}}]
- tableData:
  headers: {headers}
  rows: 全員分のデータ（各行は headers と同じ順序の文字列配列）

XML内容:
{content}
"""

_RETRY_DELAY_RE = re.compile(r"retry[^\d]*(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)


class AnalysisShapeError(ValueError):
    """Raised when the model output does not have the record shape."""


@functools.lru_cache(maxsize=4)
def _get_client(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


def _parse_retry_delay(error: Exception) -> float | None:
    match = _RETRY_DELAY_RE.search(str(error))
    if match:
        return float(match.group(1))
    delay = getattr(error, "retry_delay", None)
    if delay is not None:
        return float(delay)
    return None


def _is_daily_quota(error: Exception) -> bool:
    return "PerDay" in str(error)


def call_gemini(
    prompt: str,
    model: str = DEFAULT_MODEL,
    api_key: str | None = None,
    max_retries: int = DEFAULT_RETRIES,
) -> str:
    """
    Send ``prompt`` to Gemini and return the JSON response text.

    Rate-limit (429) responses are retried up to ``max_retries`` times after
    the delay the API suggests; an exhausted daily quota is not retried.

    Raises:
        ValueError:                   No API key.
        RuntimeError:                 Quota exhausted or empty response.
        google.genai.errors.APIError: Any other API failure.
    """
    key = api_key or os.getenv(ENV_KEY)
    if not key:
        raise ValueError(f"Gemini API key missing. Set {ENV_KEY} or pass api_key.")

    client = _get_client(key)
    config = genai_types.GenerateContentConfig(response_mime_type="application/json")
    attempt = 0
    while True:
        try:
            response = client.models.generate_content(
                model=model, contents=prompt, config=config
            )
            if response.text is None:
                raise RuntimeError("Gemini returned an empty response.")
            return response.text
        except genai_errors.ClientError as exc:
            if exc.code != 429:
                raise
            if _is_daily_quota(exc):
                raise RuntimeError(f"Daily quota for {model} exhausted: {exc}") from exc
            attempt += 1
            if attempt > max_retries:
                raise RuntimeError(f"Rate-limited after {max_retries} retries.") from exc
            delay = _parse_retry_delay(exc) or (2 ** attempt * 5)
            logger.warning(
                "429 rate-limit, waiting %.0fs (attempt %d/%d)", delay, attempt, max_retries
            )
            time.sleep(delay)


def build_prompt(text: str, max_chars: int = MAX_CHAR_LIMIT) -> str:
    content = text
    if len(text) > max_chars:
        content = text[:max_chars] + TRUNCATION_MARKER
        logger.info("Document truncated to %d characters for Gemini", max_chars)
    return PROMPT_TEMPLATE.format(
        headers=json.dumps(TABLE_HEADERS, ensure_ascii=False),
        content=content,
    )


def _string_map(value: Any, name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise AnalysisShapeError(f"{name} must be an object")
    return {str(key): str(item) for key, item in value.items() if item is not None}


def _table_section(value: Any) -> Section | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise AnalysisShapeError("tableData must be an object")
    headers = value.get("headers") or []
    rows = value.get("rows") or []
    if not isinstance(headers, list) or not isinstance(rows, list):
        raise AnalysisShapeError("tableData.headers and tableData.rows must be arrays")
    headers = [str(header) for header in headers]
    converted: list[dict[str, str]] = []
    for row in rows:
        if not isinstance(row, list):
            raise AnalysisShapeError("tableData.rows must contain arrays")
        # Cells beyond the header list are dropped; short rows leave cells absent.
        converted.append(
            {header: str(cell) for header, cell in zip(headers, row) if cell is not None}
        )
    return Section(name=AI_SECTION_NAME, is_table=True, headers=headers, rows=converted)


def record_from_analysis(payload: Any) -> UniversalRecord:
    """Convert a model response object into a :class:`UniversalRecord`."""
    if not isinstance(payload, Mapping):
        raise AnalysisShapeError("response must be a JSON object")
    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise AnalysisShapeError("title must be a non-empty string")
    headers: dict[str, str] = {}
    details = payload.get("mainDetails") or []
    if not isinstance(details, list):
        raise AnalysisShapeError("mainDetails must be an array")
    for detail in details:
        if not isinstance(detail, Mapping) or "label" not in detail:
            raise AnalysisShapeError("mainDetails entries need a label")
        headers[str(detail["label"])] = str(detail.get("value", ""))
    summary = payload.get("summary")
    section = _table_section(payload.get("tableData"))
    return UniversalRecord(
        title=title.strip(),
        notice_kind="ai",
        paragraphs=[summary] if isinstance(summary, str) and summary else [],
        office_info={
            OFFICE_INFO_KEYS.get(key, key): value
            for key, value in _string_map(payload.get("officeInfo"), "officeInfo").items()
        },
        headers=headers,
        sections=[section] if section is not None else [],
    )


def analyze_with_gemini(
    text: str,
    model: str = DEFAULT_MODEL,
    api_key: str | None = None,
    max_retries: int = DEFAULT_RETRIES,
) -> UniversalRecord:
    response = call_gemini(build_prompt(text), model=model, api_key=api_key, max_retries=max_retries)
    try:
        payload = json.loads(response.strip())
    except json.JSONDecodeError as exc:
        raise AnalysisShapeError(f"response is not JSON: {exc}") from exc
    return record_from_analysis(payload)
