"""Employee-share insurance premium calculation over extracted table rows."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from .extract import Section, UniversalRecord
from .synonyms import DEFAULT_SYNONYM_TABLE, SynonymTable

logger = logging.getLogger(__name__)

# Reference rates (percent): Kyokai Kenpo Tokyo, fiscal 2024.
DEFAULT_HEALTH_RATE = 9.98
DEFAULT_PENSION_RATE = 18.3
DEFAULT_NURSING_RATE = 1.60

RATE_ENV_VARS = {
    "health": "EGOV_HEALTH_RATE",
    "pension": "EGOV_PENSION_RATE",
    "nursing": "EGOV_NURSING_RATE",
}

THOUSAND_YEN_MARKER = "千円"

# Gregorian year of era year 0.
ERA_OFFSETS = {
    "T": 1911,
    "S": 1925,
    "H": 1988,
    "R": 2018,
}

ERA_BIRTH_RE = re.compile(r"([TSHR])\s?(\d{2})")
GREGORIAN_YEAR_RE = re.compile(r"(?<!\d)(\d{4})(?!\d)")

NURSING_MIN_AGE = 40
NURSING_MAX_AGE = 65


@dataclass(frozen=True)
class PremiumRates:
    health: float = DEFAULT_HEALTH_RATE
    pension: float = DEFAULT_PENSION_RATE
    nursing: float = DEFAULT_NURSING_RATE


@dataclass(frozen=True)
class PremiumRow:
    """Employee share for one table row (yen, rounded down)."""

    row: dict[str, str]
    age: int | None
    nursing_target: bool
    health: int
    pension: int
    nursing: int

    @property
    def total(self) -> int:
        return self.health + self.pension + self.nursing


def _env_rate(name: str, default: float) -> float:
    env_value = os.environ.get(RATE_ENV_VARS[name])
    if not env_value:
        return default
    try:
        return float(env_value)
    except ValueError:
        logger.warning(
            "Ignoring %s=%r (not a number)", RATE_ENV_VARS[name], env_value
        )
        return default


def resolve_rates(
    health: float | None = None,
    pension: float | None = None,
    nursing: float | None = None,
) -> PremiumRates:
    return PremiumRates(
        health=health if health is not None else _env_rate("health", DEFAULT_HEALTH_RATE),
        pension=pension if pension is not None else _env_rate("pension", DEFAULT_PENSION_RATE),
        nursing=nursing if nursing is not None else _env_rate("nursing", DEFAULT_NURSING_RATE),
    )


def parse_amount(text: str | None) -> int:
    if not text:
        return 0
    digits = re.sub(r"[^0-9]", "", text)
    if not digits:
        return 0
    multiplier = 1000 if THOUSAND_YEN_MARKER in text else 1
    return int(digits) * multiplier


def birth_year(text: str | None) -> int | None:
    if not text:
        return None
    match = ERA_BIRTH_RE.search(text)
    if match:
        return ERA_OFFSETS[match.group(1)] + int(match.group(2))
    match = GREGORIAN_YEAR_RE.search(text)
    if match:
        return int(match.group(1))
    return None


def calculate_age(text: str | None, today: date | None = None) -> int | None:
    year = birth_year(text)
    if year is None:
        return None
    return (today or date.today()).year - year


def is_nursing_target(age: int | None) -> bool:
    return age is not None and NURSING_MIN_AGE <= age < NURSING_MAX_AGE


def _employee_share(amount: int, rate: float) -> int:
    # Half of amount x rate%, rounded down; Decimal keeps 9.98% exact.
    return int(Decimal(amount) * Decimal(str(rate)) / 200)


def find_column(
    headers: list[str],
    column: str,
    table: SynonymTable = DEFAULT_SYNONYM_TABLE,
) -> str | None:
    synonyms = table.premium_column(column)
    if synonyms is None:
        return None
    for header in headers:
        if synonyms.matches(header):
            return header
    return None


def find_premium_section(
    record: UniversalRecord,
    table: SynonymTable = DEFAULT_SYNONYM_TABLE,
) -> Section | None:
    for section in record.table_sections():
        if find_column(section.headers, "health", table):
            return section
    return None


def calculate_premiums(
    record: UniversalRecord,
    rates: PremiumRates | None = None,
    *,
    today: date | None = None,
    table: SynonymTable = DEFAULT_SYNONYM_TABLE,
) -> list[PremiumRow]:
    section = find_premium_section(record, table)
    if section is None:
        return []
    rates = rates or resolve_rates()
    today = today or date.today()
    health_column = find_column(section.headers, "health", table)
    pension_column = find_column(section.headers, "pension", table)
    birth_column = find_column(section.headers, "birth_date", table)
    if pension_column is None:
        logger.debug("No pension column in section %s", section.name)
    results: list[PremiumRow] = []
    for row in section.rows:
        health_amount = parse_amount(row.get(health_column)) if health_column else 0
        pension_amount = parse_amount(row.get(pension_column)) if pension_column else 0
        age = calculate_age(row.get(birth_column), today) if birth_column else None
        nursing_target = is_nursing_target(age)
        results.append(
            PremiumRow(
                row=row,
                age=age,
                nursing_target=nursing_target,
                health=_employee_share(health_amount, rates.health),
                pension=_employee_share(pension_amount, rates.pension),
                nursing=_employee_share(health_amount, rates.nursing) if nursing_target else 0,
            )
        )
    return results
