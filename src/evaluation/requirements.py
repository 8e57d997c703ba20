"""
Infer cohort requirements from recent user text.

Pattern based and deterministic; anything not recognized is simply left unset.
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

from .cohort_evaluator import CohortRequirements, Range

_MULTIPLIERS = {
    "k": 1_000,
    "thousand": 1_000,
    "m": 1_000_000,
    "mio": 1_000_000,
    "million": 1_000_000,
    "millions": 1_000_000,
}

_NUMBER = r"(\d+(?:[.,]\d+)*)\s*(k|m|mio|thousand|millions?)?\b"
_PEOPLE = r"\s*(?:people|persons|users|customers|consumers|individuals|shoppers|members)?"

_MIN_SIZE = re.compile(r"\b(?:at least|minimum(?: of)?|min\.?)\s+" + _NUMBER + _PEOPLE, re.I)
_MAX_SIZE = re.compile(r"\b(?:at most|no more than|up to|maximum(?: of)?|max\.?)\s+" + _NUMBER + _PEOPLE, re.I)
_TARGET_SIZE = [
    re.compile(r"\b(?:cohort|audience|segment|group) of\s+(?:about |around |approximately |roughly )?" + _NUMBER, re.I),
    re.compile(r"(?<![\w.,])" + _NUMBER + r"\s*(?:people|persons|users|customers|consumers|individuals|shoppers)\b", re.I),
    re.compile(r"(?<![\w.,])(\d+(?:[.,]\d+)*)\s*(millions?|mio)\b", re.I),
]

_AGE_BETWEEN = re.compile(r"\b(?:aged?|ages)\s+(\d{1,3})\s*(?:-|–|to|and)\s*(\d{1,3})\b", re.I)
_AGE_YEARS = re.compile(r"\b(\d{1,3})\s*(?:-|–|to)\s*(\d{1,3})\s*(?:years?|yrs?|y/o|year[- ]olds?)\b", re.I)
_AGE_OVER = re.compile(r"\b(?:over|above|older than)\s+(\d{1,3})(?!\s*(?:k|m|mio|thousand|million|%|,\d))\b", re.I)
_AGE_UNDER = re.compile(r"\b(?:under|below|younger than)\s+(\d{1,3})(?!\s*(?:k|m|mio|thousand|million|%|,\d))\b", re.I)

_INCOME_MIN = re.compile(
    r"\b(?:income|earning|earn|earns|salary)\s*(?:>|>=|over|above|(?:of )?at least|(?:of )?minimum(?: of)?|more than|greater than)\s*€?\s*" + _NUMBER,
    re.I,
)
_INCOME_MAX = re.compile(
    r"\b(?:income|earning|earn|earns|salary)\s*(?:<|<=|under|below|less than|(?:of )?at most|no more than|up to|(?:of )?maximum(?: of)?)\s*€?\s*" + _NUMBER,
    re.I,
)

# A bound belongs to income or age when one of these words sits just before it,
# or when a currency or age unit follows the number.
_NON_SIZE_BEFORE = re.compile(r"\b(?:income|incomes|earning|earnings|earn|earns|salary|salaries|aged?|ages)\W+(?:[a-z]+\W+)?$", re.I)
_NON_SIZE_AFTER = re.compile(r"\s*(?:€|eur\b|euros?\b|years?\b|yrs?\b|y/o\b)", re.I)

_FEMALE = re.compile(r"\b(?:women|woman|female|females|ladies|mothers|moms)\b", re.I)
_MALE = re.compile(r"\b(?:men|man|male|males|fathers|dads)\b", re.I)

LOCATIONS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Baden-Württemberg", ("baden-württemberg", "baden-wuerttemberg", "baden-wurttemberg")),
    ("Bayern", ("bayern", "bavaria")),
    ("Berlin", ("berlin",)),
    ("Brandenburg", ("brandenburg",)),
    ("Bremen", ("bremen",)),
    ("Hamburg", ("hamburg",)),
    ("Hessen", ("hessen", "hesse")),
    ("Mecklenburg-Vorpommern", ("mecklenburg-vorpommern", "mecklenburg")),
    ("Niedersachsen", ("niedersachsen", "lower saxony")),
    ("Nordrhein-Westfalen", ("nordrhein-westfalen", "north rhine-westphalia", "nrw")),
    ("Rheinland-Pfalz", ("rheinland-pfalz", "rhineland-palatinate")),
    ("Saarland", ("saarland",)),
    ("Sachsen", ("sachsen", "saxony")),
    ("Sachsen-Anhalt", ("sachsen-anhalt", "saxony-anhalt")),
    ("Schleswig-Holstein", ("schleswig-holstein",)),
    ("Thüringen", ("thüringen", "thueringen", "thuringia")),
    ("München", ("münchen", "muenchen", "munich")),
    ("Köln", ("köln", "koeln", "cologne")),
    ("Frankfurt", ("frankfurt",)),
    ("Stuttgart", ("stuttgart",)),
    ("Düsseldorf", ("düsseldorf", "duesseldorf", "dusseldorf")),
    ("Leipzig", ("leipzig",)),
    ("Dortmund", ("dortmund",)),
    ("Essen", ("essen",)),
    ("Dresden", ("dresden",)),
    ("Hannover", ("hannover", "hanover")),
    ("Nürnberg", ("nürnberg", "nuernberg", "nuremberg")),
)


def parse_number(digits: str, unit: Optional[str] = None) -> int:
    """
    Parse "500,000", "1.5" + "m" or "2" + "million" into an int.

    Separators followed by exactly three digits are thousands separators;
    otherwise they are treated as a decimal point.
    """
    text = digits.strip()
    if re.fullmatch(r"\d{1,3}(?:[.,]\d{3})+", text) and not unit:
        value = float(re.sub(r"[.,]", "", text))
    else:
        value = float(text.replace(",", "."))
    if unit:
        value *= _MULTIPLIERS.get(unit.lower(), 1)
    return int(round(value))


def _first_number(pattern: re.Pattern, text: str) -> Optional[int]:
    m = pattern.search(text)
    if not m:
        return None
    return parse_number(m.group(1), m.group(2))


def _size_bound(pattern: re.Pattern, text: str) -> Optional[re.Match]:
    for m in pattern.finditer(text):
        if _NON_SIZE_BEFORE.search(text[max(0, m.start() - 30) : m.start()]):
            continue
        if _NON_SIZE_AFTER.match(text, m.end()):
            continue
        return m
    return None


def _target_size(text: str, consumed: List[Tuple[int, int]]) -> Optional[int]:
    for pattern in _TARGET_SIZE:
        for m in pattern.finditer(text):
            if any(start <= m.start() < end for start, end in consumed):
                continue
            return parse_number(m.group(1), m.group(2))
    return None


def _age_range(text: str) -> Optional[Range]:
    m = _AGE_BETWEEN.search(text) or _AGE_YEARS.search(text)
    if m:
        low, high = sorted((int(m.group(1)), int(m.group(2))))
        return Range(min=low, max=high)
    over = _AGE_OVER.search(text)
    under = _AGE_UNDER.search(text)
    if over or under:
        return Range(
            min=int(over.group(1)) if over else None,
            max=int(under.group(1)) if under else None,
        )
    return None


def _locations(text: str) -> Tuple[str, ...]:
    lowered = text.lower()
    found: List[str] = []
    for canonical, aliases in LOCATIONS:
        for alias in aliases:
            if re.search(r"(?<![\w-])" + re.escape(alias) + r"(?![\w-])", lowered):
                found.append(canonical)
                break
    return tuple(found)


def infer_requirements(texts: Sequence[str]) -> CohortRequirements:
    """Build CohortRequirements from the given user texts (oldest first)."""
    text = "\n".join(t for t in texts if t)
    if not text.strip():
        return CohortRequirements()

    min_match = _size_bound(_MIN_SIZE, text)
    max_match = _size_bound(_MAX_SIZE, text)
    consumed = [(m.start(), m.end()) for m in (min_match, max_match) if m]
    min_size = parse_number(min_match.group(1), min_match.group(2)) if min_match else None
    max_size = parse_number(max_match.group(1), max_match.group(2)) if max_match else None

    genders: List[str] = []
    if _FEMALE.search(text):
        genders.append("female")
    if _MALE.search(text):
        genders.append("male")

    income_min = _first_number(_INCOME_MIN, text)
    income_max = _first_number(_INCOME_MAX, text)
    income = Range(min=income_min, max=income_max) if income_min is not None or income_max is not None else None

    return CohortRequirements(
        target_size=_target_size(text, consumed),
        min_size=min_size,
        max_size=max_size,
        age_range=_age_range(text),
        genders=tuple(genders),
        locations=_locations(text),
        income_range=income,
        description=text,
    )
