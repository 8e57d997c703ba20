"""
Recognize row-count queries and turn their results into CohortData.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence

from .cohort_evaluator import CohortData

_LEADING_COMMENTS = re.compile(r"^(?:\s*--[^\n]*\n|\s*/\*.*?\*/)*\s*", re.S)
_SELECT_LIST = re.compile(r"\bselect\s+(?:distinct\s+)?(.*?)\bfrom\b", re.I | re.S)
_GROUP_BY = re.compile(r"\bgroup\s+by\s+(.+?)(?:\bhaving\b|\border\s+by\b|\blimit\b|;|$)", re.I | re.S)

_BREAKDOWN_TOKENS = (
    ("byAge", {"age", "ages", "age_group", "agegroup"}),
    ("byGender", {"gender", "sex"}),
    ("byLocation", {"state", "bundesland", "city", "location", "region", "town"}),
    ("byIncome", {"income", "salary", "earnings"}),
)


def _outer_select_list(sql: str) -> Optional[str]:
    body = _LEADING_COMMENTS.sub("", sql, count=1)
    matches = list(_SELECT_LIST.finditer(body))
    if not matches:
        return None
    # With CTEs the outermost SELECT is the last top-level one.
    return matches[-1].group(1).strip() if body.lower().startswith("with") else matches[0].group(1).strip()


def group_by_columns(sql: str) -> List[str]:
    m = _GROUP_BY.search(sql)
    if not m:
        return []
    return [c.strip().strip('"').split(".")[-1].lower() for c in m.group(1).split(",") if c.strip()]


def is_count_query(sql: str) -> bool:
    """
    True for row-count style queries: the select list starts with COUNT(,
    or a grouped query selects a COUNT( per group.
    """
    select_list = _outer_select_list(sql or "")
    if not select_list:
        return False
    lowered = select_list.lower()
    if re.match(r"count\s*\(", lowered):
        return True
    return bool(group_by_columns(sql)) and re.search(r"\bcount\s*\(", lowered) is not None


def breakdown_key(column: str) -> Optional[str]:
    name = column.lower()
    tokens = set(re.split(r"[^a-z0-9]+", name)) | {name}
    for key, words in _BREAKDOWN_TOKENS:
        if tokens & words:
            return key
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _count_column(row: Dict[str, Any], group_cols: Sequence[str]) -> Optional[str]:
    candidates = [k for k in row if k.lower() not in group_cols]
    for key in candidates:
        if "count" in key.lower() and _as_number(row[key]) is not None:
            return key
    for key in candidates:
        if _as_number(row[key]) is not None:
            return key
    return None


def cohort_from_result(sql: str, rows: Sequence[Any]) -> Optional[CohortData]:
    """Build CohortData from a count query's rows, or None if it is not one."""
    if not is_count_query(sql) or not rows:
        return None
    dict_rows = [r for r in rows if isinstance(r, dict)]
    if not dict_rows:
        return None

    group_cols = group_by_columns(sql)
    if not group_cols:
        for value in dict_rows[0].values():
            number = _as_number(value)
            if number is not None:
                return CohortData(size=int(number), sql=sql)
        return None

    count_key = _count_column(dict_rows[0], group_cols)
    if count_key is None:
        return None
    group_key = next((k for k in dict_rows[0] if k.lower() in group_cols), None)
    if group_key is None:
        group_key = next((k for k in dict_rows[0] if k != count_key), None)

    total = 0
    distribution: Dict[str, float] = {}
    for row in dict_rows:
        count = _as_number(row.get(count_key)) or 0
        total += count
        if group_key is not None:
            label = str(row.get(group_key))
            distribution[label] = distribution.get(label, 0) + count

    breakdown: Dict[str, Dict[str, float]] = {}
    key = breakdown_key(group_key) if group_key else None
    if key is not None:
        breakdown[key] = distribution
    return CohortData(size=int(total), sql=sql, breakdown=breakdown)
