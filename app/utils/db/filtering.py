"""Build WHERE clauses from simple filter dicts."""

from __future__ import annotations

from typing import Any, Dict

from sqlalchemy.orm import Query

_OPERATORS = {
    "==": lambda col, v: col == v,
    "!=": lambda col, v: col != v,
    ">": lambda col, v: col > v,
    ">=": lambda col, v: col >= v,
    "<": lambda col, v: col < v,
    "<=": lambda col, v: col <= v,
    "in": lambda col, v: col.in_(v),
    "is_null": lambda col, v: col.is_(None) if v else col.isnot(None),
}


def apply_filters(query: Query, model: Any, filters: Dict[str, Any]) -> Query:
    """
    Apply filters to a query. Values are either plain (equality) or
    {"operator": ">=", "value": x}; a list of such dicts ANDs several
    conditions on one column. None values are skipped.
    """
    for field, criteria in filters.items():
        column = getattr(model, field, None)
        if column is None:
            raise ValueError(f"Unknown filter field: {field}")
        conditions = criteria if isinstance(criteria, list) else [criteria]
        for condition in conditions:
            if isinstance(condition, dict):
                operator = condition.get("operator", "==")
                value = condition.get("value")
                if operator not in _OPERATORS:
                    raise ValueError(f"Unsupported filter operator: {operator}")
                if value is None and operator != "is_null":
                    continue
                query = query.filter(_OPERATORS[operator](column, value))
            elif condition is not None:
                query = query.filter(column == condition)
    return query
