"""
Helpers that turn raw episode data into generic, reusable knowledge.

Nothing here keeps user values: requests are reduced to tags and task types,
parameters to type placeholders, errors to categories.
"""

from __future__ import annotations

import re
from typing import Any

# Chinese keyword -> English tag. Both spellings tag the same episode.
TAG_KEYWORDS: dict[str, str] = {
    "写入": "write",
    "读取": "read",
    "格式": "format",
    "图表": "chart",
    "公式": "formula",
    "排序": "sort",
    "筛选": "filter",
    "删除": "delete",
    "合并": "merge",
    "拆分": "split",
    "颜色": "color",
    "字体": "font",
    "边框": "border",
    "求和": "sum",
    "平均": "average",
    "统计": "stats",
}

ERROR_CATEGORIES: list[tuple[str, tuple[str, ...]]] = [
    ("not_found", ("not found", "不存在")),
    ("permission", ("permission", "权限")),
    ("invalid_input", ("invalid", "无效")),
    ("timeout", ("timeout", "超时")),
]

TASK_TYPES: list[tuple[str, tuple[str, ...]]] = [
    ("formatting", ("格式", "format")),
    ("formula", ("公式", "formula")),
    ("chart", ("图表", "chart")),
    ("sort", ("排序", "sort")),
    ("filter", ("筛选", "filter")),
    ("delete", ("删除", "delete")),
    ("copy", ("复制", "copy")),
]

_RANGE_VALUE = re.compile(r"^[A-Z]+\d+:[A-Z]+\d+$")
_CELL_VALUE = re.compile(r"^[A-Z]+\d+$")


def extract_tags(text: str) -> list[str]:
    lowered = (text or "").lower()
    tags: list[str] = []
    for keyword, tag in TAG_KEYWORDS.items():
        if (keyword in lowered or tag in lowered) and tag not in tags:
            tags.append(tag)
    return tags


def categorize_error(error: str) -> str:
    lowered = (error or "").lower()
    for category, needles in ERROR_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return "unknown"


def infer_task_type(request: str) -> str:
    lowered = (request or "").lower()
    for task_type, needles in TASK_TYPES:
        if any(needle in lowered for needle in needles):
            return task_type
    return "general"


def anonymize_parameters(parameters: dict[str, Any]) -> dict[str, Any]:
    """Replace values by type placeholders; booleans are kept as-is."""
    anonymized: dict[str, Any] = {}
    for key, value in (parameters or {}).items():
        if isinstance(value, bool):
            anonymized[key] = value
        elif isinstance(value, str):
            if _RANGE_VALUE.match(value):
                anonymized[key] = "<range>"
            elif _CELL_VALUE.match(value):
                anonymized[key] = "<cell>"
            else:
                anonymized[key] = "<string>"
        elif isinstance(value, (int, float)):
            anonymized[key] = "<number>"
        elif isinstance(value, (list, tuple)):
            anonymized[key] = "<array>"
        else:
            anonymized[key] = "<object>"
    return anonymized


def extract_parameter_hints(parameters: dict[str, Any]) -> dict[str, str]:
    hints: dict[str, str] = {}
    for key, value in (parameters or {}).items():
        if isinstance(value, bool):
            hints[key] = "yes/no"
        elif isinstance(value, str):
            if _RANGE_VALUE.match(value):
                hints[key] = "range, e.g. A1:B10"
            elif _CELL_VALUE.match(value):
                hints[key] = "cell, e.g. A1"
            elif value.startswith("="):
                hints[key] = "formula"
            else:
                hints[key] = "text"
        elif isinstance(value, (int, float)):
            hints[key] = "number"
    return hints


def normalize_error(error: str) -> str:
    """Collapse digits and quoted literals so similar errors group together."""
    text = re.sub(r"\d+", "N", error or "")
    text = re.sub(r"'[^']+'", "'X'", text)
    text = re.sub(r'"[^"]+"', '"X"', text)
    return text[:100]


def experience_key(experience_type: str, content: Any) -> tuple[str, ...]:
    """Identity key used to merge experiences of the same kind."""
    if experience_type == "failure_reason":
        return (experience_type, content.tool_name, content.error_type)
    if experience_type == "valid_parameters":
        return (experience_type, content.tool_name, content.task_type)
    if experience_type == "task_pattern":
        return (experience_type, content.task_type)
    if experience_type == "user_preference":
        return (experience_type, content.preference_type)
    return (experience_type,)
