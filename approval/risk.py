"""
Risk scoring for candidate workbook operations.

`assess_risk` is pure: it reads the operation name, its parameters and the
natural-language request, and returns a RiskAssessment. Every rule can only
raise the level assigned by the rules before it.
"""

from __future__ import annotations

import json
import re
from typing import Any

from shared.config import ApprovalConfig
from shared.models import EstimatedImpact, RiskAssessment, RiskLevel

TOOL_PREFIXES = ("excel_",)

HIGH_RISK_OPERATIONS: frozenset[str] = frozenset({
    # deletions
    "delete_rows",
    "delete_row",
    "delete_columns",
    "delete_column",
    "delete_sheet",
    "remove_duplicates",
    # clears
    "clear_range",
    "clear_all",
    "clear_formats",
    "clear_contents",
    # batch mutations
    "batch_update",
    "batch_write",
    "batch_write_optimized",
    "batch_formula",
    "fill_formula",
    "fill_range",
    # protection
    "protect_sheet",
    "unprotect_sheet",
    "lock_cells",
    "unlock_cells",
    # macros
    "run_macro",
    "run_script",
    "execute_vba",
})

MEDIUM_RISK_OPERATIONS: frozenset[str] = frozenset({
    "write_range",
    "set_range_values",
    "overwrite_range",
    "set_formula",
    "set_formulas",
    "set_array_formula",
    "insert_rows",
    "insert_columns",
    "merge_cells",
    "unmerge_cells",
    "sort",
    "sort_range",
    "filter",
    "apply_filter",
    "find_replace",
})

IRREVERSIBLE_OPERATIONS: frozenset[str] = frozenset({
    "delete_rows",
    "delete_row",
    "delete_columns",
    "delete_column",
    "delete_sheet",
    "remove_duplicates",
})

BATCH_KEYWORDS: tuple[str, ...] = (
    "全部",
    "所有",
    "整列",
    "整表",
    "批量",
    "全列",
    "all",
    "entire",
    "whole",
)

WHOLE_DATASET_SCOPES = frozenset({"all", "entire", "workbook"})

RANGE_PARAMETER_KEYS = ("range", "address", "target_range")

_IMPACT_DESCRIPTIONS = {
    "delete_rows": "Deletes the selected rows. This cannot be undone.",
    "delete_row": "Deletes the selected rows. This cannot be undone.",
    "delete_columns": "Deletes the selected columns. This cannot be undone.",
    "delete_column": "Deletes the selected columns. This cannot be undone.",
    "delete_sheet": "Deletes the whole worksheet and all of its data. This cannot be undone.",
    "clear_range": "Clears every value in the target range.",
    "remove_duplicates": "Removes duplicate rows; removed data cannot be recovered.",
    "protect_sheet": "Changes the protection state of the worksheet.",
    "unprotect_sheet": "Changes the protection state of the worksheet.",
}

_DISPLAY_NAMES = {
    "delete_rows": "Delete rows",
    "delete_row": "Delete rows",
    "delete_columns": "Delete columns",
    "delete_column": "Delete columns",
    "delete_sheet": "Delete worksheet",
    "clear_range": "Clear range",
    "clear_all": "Clear everything",
    "batch_update": "Batch update",
    "batch_write": "Batch write",
    "batch_formula": "Batch formula",
    "fill_formula": "Fill formula",
    "remove_duplicates": "Remove duplicates",
    "protect_sheet": "Protect worksheet",
    "unprotect_sheet": "Unprotect worksheet",
    "write_range": "Write data",
    "set_formula": "Set formula",
    "sort_range": "Sort data",
}

_WHOLE_COLUMNS = re.compile(r"^\$?[A-Z]+:\$?[A-Z]+$", re.IGNORECASE)
_WHOLE_ROWS = re.compile(r"^\$?\d+:\$?\d+$")
_CELL_RANGE = re.compile(r"\$?([A-Z]+)\$?(\d+):\$?([A-Z]+)\$?(\d+)", re.IGNORECASE)


def normalize_operation_name(operation_name: str) -> str:
    name = str(operation_name or "").strip().lower()
    for prefix in TOOL_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


def operation_display_name(operation_name: str) -> str:
    return _DISPLAY_NAMES.get(normalize_operation_name(operation_name), operation_name)


def column_to_number(column: str) -> int:
    """Spreadsheet column letters → 1-based index (A=1, Z=26, AA=27)."""
    result = 0
    for char in column.upper():
        result = result * 26 + (ord(char) - 64)
    return result


def _strip_sheet(range_ref: str) -> str:
    text = range_ref.strip()
    if "!" in text:
        text = text.rsplit("!", 1)[1]
    return text


def estimate_cell_count(range_ref: str) -> int | None:
    """Cell count of an `A1:B10` style reference, None for anything else."""
    match = _CELL_RANGE.search(_strip_sheet(range_ref or ""))
    if not match:
        return None
    start_col = column_to_number(match.group(1))
    start_row = int(match.group(2))
    end_col = column_to_number(match.group(3))
    end_row = int(match.group(4))
    return (abs(end_col - start_col) + 1) * (abs(end_row - start_row) + 1)


def is_large_range(range_ref: str, threshold: int) -> bool:
    if not range_ref:
        return False
    text = _strip_sheet(range_ref)
    if _WHOLE_COLUMNS.match(text) or _WHOLE_ROWS.match(text):
        return True
    cell_count = estimate_cell_count(text)
    return cell_count is not None and cell_count > threshold


def contains_batch_keyword(text: str) -> bool:
    if not text:
        return False
    lowered = text.lower()
    for keyword in BATCH_KEYWORDS:
        if keyword.isascii():
            if re.search(rf"\b{re.escape(keyword)}\b", lowered):
                return True
        elif keyword in lowered:
            return True
    return False


def _target_range(parameters: dict[str, Any]) -> str:
    for key in RANGE_PARAMETER_KEYS:
        value = parameters.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _declares_whole_dataset(parameters: dict[str, Any]) -> bool:
    scope = parameters.get("scope")
    if isinstance(scope, str) and scope.strip().lower() in WHOLE_DATASET_SCOPES:
        return True
    return parameters.get("apply_to_all") is True or parameters.get("applyToAll") is True


def assess_risk(
    operation_name: str,
    parameters: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
    config: ApprovalConfig | None = None,
) -> RiskAssessment:
    """Score an operation. `context` may carry `user_input` and `estimated_rows`."""
    cfg = config or ApprovalConfig()
    params = parameters or {}
    ctx = context or {}
    user_input = str(ctx.get("user_input") or "")
    try:
        estimated_rows = int(ctx.get("estimated_rows") or 0)
    except (TypeError, ValueError):
        estimated_rows = 0

    name = normalize_operation_name(operation_name)
    level = RiskLevel.LOW
    needs_approval = False
    reasons: list[str] = []
    impact = ""

    # 1. static membership
    if name in HIGH_RISK_OPERATIONS:
        level = RiskLevel.CRITICAL if name == "delete_sheet" else RiskLevel.HIGH
        needs_approval = cfg.confirm_high_risk
        reasons.append(f'Operation "{operation_name}" is high risk')
        impact = _IMPACT_DESCRIPTIONS.get(name, "High-risk operation, confirm before running.")
    elif name in MEDIUM_RISK_OPERATIONS:
        level = RiskLevel.MEDIUM
        needs_approval = cfg.confirm_medium_risk
        reasons.append(f'Operation "{operation_name}" is medium risk')
        impact = "May overwrite existing data."

    # 2. batch keywords in the request or the parameters
    serialized = json.dumps(params, ensure_ascii=False, default=str)
    if contains_batch_keyword(user_input) or contains_batch_keyword(serialized):
        level = level.escalate()
        needs_approval = True
        reasons.append("batch keyword detected")

    # 3. affected rows
    if estimated_rows > cfg.batch_threshold:
        level = level.escalate()
        needs_approval = True
        reasons.append(f"affected rows ({estimated_rows}) exceed threshold ({cfg.batch_threshold})")

    # 4. target range size
    range_ref = _target_range(params)
    if is_large_range(range_ref, cfg.batch_threshold):
        level = level.escalate()
        needs_approval = needs_approval or cfg.confirm_medium_risk or level.rank >= RiskLevel.HIGH.rank
        reasons.append("large target range")

    # 5. explicit whole-dataset scope
    if _declares_whole_dataset(params):
        level = level.at_least(RiskLevel.CRITICAL)
        needs_approval = True
        reasons.append("operation applies to the whole dataset")

    return RiskAssessment(
        risk_level=level,
        needs_approval=needs_approval,
        reason="; ".join(reasons) or "routine operation",
        impact_description=impact or "standard operation",
        reversible=name not in IRREVERSIBLE_OPERATIONS,
        estimated_impact=EstimatedImpact(
            row_count=estimated_rows,
            cell_count=estimate_cell_count(range_ref) if range_ref else None,
        ),
    )
