"""
Seller spec upload parsing.

Sellers upload their specs as a spreadsheet (one row per spec) or as the
stage-1 JSON payload. Sheets come in many shapes ("Spec Name" vs
"Specification Name", a title row above the headers, options in one
comma-separated cell), so the header row and the column roles are detected
rather than assumed.

File problems (missing file, unreadable workbook) raise: they belong to the
upload step, not to reconciliation.
"""

import json
import logging
import os
import re
from typing import Dict, List, Optional

import pandas as pd

from extraction import flatten_seller_specs
from reconciler import SpecEntry, Tier, coerce_specs

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Column detection keywords
# ---------------------------------------------------------------------------
NAME_KEYWORDS = ['spec name', 'specification', 'spec', 'attribute', 'parameter', 'name']
OPTIONS_KEYWORDS = ['option', 'value', 'choice']
OPTIONS_EXCLUDE_KEYWORDS = ['total', 'count', 'number of', 'problematic']
TIER_KEYWORDS = ['tier', 'priority', 'level']
INPUT_TYPE_KEYWORDS = ['input type', 'input_type', 'field type']

HEADER_SCAN_ROWS = 5

# Options cells: "304, 316; 202 | 430" or one option per line
OPTION_SEPARATORS = re.compile(r'[,;|\n]+')


def _cell_text(value) -> str:
    if value is None:
        return ''
    try:
        if pd.isna(value):
            return ''
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def split_options(cell) -> List[str]:
    """'304, 316 ;202' -> ['304', '316', '202']. Blank cells give []."""
    text = _cell_text(cell)
    if not text:
        return []
    return [part.strip() for part in OPTION_SEPARATORS.split(text) if part.strip()]


def _detect_header_row(raw: pd.DataFrame) -> int:
    """
    Detect which row holds the column headers.

    First of the leading rows with at least 2 non-blank text cells
    (skips title and blank rows).
    """
    for i in range(min(HEADER_SCAN_ROWS, len(raw))):
        values = [_cell_text(v) for v in raw.iloc[i].values]
        text_values = [v for v in values if v and not re.fullmatch(r'[\d.\s]+', v)]
        if len(text_values) >= 2:
            return i
    return 0


def _find_column(columns: List[str], keywords: List[str], taken: set,
                 exclude: Optional[List[str]] = None) -> Optional[str]:
    # Keyword order is priority order
    for keyword in keywords:
        for col in columns:
            if col in taken:
                continue
            col_lower = col.lower().strip()
            if exclude and any(ex in col_lower for ex in exclude):
                continue
            if keyword in col_lower:
                return col
    return None


def _detect_columns(columns: List[str]) -> Dict[str, Optional[str]]:
    """
    Role-based column detection.

    Options and tier columns are claimed first so "Options (Comma Separated)"
    or "Spec Tier" never end up as the name column.

    Returns dict with:
        'name_col':       spec name column (required; falls back to the first column)
        'options_col':    options column (or None)
        'tier_col':       tier column (or None)
        'input_type_col': input type column (or None)
    """
    taken = set()
    options_col = _find_column(columns, OPTIONS_KEYWORDS, taken, OPTIONS_EXCLUDE_KEYWORDS)
    if options_col:
        taken.add(options_col)
    input_type_col = _find_column(columns, INPUT_TYPE_KEYWORDS, taken)
    if input_type_col:
        taken.add(input_type_col)
    tier_col = _find_column(columns, TIER_KEYWORDS, taken)
    if tier_col:
        taken.add(tier_col)
    name_col = _find_column(columns, NAME_KEYWORDS, taken)

    if name_col is None:
        remaining = [c for c in columns if c not in taken]
        name_col = remaining[0] if remaining else None

    return {
        'name_col': name_col,
        'options_col': options_col,
        'tier_col': tier_col,
        'input_type_col': input_type_col,
    }


def specs_from_frame(df: pd.DataFrame) -> List[SpecEntry]:
    """
    Build seller specs from a DataFrame with one spec per row.

    Rows without a name are skipped; a missing or unrecognised tier means Primary.
    """
    if df is None or df.empty:
        return []

    columns = [str(c) for c in df.columns]
    df = df.copy()
    df.columns = columns
    roles = _detect_columns(columns)
    name_col = roles['name_col']
    if name_col is None:
        return []

    specs: List[SpecEntry] = []
    skipped = 0
    for _, row in df.iterrows():
        name = _cell_text(row[name_col])
        if not name:
            skipped += 1
            continue
        options = split_options(row[roles['options_col']]) if roles['options_col'] else []
        tier = _cell_text(row[roles['tier_col']]) if roles['tier_col'] else ''
        input_type = _cell_text(row[roles['input_type_col']]) if roles['input_type_col'] else ''
        specs.append(SpecEntry(name=name, options=tuple(options), tier=Tier.parse(tier),
                               input_type=input_type))

    if skipped:
        logger.debug("Skipped %d rows without a spec name", skipped)
    logger.debug("Parsed %d seller specs (columns: %s)", len(specs), roles)
    return specs


def _source_name(source) -> str:
    if isinstance(source, (str, os.PathLike)):
        return os.fspath(source)
    return getattr(source, 'name', '') or ''


def _read_raw_sheet(source, sheet_name) -> pd.DataFrame:
    if hasattr(source, 'seek'):
        source.seek(0)
    if _source_name(source).lower().endswith('.csv'):
        return pd.read_csv(source, header=None, dtype=str, keep_default_na=False)
    return pd.read_excel(source, sheet_name=sheet_name if sheet_name is not None else 0,
                         header=None, dtype=str, engine='openpyxl')


def _load_json_specs(source) -> List[SpecEntry]:
    if hasattr(source, 'read'):
        source.seek(0)
        data = json.load(source)
    else:
        with open(source, 'r', encoding='utf-8') as f:
            data = json.load(f)
    # Stage-1 payload or a plain list of {spec_name, options, tier}
    if isinstance(data, dict) and 'seller_specs' in data:
        return flatten_seller_specs(data)
    if isinstance(data, dict):
        data = data.get('specs', [])
    return [s for s in coerce_specs(data) if s.name]


def load_seller_specs(source, sheet_name=None) -> List[SpecEntry]:
    """
    Load seller specs from an .xlsx / .csv sheet or a .json payload.

    source is a path or an uploaded file object (with a .name). For sheets
    the header row and the name/options/tier/input type columns are detected.

    Raises FileNotFoundError for a missing path; pandas/openpyxl errors for
    unreadable workbooks propagate.
    """
    if isinstance(source, (str, os.PathLike)) and not os.path.exists(source):
        raise FileNotFoundError(f"Seller spec file not found: {os.fspath(source)}")

    if _source_name(source).lower().endswith('.json'):
        return _load_json_specs(source)

    raw = _read_raw_sheet(source, sheet_name)
    if raw.empty:
        return []
    header_row = _detect_header_row(raw)
    headers = [_cell_text(v) or f'column_{i}' for i, v in enumerate(raw.iloc[header_row].values)]
    df = raw.iloc[header_row + 1:].reset_index(drop=True)
    df.columns = headers
    return specs_from_frame(df)
