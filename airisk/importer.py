from __future__ import annotations

import logging
from pathlib import Path

import openpyxl

from airisk.orchestrator import PORTFOLIO_BATCH_LIMIT
from airisk.utils import unique_names

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def read_company_names(file_path: str | Path, limit: int = PORTFOLIO_BATCH_LIMIT) -> dict:
    """Company names from the first column of the first sheet, header row skipped.

    Names are trimmed and de-duplicated case-insensitively; anything past
    *limit* is dropped and reported via ``truncated``.
    """
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        raw = [_s(row[0]) if row else "" for row in ws.iter_rows(min_row=2, max_col=1, values_only=True)]
    finally:
        wb.close()

    names = unique_names(raw)
    non_blank = sum(1 for r in raw if r)
    result = {
        "companies": names[:limit],
        "total_rows": non_blank,
        "duplicates_skipped": non_blank - len(names),
        "truncated": len(names) > limit,
    }
    log.info("Imported %d company names (%d rows, %d duplicates)",
             len(result["companies"]), non_blank, result["duplicates_skipped"])
    return result
