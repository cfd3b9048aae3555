"""Export of balance query results to CSV or XLSX."""

from pathlib import Path
from typing import Sequence, Union

import pandas as pd

from balance_collection.common.logging_setup import get_logger
from .orchestrator import QueryResult

logger = get_logger(__name__)

COLUMNS = ["address", "balance", "status", "error"]


def results_to_frame(results: Sequence[QueryResult]) -> pd.DataFrame:
    """One row per result, in input order"""
    rows = [
        {
            "address": r.address,
            "balance": r.balance,
            "status": getattr(r.status, "value", r.status),
            "error": r.error,
        }
        for r in results
    ]
    return pd.DataFrame(rows, columns=COLUMNS)


def export_results(results: Sequence[QueryResult], path: Union[str, Path]) -> Path:
    """Write results to ``path``; ``.xlsx`` gives a spreadsheet, anything else CSV.

    Balances are written as text so large values keep every digit.

    Raises:
        OSError: If the file cannot be written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = results_to_frame(results)

    if path.suffix.lower() == ".xlsx":
        df.to_excel(path, index=False, sheet_name="balances")
    else:
        df.to_csv(path, index=False)

    logger.log_operation(
        operation="export_results",
        params={"path": str(path), "rows": len(df)},
        status="completed",
        message=f"Exported {len(df)} results to {path}",
    )
    return path
