"""Address ingestion from pasted text, TXT, CSV and XLSX files.

Every loader deduplicates, keeps input order and drops anything that fails
Base58Check validation, so invalid addresses never reach the orchestrator.
"""

import csv
import re
from collections import Counter
from pathlib import Path
from typing import Iterable, List, Union

import pandas as pd

from balance_collection.common.logging_setup import get_logger
from .address_codec import validate_with_reason

logger = get_logger(__name__)

SEPARATORS = re.compile(r"[,\s;]+")
SPREADSHEET_SUFFIXES = {".xlsx", ".xlsm"}


class AddressLoadError(Exception):
    """Raised when no valid address can be loaded."""
    pass


def filter_valid(candidates: Iterable[str]) -> List[str]:
    """Strip, dedupe and validate candidate strings, preserving order"""
    addresses = []
    seen = set()
    rejected = Counter()

    for candidate in candidates:
        address = str(candidate).strip()
        if not address or address in seen:
            continue
        seen.add(address)

        reason = validate_with_reason(address)
        if reason is None:
            addresses.append(address)
        else:
            rejected[reason.value] += 1

    if rejected:
        logger.log_operation(
            operation="filter_addresses",
            params=dict(rejected),
            status="completed",
            message=f"Skipped {sum(rejected.values())} invalid addresses: {dict(rejected)}",
        )
    return addresses


def _split_text(text: str) -> List[str]:
    return [part for part in SEPARATORS.split(text) if part]


def load_addresses_from_text(text: str) -> List[str]:
    """Load addresses separated by newlines, commas, spaces, tabs or semicolons.

    Raises:
        AddressLoadError: If no valid address is found
    """
    addresses = filter_valid(_split_text(text or ""))
    if not addresses:
        raise AddressLoadError(
            "No valid TRON address found. A TRON address is 34 characters, "
            "starts with T and must pass checksum validation"
        )
    return addresses


def _read_csv_cells(path: Path) -> List[str]:
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        return [field for row in csv.reader(f) for field in row]


def _read_spreadsheet_cells(path: Path) -> List[str]:
    sheets = pd.read_excel(path, sheet_name=None, header=None, dtype=str)
    cells = []
    for frame in sheets.values():
        for row in frame.itertuples(index=False):
            cells.extend(str(value) for value in row if isinstance(value, str))
    return cells


def load_addresses_from_file(path: Union[str, Path]) -> List[str]:
    """Load addresses from a TXT, CSV or XLSX file; any column may hold them.

    Raises:
        AddressLoadError: If the file cannot be read or holds no valid address
    """
    path = Path(path)
    suffix = path.suffix.lower()

    try:
        if suffix == ".csv":
            cells = _read_csv_cells(path)
        elif suffix in SPREADSHEET_SUFFIXES:
            cells = _read_spreadsheet_cells(path)
        else:
            cells = _split_text(path.read_text(encoding="utf-8-sig"))
    except (OSError, UnicodeDecodeError, csv.Error, ValueError) as e:
        raise AddressLoadError(f"Failed to read address file {path}: {e}") from e

    addresses = filter_valid(cells)
    if not addresses:
        raise AddressLoadError(
            f"No valid TRON address found in {path}. A TRON address is 34 characters, "
            "starts with T and must pass checksum validation"
        )

    logger.log_operation(
        operation="load_addresses",
        params={"path": str(path)},
        status="completed",
        message=f"Loaded {len(addresses)} addresses from {path.name}",
    )
    return addresses
