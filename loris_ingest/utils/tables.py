"""CSV/TSV helpers shared by the clinical and BIDS pipelines."""

from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

log = logging.getLogger(__name__)

#: Values BIDS uses for "missing" that must not be mistaken for data.
MISSING_VALUES = {"", "n/a", "na", "nan", "none", "null"}


def read_table(path: Path) -> pd.DataFrame:
    """Load *path* into a DataFrame with every column read as a string.

    ``.tsv`` files are tab-separated, everything else is read as CSV.  A
    zero-byte file yields an empty DataFrame instead of raising.

    Raises:
        ValueError: When the file cannot be parsed.
    """
    sep = "\t" if path.suffix.lower() == ".tsv" else ","
    try:
        df = pd.read_csv(path, sep=sep, dtype=str, keep_default_na=False, encoding="utf-8-sig")
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except pd.errors.ParserError as exc:
        raise ValueError(f"{path.name}: {exc}") from exc
    df.columns = [str(c).strip() for c in df.columns]
    return df


def is_missing(value: object) -> bool:
    """Return ``True`` for empty cells and the usual *n/a* spellings."""
    if value is None:
        return True
    return str(value).strip().lower() in MISSING_VALUES


def write_tsv(df: pd.DataFrame, path: Path) -> None:
    """Write *df* as a BIDS-style TSV (``n/a`` for missing values)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False, na_rep="n/a")
    log.debug("Wrote %s (%d rows)", path, len(df))
