"""Delimited-text export of the transaction log.

The ledger hands over rows in its own order (newest first by default); this
module only formats them. Nothing here reads or mutates the store.
"""

from __future__ import annotations

import csv
import io
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable, List, Optional

from . import log
from .data_manager import TransactionRow

EXPORT_HEADER = ["Date", "Item", "Quantity", "Price Each", "Discount", "Total", "Notes"]


def format_export_date(timestamp_iso: str) -> str:
    """Render a stored ISO timestamp as ``YYYY-MM-DD HH:MM``.

    Unparseable values are passed through unchanged rather than dropped.
    """

    try:
        moment = datetime.fromisoformat(timestamp_iso)
    except ValueError:
        return timestamp_iso
    return moment.strftime("%Y-%m-%d %H:%M")


def transaction_to_row(transaction: TransactionRow) -> List[str]:
    return [
        format_export_date(transaction.timestamp_iso),
        transaction.item_name_snapshot,
        str(transaction.qty_sold),
        str(transaction.price_each),
        str(transaction.discount),
        str(transaction.total_amount),
        transaction.notes or "",
    ]


def render_transactions_csv(transactions: Iterable[TransactionRow]) -> str:
    """Return the CSV text for ``transactions``, header first, one row each."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    for transaction in transactions:
        writer.writerow(transaction_to_row(transaction))
    return buffer.getvalue()


def default_export_name(now: Optional[datetime] = None) -> str:
    """Return ``transactions-YYYY-MM-DD.csv`` for ``now`` (default: today, UTC)."""

    moment = now or datetime.now(UTC)
    return f"transactions-{moment.strftime('%Y-%m-%d')}.csv"


def write_transactions_csv(transactions: Iterable[TransactionRow], destination: Path) -> Path:
    """Write the CSV export to ``destination`` and return the resolved path.

    When ``destination`` is an existing directory the file is named with
    :func:`default_export_name` inside it.
    """

    target = Path(destination).expanduser()
    if target.is_dir():
        target = target / default_export_name()
    target = target.resolve()
    target.parent.mkdir(parents=True, exist_ok=True)
    rows = list(transactions)
    target.write_text(render_transactions_csv(rows), encoding="utf-8", newline="")
    log.info("Exported %d transaction row(s) to '%s'", len(rows), target)
    return target
