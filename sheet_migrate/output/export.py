from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

from ..db.connection import ConnectionFactory
from ..models.config_models import OutputConfig
from ..staging.store import EXPORT_COLUMNS, StagingStore
from .selector import WriteStrategy, select_strategy
from .writers import WriteResult, writer_for

"""Export entry points: pick a strategy from the row estimate, then write."""

__all__ = [
    "export_rows",
    "export_errors",
]

logger = logging.getLogger(__name__)

_SUFFIX = {
    WriteStrategy.IN_MEMORY: ".xlsx",
    WriteStrategy.STREAMING: ".xlsx",
    WriteStrategy.FLAT_TEXT: ".csv",
}


def export_rows(
    path: Path,
    header: Sequence[str],
    rows: Iterable[Sequence[Any]],
    estimated_rows: int,
    output: OutputConfig,
    *,
    force_streaming: bool = False,
    prefer_flat_text: bool = False,
) -> WriteResult:
    """Write ``rows`` to ``path`` (suffix adjusted to the chosen format)."""
    strategy = select_strategy(
        estimated_rows,
        len(header),
        output.thresholds,
        force_streaming=force_streaming,
        prefer_flat_text=prefer_flat_text,
    )
    path = Path(path).with_suffix(_SUFFIX[strategy])
    path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"export {estimated_rows} row(s) x {len(header)} col(s) -> {path.name} ({strategy.value})")
    writer = writer_for(strategy, window_size=output.window_size, delimiter=output.delimiter)
    return writer.write(path, header, rows)


def export_errors(
    factory: ConnectionFactory,
    job_id: str,
    output: OutputConfig,
    path: Path | None = None,
    *,
    force_streaming: bool = False,
    prefer_flat_text: bool = False,
) -> WriteResult:
    """Export the staged error rows of ``job_id`` (original row data included)."""
    if path is None:
        path = Path(output.directory) / f"{job_id}-errors.xlsx"
    with factory.connection() as conn:
        store = StagingStore(conn, factory.dialect)
        total = store.count_errors(job_id)
        return export_rows(
            path,
            EXPORT_COLUMNS,
            store.iter_errors(job_id),
            total,
            output,
            force_streaming=force_streaming,
            prefer_flat_text=prefer_flat_text,
        )
