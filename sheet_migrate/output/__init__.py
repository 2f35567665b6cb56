from .export import export_errors, export_rows
from .selector import WriteStrategy, select_strategy
from .writers import FlatTextWriter, InMemoryWorkbookWriter, StyleCache, WindowedStreamingWriter, WriteResult

__all__ = [
    "FlatTextWriter",
    "InMemoryWorkbookWriter",
    "StyleCache",
    "WindowedStreamingWriter",
    "WriteResult",
    "WriteStrategy",
    "export_errors",
    "export_rows",
    "select_strategy",
]
