from __future__ import annotations

import threading

import pytest

from sheet_migrate.errors import ErrorCeilingExceeded
from sheet_migrate.services.ingest import _RunState


def _state(**kw) -> _RunState:
    params = dict(
        job_id="j1",
        total_rows=None,
        resumed_from=0,
        max_errors=3,
        max_rows=1000,
        progress_interval=100,
        cancel_event=threading.Event(),
        progress_callback=None,
        tracker=None,
    )
    params.update(kw)
    return _RunState(**params)


def test_ceiling_counts_this_run():
    state = _state()
    for _ in range(3):
        state.add_parse_error()
    with pytest.raises(ErrorCeilingExceeded, match="error rows 4 exceeded ceiling max_errors=3"):
        state.add_parse_error()


def test_resumed_run_counts_errors_already_staged():
    state = _state(resumed_from=400, prior_parse_errors=2)
    state.add_parse_error()
    with pytest.raises(ErrorCeilingExceeded) as exc:
        state.add_parse_error()
    assert exc.value.error_rows == 4
    assert state.parse_error_rows == 2
