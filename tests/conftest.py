from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolated_loop_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the shared loop directory and the supervisor log at *tmp_path*."""
    monkeypatch.setenv("LOOPWATCH_TMP_DIR", str(tmp_path))
    monkeypatch.delenv("RALPH_SUMMARY_TMP_DIR", raising=False)
    return tmp_path
