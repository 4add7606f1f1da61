from __future__ import annotations

import pytest

from wsreplay.core.logging.setup import clear_context, configure_logging


@pytest.fixture(scope="session", autouse=True)
def _logging() -> None:
    configure_logging(level="WARNING", json=False)


@pytest.fixture(autouse=True)
def _clean_log_context():
    yield
    clear_context()
