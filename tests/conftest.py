from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeClock, FakeGateway


@pytest.fixture()
def working_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
