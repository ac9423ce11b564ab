"""
Shellgate · Shared Test-Fixtures.

Alle Tests nutzen ein temporäres Verzeichnis statt ~/.shellgate/.
So sind Tests isoliert und reproduzierbar.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from shellgate.config import ShellgateConfig
from shellgate.security.script_gate import ScriptSafetyGate

if TYPE_CHECKING:
    from pathlib import Path


class FakeClock:
    """Monotone Uhr, die nur auf Zuruf vorrückt."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def tmp_shellgate_home(tmp_path: Path) -> Path:
    """Temporäres Shellgate-Home-Verzeichnis."""
    return tmp_path / ".shellgate"


@pytest.fixture
def config(tmp_shellgate_home: Path) -> ShellgateConfig:
    """ShellgateConfig mit temporärem Home-Verzeichnis."""
    return ShellgateConfig(home=tmp_shellgate_home)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gate() -> ScriptSafetyGate:
    return ScriptSafetyGate()
