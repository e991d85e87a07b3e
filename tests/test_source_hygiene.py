"""Source-level checks over the shipped modules and the test package layout.

Every shipped module compiles with warnings treated as errors, which catches
invalid escape sequences in docstrings and string literals (reported by
current interpreters as SyntaxWarning at compile time).
"""

from __future__ import annotations

import re
import warnings
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parent.parent
_SOURCES = sorted(
    [p for pkg in ("api", "auth", "core") for p in (_ROOT / pkg).rglob("*.py")]
    + [_ROOT / "main.py", _ROOT / "asgi.py"]
)
_CROSS_IMPORT = re.compile(r"^\s*(from tests\b|import tests\b|from conftest\b|import conftest\b)", re.MULTILINE)


@pytest.mark.parametrize("path", _SOURCES, ids=lambda p: str(p.relative_to(_ROOT)))
def test_compiles_without_warnings(path: Path) -> None:
    source = path.read_text(encoding="utf-8")
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, str(path), "exec")


def test_test_modules_share_fixtures_only_through_conftest() -> None:
    tests_dir = _ROOT / "tests"
    assert not (tests_dir / "__init__.py").exists()
    for path in tests_dir.glob("test_*.py"):
        assert _CROSS_IMPORT.search(path.read_text(encoding="utf-8")) is None, path.name
