"""Test configuration ensuring the sgfbatch package is importable from src/."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest


def _ensure_src_on_sys_path() -> None:
    """Insert the src directory at the beginning of sys.path."""
    src_root = Path(__file__).resolve().parents[1] / "src"
    src_str = str(src_root)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)


_ensure_src_on_sys_path()


@pytest.fixture
def folders(tmp_path: Path):
    """Source and save folders for a batch run."""
    source = tmp_path / "source"
    save = tmp_path / "save"
    source.mkdir()
    save.mkdir()
    return source, save


@pytest.fixture
def stub_tool(tmp_path: Path) -> Path:
    """A stand-in conversion tool that echoes its arguments and writes a marker file."""
    script = tmp_path / "stub_tool.py"
    script.write_text(
        "\n".join(
            [
                "import sys",
                "from pathlib import Path",
                "src, dst = sys.argv[1], sys.argv[2]",
                "name = Path(src).name",
                "(Path(dst) / (name + '.out')).write_text(src)",
                "print('converting ' + name)",
                "print('cwd ' + str(Path.cwd()))",
                "sys.exit(3 if name.startswith('bad') else 0)",
            ]
        )
    )
    return script


@pytest.fixture
def root_logging():
    """Drop the handlers setup_logging installs and restore the root level."""
    root = logging.getLogger()
    level = root.level
    yield root
    for handler in root.handlers[:]:
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
