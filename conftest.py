"""Root pytest configuration: runs the python blocks in docs/**/*.md."""

import os
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from sybil import Sybil
from sybil.parsers.markdown import PythonCodeBlockParser, SkipParser

_DOCS_DIR = Path(__file__).parent / "docs"


def _enter_scratch_dir(namespace: dict[str, Any]) -> None:
    """Run each documentation file from its own temporary directory."""
    scratch = TemporaryDirectory(prefix="dae_core-docs-")
    namespace["_scratch"] = scratch
    namespace["_cwd"] = Path.cwd()
    os.chdir(scratch.name)


def _leave_scratch_dir(namespace: dict[str, Any]) -> None:
    """Return to the original directory and remove the scratch one."""
    os.chdir(namespace.pop("_cwd"))
    namespace.pop("_scratch").cleanup()


pytest_collect_file = Sybil(
    parsers=[PythonCodeBlockParser(), SkipParser()],
    path=str(_DOCS_DIR),
    pattern="**/*.md",
    setup=_enter_scratch_dir,
    teardown=_leave_scratch_dir,
).pytest()
