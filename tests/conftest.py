"""Shared test fixtures and utilities for commkit tests.

Provides:
- Temporary workspace fixtures
- A helper running scripts through the embedded interpreter
- Settings isolation
"""

import io
import os
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import patch

import pytest

from commkit.config import CommkitSettings, reload_settings
from commkit.shell import GoshConfig, GoshExecutor


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Fixture providing a temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir(parents=True)
    return workspace


@pytest.fixture
def run_script(temp_workspace: Path) -> Callable[..., str]:
    """Fixture returning a function that runs a script and returns its stdout.

    The script runs in the temporary workspace unless dir is given.
    """

    def run(script: str, config: GoshConfig | None = None, **kwargs) -> str:
        out = io.StringIO()
        kwargs.setdefault("dir", str(temp_workspace))
        GoshExecutor(config).run(script, stdout=out, **kwargs)
        return out.getvalue()

    return run


@pytest.fixture
def clean_settings() -> Generator[CommkitSettings, None, None]:
    """Fixture providing default settings with COMMKIT_* variables cleared."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("COMMKIT_")}
    with patch.dict(os.environ, env, clear=True):
        yield reload_settings()
    reload_settings()
