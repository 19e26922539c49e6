"""Shared fixtures for hookgate tests."""

import json
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from hookgate.config import CoProcessConfig, clear_config_instance

BundleWriter = Callable[..., Path]


@pytest.fixture(autouse=True)
def cleanup():
    """Clean up the global config between tests."""
    yield
    clear_config_instance()


@pytest.fixture
def write_bundle(tmp_path: Path) -> BundleWriter:
    """Write a bundle directory and return its path.

    ``files`` maps file names to source text (dedented); ``manifest`` is
    written as manifest.json unless it is a string, which is written verbatim.
    """

    def _write(name: str, manifest: dict[str, Any] | str, files: dict[str, str] | None = None) -> Path:
        bundle_dir = tmp_path / "bundles" / name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        for file_name, source in (files or {}).items():
            (bundle_dir / file_name).write_text(textwrap.dedent(source))
        text = manifest if isinstance(manifest, str) else json.dumps(manifest)
        (bundle_dir / "manifest.json").write_text(text)
        return bundle_dir

    return _write


@pytest.fixture
def coprocess_config(tmp_path: Path) -> CoProcessConfig:
    """Small, fast coprocess settings rooted in tmp_path."""
    return CoProcessConfig(
        bundle_path=tmp_path / "bundles",
        hook_timeout=10.0,
        pool_size=2,
        acquire_timeout=10.0,
    )
