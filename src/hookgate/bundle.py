"""Bundle manifest model.

A bundle is a directory holding a ``manifest.json`` plus the files it lists.
The manifest names the driver that executes the files and binds hook names to
pipeline stages:

    {
        "file_list": ["middleware.py"],
        "custom_middleware": {
            "driver": "python",
            "auth_check": {"name": "MyAuthHook"},
            "pre": [{"name": "MyPreHook"}],
            "post": [{"name": "First"}, {"name": "Second"}]
        }
    }

Loading never executes bundle code. Resolving hook names inside the driver is
a separate bind step (see ``Driver.bind``).
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hookgate.exceptions import ManifestError, UnknownDriverError

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


class Stage(str, Enum):
    """Pipeline stage a hook is bound to."""

    PRE = "pre"
    AUTH = "auth"
    POST_KEY_AUTH = "post_key_auth"
    POST = "post"


class HookRef(BaseModel):
    name: str


class CustomMiddleware(BaseModel):
    """The ``custom_middleware`` section of a manifest."""

    model_config = ConfigDict(extra="ignore")

    driver: str = Field(min_length=1)
    auth_check: HookRef | None = None
    pre: list[HookRef] = Field(default_factory=list)
    post: list[HookRef] = Field(default_factory=list)
    post_key_auth: list[HookRef] = Field(default_factory=list)

    @field_validator("auth_check", mode="before")
    @classmethod
    def _single_auth_check(cls, value: Any) -> Any:
        if isinstance(value, list):
            if len(value) > 1:
                raise ValueError("at most one auth_check binding is allowed")
            value = value[0] if value else None
        # An empty name is how exporters write "no auth hook"
        if isinstance(value, dict) and not value.get("name"):
            return None
        return value

    @field_validator("pre", "post", "post_key_auth", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class Manifest(BaseModel):
    """Parsed ``manifest.json``."""

    model_config = ConfigDict(extra="ignore")

    file_list: list[str] = Field(min_length=1)
    custom_middleware: CustomMiddleware
    checksum: str | None = None


@dataclass(frozen=True)
class HookBinding:
    stage: Stage
    name: str
    order: int = 0


@dataclass(frozen=True)
class Bundle:
    """A loaded, validated bundle. Immutable once created."""

    id: str
    base_dir: Path
    file_list: tuple[str, ...]
    driver: str
    hooks: tuple[HookBinding, ...] = ()

    def hooks_for(self, stage: Stage) -> list[HookBinding]:
        """Bindings for a stage in manifest-declared order."""
        return sorted((h for h in self.hooks if h.stage == stage), key=lambda h: h.order)

    @property
    def auth_hook(self) -> HookBinding | None:
        bindings = self.hooks_for(Stage.AUTH)
        return bindings[0] if bindings else None

    @property
    def paths(self) -> list[Path]:
        return [self.base_dir / name for name in self.file_list]

    def to_wire(self) -> dict[str, Any]:
        """Bundle reference sent to runtimes with every call."""
        return {
            "id": self.id,
            "base_dir": str(self.base_dir),
            "file_list": list(self.file_list),
        }


def compute_checksum(base_dir: Path, file_list: Iterable[str]) -> str:
    """MD5 over the listed files' contents, in manifest order."""
    digest = hashlib.md5()  # noqa: S324
    for name in file_list:
        digest.update((base_dir / name).read_bytes())
    return digest.hexdigest()


def _bindings(middleware: CustomMiddleware) -> tuple[HookBinding, ...]:
    bindings: list[HookBinding] = []
    for order, ref in enumerate(middleware.pre):
        bindings.append(HookBinding(Stage.PRE, ref.name, order))
    if middleware.auth_check is not None:
        bindings.append(HookBinding(Stage.AUTH, middleware.auth_check.name, 0))
    for order, ref in enumerate(middleware.post_key_auth):
        bindings.append(HookBinding(Stage.POST_KEY_AUTH, ref.name, order))
    for order, ref in enumerate(middleware.post):
        bindings.append(HookBinding(Stage.POST, ref.name, order))
    return tuple(bindings)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err["loc"]) or "manifest"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


def load_bundle(
    bundle_dir: Path | str,
    bundle_id: str | None = None,
    drivers: Iterable[str] | None = None,
) -> Bundle:
    """Load and validate the bundle stored in ``bundle_dir``.

    Args:
        bundle_dir: Directory containing manifest.json and the bundle files
        bundle_id: Identifier to register the bundle under (defaults to the
            directory name)
        drivers: Accepted driver names (defaults to every registered driver)

    Returns:
        Bundle instance

    Raises:
        ManifestError: If the manifest is missing or malformed, a listed file
            is missing, the driver is unknown, or the checksum does not match
    """
    base_dir = Path(bundle_dir).resolve()
    label = str(bundle_dir)

    manifest_path = base_dir / MANIFEST_FILE
    if not manifest_path.is_file():
        raise ManifestError(label, f"{MANIFEST_FILE} not found")

    try:
        raw = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestError(label, f"unreadable {MANIFEST_FILE}: {e}") from e
    if not isinstance(raw, dict):
        raise ManifestError(label, f"{MANIFEST_FILE} must contain a JSON object")

    try:
        manifest = Manifest.model_validate(raw)
    except ValidationError as e:
        raise ManifestError(label, _format_validation_error(e)) from e

    for name in manifest.file_list:
        path = (base_dir / name).resolve()
        if not path.is_relative_to(base_dir):
            raise ManifestError(label, f"file '{name}' escapes the bundle directory")
        if not path.is_file():
            raise ManifestError(label, f"file '{name}' not found")

    if drivers is None:
        from hookgate.drivers import known_drivers

        drivers = known_drivers()
    driver = manifest.custom_middleware.driver
    if driver not in set(drivers):
        raise UnknownDriverError(label, driver)

    if manifest.checksum:
        actual = compute_checksum(base_dir, manifest.file_list)
        if actual != manifest.checksum.lower():
            raise ManifestError(label, f"checksum mismatch (expected {manifest.checksum}, got {actual})")

    bundle = Bundle(
        id=bundle_id or base_dir.name,
        base_dir=base_dir,
        file_list=tuple(manifest.file_list),
        driver=driver,
        hooks=_bindings(manifest.custom_middleware),
    )
    logger.debug(
        "Loaded bundle '%s' (driver=%s, hooks=%s)",
        bundle.id,
        bundle.driver,
        [f"{h.stage.value}:{h.name}" for h in bundle.hooks],
    )
    return bundle
