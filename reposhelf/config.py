"""
Store configuration.

Settings live in ``<root>/config.json`` next to the project trees.
A handful of environment variables override the file so the CLI and
tests can redirect a store without editing it:

    REPOSHELF_ROOT        store root (used when no root is passed)
    REPOSHELF_TEMPLATES   directory holding template bundles
    REPOSHELF_AUTHOR      author recorded on commits

Limits follow the content store convention: 0 (or missing) means
"use the default", negative values are rejected.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"
DEFAULT_AUTHOR = "reposhelf"
# Share tokens expire after 7 days
DEFAULT_SHARE_TOKEN_TTL = 7 * 24 * 60 * 60

_KNOWN_KEYS = frozenset({
    "templates_dir",
    "default_author",
    "max_blob_size",
    "max_tree_depth",
    "share_token_ttl",
})


@dataclass
class StoreConfig:
    root: Path
    templates_dir: Path | None = None
    default_author: str = DEFAULT_AUTHOR
    max_blob_size: int = 0
    max_tree_depth: int = 0
    share_token_ttl: int = DEFAULT_SHARE_TOKEN_TTL
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        self.root = Path(self.root)
        if self.templates_dir is not None:
            self.templates_dir = Path(self.templates_dir)
        self.validate()

    def validate(self):
        """Reject negative limits, naming the offending key."""
        if self.max_blob_size < 0:
            raise ValueError(
                f"Invalid config: max_blob_size must be >= 0, got {self.max_blob_size}\n"
                f"  Use 0 for the default limit"
            )
        if self.max_tree_depth < 0:
            raise ValueError(
                f"Invalid config: max_tree_depth must be >= 0, got {self.max_tree_depth}\n"
                f"  Use 0 for the default limit"
            )
        if self.share_token_ttl <= 0:
            raise ValueError(
                f"Invalid config: share_token_ttl must be > 0, got {self.share_token_ttl}"
            )

    @classmethod
    def load(cls, root: Path | str | None = None) -> "StoreConfig":
        """Build a config from ``<root>/config.json`` plus env overrides."""
        if root is None:
            root = os.environ.get("REPOSHELF_ROOT")
        if not root:
            raise ValueError(
                "No store root given.\n"
                "  Pass --root DIR or set REPOSHELF_ROOT."
            )
        root = Path(root)
        data = read_config_file(root)

        templates_dir = os.environ.get("REPOSHELF_TEMPLATES") or data.get("templates_dir")
        if templates_dir is not None:
            templates_dir = Path(templates_dir)
            if not templates_dir.is_absolute():
                templates_dir = root / templates_dir

        return cls(
            root=root,
            templates_dir=templates_dir,
            default_author=os.environ.get("REPOSHELF_AUTHOR")
            or data.get("default_author", DEFAULT_AUTHOR),
            max_blob_size=data.get("max_blob_size", 0),
            max_tree_depth=data.get("max_tree_depth", 0),
            share_token_ttl=data.get("share_token_ttl", DEFAULT_SHARE_TOKEN_TTL),
            extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict:
        return {
            "root": str(self.root),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "default_author": self.default_author,
            "max_blob_size": self.max_blob_size,
            "max_tree_depth": self.max_tree_depth,
            "share_token_ttl": self.share_token_ttl,
        }


def read_config_file(root: Path) -> dict:
    """Read ``config.json`` under root; a missing file is an empty config."""
    config_path = Path(root) / CONFIG_FILE_NAME
    if not config_path.exists():
        return {}
    try:
        data = json.loads(config_path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid config file {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config file {config_path}: expected a JSON object")
    for key in sorted(set(data) - _KNOWN_KEYS):
        logger.warning("Unknown config key %r in %s (ignored)", key, config_path)
    return data
