"""
Project Templates

A template is a named bundle of initial files used to seed a new
project. Templates come from a templates directory in one of two forms:

    templates/
    ├── react-min.json     ← {"name", "description", "files": [{"path", "content"}]}
    └── vanilla/           ← every regular file below becomes a template file
        ├── index.html
        └── js/main.js

The name "default", or any name that does not resolve, yields the
built-in default bundle.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .errors import InvalidPath
from .fsutil import atomic_write, normalize_path, walk_files

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_NAME = "default"


@dataclass
class TemplateFile:
    """A file in a template."""

    path: str
    content: str

    def to_dict(self) -> dict:
        return {"path": self.path, "content": self.content}

    @classmethod
    def from_dict(cls, d: dict) -> "TemplateFile":
        return cls(path=d["path"], content=d.get("content", ""))


@dataclass
class ProjectTemplate:
    """A named set of starter files."""

    name: str
    description: str = ""
    files: list = field(default_factory=list)

    def bundle(self) -> dict[str, str]:
        """The template as {path: content}."""
        return {f.path: f.content for f in self.files}

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "files": [f.to_dict() for f in self.files],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ProjectTemplate":
        return cls(
            name=d["name"],
            description=d.get("description", ""),
            files=[TemplateFile.from_dict(f) for f in d.get("files", [])],
        )

    @classmethod
    def from_bundle(cls, name: str, bundle: dict, description: str = "") -> "ProjectTemplate":
        return cls(
            name=name,
            description=description,
            files=[TemplateFile(path=p, content=c) for p, c in bundle.items()],
        )


_EXAMPLE_JS = """\
// example.js
import React, { useState } from 'react';

const MyComponent = () => {
    const [count, setCount] = useState(0);
    const [isVisible, setIsVisible] = useState(true);

    const handleIncrement = () => {
        setCount(prevCount => prevCount + 1);
    };

    const toggleVisibility = () => {
        setIsVisible(prev => !prev);
    };

    return (
        <div className="my-component">
            <h2>My Example Component</h2>

            {isVisible && (
                <div className="counter-section">
                    <p>Count: {count}</p>
                    <button onClick={handleIncrement}>
                        Increment
                    </button>
                </div>
            )}

            <button onClick={toggleVisibility}>
                {isVisible ? 'Hide' : 'Show'} Counter
            </button>
        </div>
    );
};

export default MyComponent;"""

_APP_JS = """\
// App.js
import React from 'react';
import MyComponent from './example';

function App() {
  return (
    <div className="app">
      <h1>My React App</h1>
      <MyComponent />
    </div>
  );
}

export default App;"""

_README_MD = """\
# ReactStream Project

This is a project created with ReactStream.

## Getting Started

Edit the files in the editor and preview the changes in real-time.

## Files

- `example.js` - Main component example
- `App.js` - App component that uses the example
- `README.md` - This file

## Features

- Real-time preview
- Versioned history for every change
- Browser-based editing
"""

DEFAULT_TEMPLATE = ProjectTemplate.from_bundle(
    DEFAULT_TEMPLATE_NAME,
    {"example.js": _EXAMPLE_JS, "App.js": _APP_JS, "README.md": _README_MD},
    description="React starter component",
)


def _validate_name(name: str):
    """Validate a template name contains no path traversal characters."""
    if not name or ".." in name or "/" in name or "\\" in name or "\0" in name:
        raise InvalidPath(f"Invalid template name: {name!r}")


class TemplateManager:
    """Resolves, stores and lists templates in a templates directory."""

    def __init__(self, templates_dir: Path | None = None):
        self.templates_dir = Path(templates_dir) if templates_dir else None

    def _json_path(self, name: str) -> Path | None:
        return self.templates_dir / f"{name}.json" if self.templates_dir else None

    def save(self, template: ProjectTemplate) -> Path:
        """Save a template as JSON."""
        _validate_name(template.name)
        if self.templates_dir is None:
            raise ValueError("No templates directory configured")
        for f in template.files:
            normalize_path(f.path)
        self.templates_dir.mkdir(parents=True, exist_ok=True)
        path = self._json_path(template.name)
        atomic_write(path, json.dumps(template.to_dict(), indent=2))
        return path

    def load(self, name: str) -> ProjectTemplate | None:
        """Load a template by name. Returns None if not found or corrupted."""
        _validate_name(name)
        if self.templates_dir is None:
            return None

        json_path = self._json_path(name)
        if json_path.is_file():
            try:
                return ProjectTemplate.from_dict(json.loads(json_path.read_text()))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning("Corrupted template %s: %s", name, e)
                return None

        dir_path = self.templates_dir / name
        if dir_path.is_dir() and not dir_path.is_symlink():
            files = []
            for entry in walk_files(dir_path, skip=frozenset()):
                try:
                    content = entry.path.read_text(encoding="utf-8")
                except UnicodeDecodeError:
                    logger.warning("Skipping non-text template file %s", entry.path)
                    continue
                files.append(TemplateFile(path=entry.rel_path, content=content))
            return ProjectTemplate(name=name, files=files)
        return None

    def resolve(self, name: str | None) -> ProjectTemplate:
        """The named template, or the built-in default when it doesn't resolve."""
        if not name or name == DEFAULT_TEMPLATE_NAME:
            return DEFAULT_TEMPLATE
        template = self.load(name)
        if template is None:
            logger.info("Template %r not found, using default", name)
            return DEFAULT_TEMPLATE
        return template

    def list(self) -> list[ProjectTemplate]:
        """All templates, the built-in default first."""
        templates = [DEFAULT_TEMPLATE]
        if self.templates_dir is None or not self.templates_dir.exists():
            return templates
        names = set()
        for path in self.templates_dir.iterdir():
            if path.suffix == ".json" and path.is_file():
                names.add(path.stem)
            elif path.is_dir() and not path.is_symlink():
                names.add(path.name)
        for name in sorted(names - {DEFAULT_TEMPLATE_NAME}):
            try:
                template = self.load(name)
            except InvalidPath:
                continue
            if template is not None:
                templates.append(template)
        return templates

    def delete(self, name: str) -> bool:
        """Delete a JSON template by name."""
        _validate_name(name)
        path = self._json_path(name)
        if path is not None and path.exists():
            path.unlink()
            return True
        return False
