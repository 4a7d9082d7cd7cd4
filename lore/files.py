"""
Filesystem helpers shared by the stores.
"""

import json
import os
import tempfile
from pathlib import Path

PERMANENT_DIR = "permanent"
TEMPORARY_DIR = "temporary"
INDEX_FILE = "index.json"
GRAPH_FILE = "graph.json"


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to a sibling temp file, then rename it over ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, data) -> None:
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def iter_memory_files(root: Path):
    """Yield every .md file under permanent/ and temporary/, sorted."""
    root = Path(root)
    for sub in (PERMANENT_DIR, TEMPORARY_DIR):
        directory = root / sub
        if directory.is_dir():
            yield from sorted(directory.glob("*.md"))
