"""JSON files written atomically."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def write_json(path: Path, obj: Any) -> None:
    """
    Write *obj* as JSON to *path* via a temporary file and ``os.replace``.

    Readers see either the previous file or the complete new one, never a
    partial write.

    Raises:
        OSError: If the directory cannot be created or the file written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", delete=False, dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    ) as fh:
        fh.write(json.dumps(obj, indent=2))
    try:
        os.replace(fh.name, path)
    except OSError:
        os.unlink(fh.name)
        raise
