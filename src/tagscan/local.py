"""Scan a local checkout with the same filter and parser as a remote scan."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from tagscan.models import ParsedTask, ScanConfig
from tagscan.parser import compile_ignore_patterns, parse_file_content, should_ignore_path

log = logging.getLogger(__name__)

SKIP_DIRS = {".git"}
# Bytes sniffed for NUL to tell binary files apart.
BINARY_SNIFF_BYTES = 8000


def _read_text(path: Path) -> str | None:
    try:
        raw = path.read_bytes()
    except OSError as exc:
        log.debug("Skipping %s: %s", path, exc)
        return None
    if b"\x00" in raw[:BINARY_SNIFF_BYTES]:
        return None
    return raw.decode("utf-8", errors="replace")


def scan_local_tree(root: Path, config: ScanConfig) -> list[ParsedTask]:
    """Parse every non-ignored text file under *root*.

    Paths in the result are relative to *root* with ``/`` separators, so
    ignore patterns behave as they do against a repository tree.
    """
    root = root.resolve()
    tasks: list[ParsedTask] = []
    scanned = 0
    ignore = compile_ignore_patterns(config["ignore"])
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            rel = path.relative_to(root).as_posix()
            if should_ignore_path(rel, ignore):
                continue
            content = _read_text(path)
            if content is None:
                continue
            scanned += 1
            tasks.extend(parse_file_content(content, rel, config))
    log.info("Scanned %d files under %s, found %d annotations", scanned, root, len(tasks))
    return tasks
