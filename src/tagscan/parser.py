"""Tag parser: turns one file's text into annotation records.

Matching is literal substring search, never regex. Path filtering is the
one place patterns are treated as regular expressions.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Sequence

from tagscan.models import LineMatch, ParsedTask, ScanConfig, TagMatcher

log = logging.getLogger(__name__)

CONTEXT_BEFORE = 4
CONTEXT_AFTER = 5
MIN_TEXT_LENGTH = 3

_BLOCK_CLOSER = re.compile(r"\*/\s*$")


def match_line(line: str, tags: Sequence[TagMatcher]) -> LineMatch | None:
    """Return the first tag whose match string occurs in *line*.

    Tags are tried in configuration order, then each tag's match strings in
    declaration order. Empty match strings never match.
    """
    for tag in tags:
        for match_str in tag["match"]:
            if not match_str:
                continue
            idx = line.find(match_str)
            if idx == -1:
                continue
            return {"tag": tag["name"], "match_index": idx, "match_length": len(match_str)}
    return None


def _strip_closer(text: str) -> str:
    return _BLOCK_CLOSER.sub("", text).strip()


def extract_text(line: str, match_index: int, match_length: int) -> str:
    """Text following the match, or the whole line when too little follows."""
    after = _strip_closer(line[match_index + match_length :])
    if len(after) < MIN_TEXT_LENGTH:
        return _strip_closer(line)
    return after


def extract_context(
    lines: Sequence[str],
    line_index: int,
    before: int = CONTEXT_BEFORE,
    after: int = CONTEXT_AFTER,
) -> list[str]:
    """Window of raw lines around *line_index*, shrunk at file boundaries."""
    start = max(0, line_index - before)
    end = min(len(lines), line_index + after + 1)
    return list(lines[start:end])


def parse_file_content(content: str, file_path: str, config: ScanConfig) -> list[ParsedTask]:
    lines = content.split("\n")
    tasks: list[ParsedTask] = []
    for i, line in enumerate(lines):
        match = match_line(line, config["tags"])
        if match is None:
            continue
        tasks.append(
            {
                "id": str(uuid.uuid4()),
                "file": file_path,
                "line": i + 1,
                "tag": match["tag"],
                "text": extract_text(line, match["match_index"], match["match_length"]),
                "context": extract_context(lines, i),
            }
        )
    return tasks


def compile_ignore_patterns(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    """Compile ignore patterns once for a whole scan.

    An invalid pattern is logged once and dropped.
    """
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error:
            log.warning("Invalid ignore pattern %r, skipping", pattern)
    return compiled


def should_ignore_path(path: str, patterns: Sequence[str | re.Pattern[str]]) -> bool:
    """True if any pattern, as a regular expression, matches anywhere in *path*.

    Accepts raw strings or the output of ``compile_ignore_patterns``. An
    invalid raw pattern is logged and never matches.
    """
    for pattern in patterns:
        if isinstance(pattern, re.Pattern):
            if pattern.search(path):
                return True
            continue
        try:
            if re.search(pattern, path):
                return True
        except re.error:
            log.warning("Invalid ignore pattern %r, skipping", pattern)
    return False
