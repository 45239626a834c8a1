"""Tests for the tag parser and path filter."""

import logging

from tagscan.config import DEFAULT_CONFIG
from tagscan.parser import (
    compile_ignore_patterns,
    extract_context,
    extract_text,
    match_line,
    parse_file_content,
    should_ignore_path,
)

TAGS = [
    {"name": "bug", "match": ["FIXME:", "BUG:"]},
    {"name": "todo", "match": ["", "TODO:", "@todo"]},
]


class TestMatchLine:
    def test_no_match(self) -> None:
        assert match_line("plain code", TAGS) is None

    def test_first_tag_in_config_order_wins(self) -> None:
        line = "// TODO: FIXME: both"
        result = match_line(line, TAGS)
        assert result == {"tag": "bug", "match_index": line.find("FIXME:"), "match_length": 6}

    def test_match_strings_tried_in_declaration_order(self) -> None:
        result = match_line("x BUG: y FIXME: z", TAGS)
        assert result is not None
        assert result["match_index"] == 9
        assert result["match_length"] == len("FIXME:")

    def test_empty_match_string_never_matches(self) -> None:
        assert match_line("anything", [{"name": "x", "match": [""]}]) is None

    def test_match_is_literal_not_regex(self) -> None:
        tags = [{"name": "q", "match": ["a.b"]}]
        assert match_line("axb", tags) is None
        assert match_line("a.b", tags) is not None

    def test_result_points_at_a_winning_match_string(self) -> None:
        lines = [
            "// TODO: one",
            "# @todo two",
            "/* BUG: three */",
            "FIXME: four TODO: five",
            "nothing here",
        ]
        for line in lines:
            result = match_line(line, TAGS)
            if result is None:
                continue
            tag = next(t for t in TAGS if t["name"] == result["tag"])
            start = result["match_index"]
            found = line[start : start + result["match_length"]]
            assert found in [m for m in tag["match"] if m]


class TestExtractText:
    def test_text_after_match(self) -> None:
        line = "// TODO: fix the thing"
        assert extract_text(line, line.find("TODO:"), 5) == "fix the thing"

    def test_block_closer_removed(self) -> None:
        line = "/* TODO: refactor this */  "
        assert extract_text(line, line.find("TODO:"), 5) == "refactor this"

    def test_short_remainder_falls_back_to_whole_line(self) -> None:
        line = "/* TODO: */"
        assert extract_text(line, line.find("TODO:"), 5) == "/* TODO:"

    def test_two_char_remainder_falls_back(self) -> None:
        line = "// TODO: ab"
        assert extract_text(line, line.find("TODO:"), 5) == "// TODO: ab"

    def test_three_char_remainder_kept(self) -> None:
        line = "// TODO: abc"
        assert extract_text(line, line.find("TODO:"), 5) == "abc"


class TestExtractContext:
    LINES = [f"line {i}" for i in range(20)]

    def test_window_in_middle(self) -> None:
        assert extract_context(self.LINES, 10) == self.LINES[6:16]

    def test_clamped_at_start(self) -> None:
        assert extract_context(self.LINES, 0) == self.LINES[0:6]

    def test_clamped_at_end(self) -> None:
        assert extract_context(self.LINES, 19) == self.LINES[15:20]

    def test_never_exceeds_window(self) -> None:
        for i in range(len(self.LINES)):
            context = extract_context(self.LINES, i)
            assert 1 <= len(context) <= 4 + 5 + 1
            assert self.LINES[i] in context

    def test_short_file(self) -> None:
        assert extract_context(["only"], 0) == ["only"]


class TestParseFileContent:
    def test_records_in_line_order(self) -> None:
        content = "import os\n// TODO: first thing\nx = 1\n# @idea second thing\n"
        tasks = parse_file_content(content, "src/app.py", DEFAULT_CONFIG)
        assert [(t["line"], t["tag"], t["text"]) for t in tasks] == [
            (2, "todo", "first thing"),
            (4, "idea", "second thing"),
        ]
        assert all(t["file"] == "src/app.py" for t in tasks)
        assert tasks[0]["context"] == content.split("\n")[0:7]

    def test_ids_are_unique(self) -> None:
        content = "\n".join("// TODO: same" for _ in range(5))
        ids = [t["id"] for t in parse_file_content(content, "a.py", DEFAULT_CONFIG)]
        assert len(set(ids)) == 5

    def test_no_tags_configured(self) -> None:
        assert parse_file_content("// TODO: x", "a.py", {"tags": [], "ignore": []}) == []

    def test_empty_content(self) -> None:
        assert parse_file_content("", "a.py", DEFAULT_CONFIG) == []


class TestShouldIgnorePath:
    def test_matching_pattern(self) -> None:
        assert should_ignore_path("node_modules/lodash/index.js", ["node_modules"]) is True

    def test_non_matching_pattern(self) -> None:
        assert should_ignore_path("src/app.ts", ["node_modules"]) is False

    def test_empty_patterns(self) -> None:
        assert should_ignore_path("anything", []) is False

    def test_patterns_are_regex(self) -> None:
        assert should_ignore_path("dist/bundle.js", ["^dist/"]) is True
        assert should_ignore_path("src/dist/x.js", ["^dist/"]) is False

    def test_invalid_pattern_is_skipped(self, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="tagscan.parser"):
            assert should_ignore_path("src/a.py", ["[unclosed"]) is False
            assert should_ignore_path("build/a.py", ["[unclosed", "^build/"]) is True
        assert "Invalid ignore pattern" in caplog.text

    def test_compiled_patterns(self, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="tagscan.parser"):
            compiled = compile_ignore_patterns(["(unclosed", "^build/"])
        assert [p.pattern for p in compiled] == ["^build/"]
        assert caplog.text.count("Invalid ignore pattern") == 1
        assert should_ignore_path("build/a.py", compiled) is True
        assert should_ignore_path("src/build/a.py", compiled) is False
