"""Tests for shipwright_kit.response_parser -- generation replies to file changes."""

import json

import pytest

from shipwright_kit.errors import ParseError
from shipwright_kit.response_parser import (
    changes_to_diffs,
    ensure_trailing_newline,
    parse_file_changes,
    strip_fences,
)


def test_strip_fences_removes_outer_fence():
    assert strip_fences("```json\n[1]\n```") == "[1]"


def test_strip_fences_leaves_plain_text():
    assert strip_fences("no fences here") == "no fences here"


def test_strip_fences_without_closing_fence_is_unchanged():
    text = "```ts\nconst a = 1;"
    assert strip_fences(text) == text


def test_ensure_trailing_newline():
    assert ensure_trailing_newline("a") == "a\n"
    assert ensure_trailing_newline("a\n") == "a\n"
    assert ensure_trailing_newline("") == ""


# ---------------------------------------------------------------------------
# JSON replies
# ---------------------------------------------------------------------------


def test_parse_json_array_of_content_and_diffs():
    raw = json.dumps([
        {"filename": "./src/app/page.tsx", "content": "export default 1;\n"},
        {"filename": "src/lib/util.ts", "unifiedDiff": "@@ -1,1 +1,1 @@\n-a\n+b\n"},
    ])
    changes = parse_file_changes(raw)
    assert [c.filename for c in changes] == ["src/app/page.tsx", "src/lib/util.ts"]
    assert changes[0].content == "export default 1;\n"
    assert not changes[0].is_diff
    assert changes[1].is_diff


def test_parse_fenced_json_with_files_wrapper():
    raw = "```json\n" + json.dumps({"files": [{"path": "a.ts", "content": "x"}]}) + "\n```"
    changes = parse_file_changes(raw)
    assert changes[0].filename == "a.ts"


def test_parse_json_surrounded_by_prose():
    raw = 'Here you go:\n[{"filename": "a.ts", "content": "x"}]\nGood luck!'
    assert parse_file_changes(raw)[0].content == "x"


def test_parse_structured_hunks():
    raw = json.dumps([{
        "filename": "a.ts",
        "diffHunks": [{"startLine": 2, "oldLines": ["b"], "newLines": ["B", "C"]}],
    }])
    hunk = parse_file_changes(raw)[0].hunks[0]
    assert hunk.start_line == 2
    assert hunk.remove_count == 1
    assert hunk.new_lines == ["B", "C"]


def test_entries_without_payload_are_ignored():
    raw = json.dumps([{"filename": "a.ts"}, {"filename": "b.ts", "content": "b"}, "junk"])
    assert [c.filename for c in parse_file_changes(raw)] == ["b.ts"]


# ---------------------------------------------------------------------------
# Plain-text file blocks
# ---------------------------------------------------------------------------


def test_parse_file_blocks():
    raw = (
        "=== FILE: src/a.ts ===\n"
        "```ts\nexport const a = 1;\n```\n"
        "=== FILE: src/b.ts ===\n"
        "export const b = 2;\n"
    )
    changes = parse_file_changes(raw)
    assert [c.filename for c in changes] == ["src/a.ts", "src/b.ts"]
    assert changes[0].content == "export const a = 1;\n"
    assert changes[1].content == "export const b = 2;\n"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("raw", ["", "   ", "I could not fix this, sorry."])
def test_unusable_reply_raises_parse_error(raw):
    with pytest.raises(ParseError) as exc_info:
        parse_file_changes(raw)
    assert exc_info.value.parser_name == "file_changes"


def test_changes_to_diffs_carries_full_content():
    changes = parse_file_changes(json.dumps([{"filename": "a.ts", "content": "x"}]))
    diff = changes_to_diffs(changes)[0]
    assert diff.filename == "a.ts"
    assert diff.full_content == "x"
    assert diff.hunks == []
