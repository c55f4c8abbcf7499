"""
Tests for the tolerant tool-argument parser.
"""
from canvas_agent import json_repair


def test_valid_json_parses_directly():
    """Test: Well-formed arguments come back unchanged."""
    assert json_repair.parse('{"query": "cats", "max_results": 3}') == {"query": "cats", "max_results": 3}
    assert json_repair.parse("[1, 2, 3]") == [1, 2, 3]


def test_empty_and_garbage_return_none():
    assert json_repair.parse("") is None
    assert json_repair.parse("   ") is None
    assert json_repair.parse(None) is None
    assert json_repair.parse("not json at all") is None
    # a bare scalar is not an argument object
    assert json_repair.parse("42") is None


def test_raw_newline_inside_string():
    """Test: A literal newline inside a string value is escaped, not fatal."""
    raw = '{"prompt": "line one\nline two", "n": 1}'
    assert json_repair.parse(raw) == {"prompt": "line one\nline two", "n": 1}


def test_raw_tab_and_control_chars():
    raw = '{"a": "x\ty", "b": "bell\x07"}'
    assert json_repair.parse(raw) == {"a": "x\ty", "b": "bell\x07"}


def test_unescaped_inner_quotes():
    """Test: Quotes around a Chinese title inside a prompt survive."""
    raw = '{"prompt": "a poster with title "春节快乐" in red", "style": "photo"}'
    result = json_repair.parse(raw)
    assert result == {"prompt": 'a poster with title "春节快乐" in red', "style": "photo"}


def test_surrounding_prose_is_ignored():
    raw = 'Here are the arguments: {"query": "weather"} hope that helps'
    assert json_repair.parse(raw) == {"query": "weather"}


def test_single_quotes_and_trailing_commas():
    assert json_repair.parse("{'query': 'cats', 'tags': ['a', 'b',],}") == {"query": "cats", "tags": ["a", "b"]}


def test_truncated_object_is_closed():
    """Test: Arguments cut off by max_tokens keep every complete member."""
    raw = '{"query": "cats", "max_results": 5, "note": "this was cut of'
    assert json_repair.parse(raw) == {"query": "cats", "max_results": 5}


def test_truncated_before_closing_brace():
    """Test: A cut right after the last complete member keeps that member."""
    assert json_repair.parse('{"query": "cats"') == {"query": "cats"}
    assert json_repair.parse('{"query": "cats", "max_results": 5') == {"query": "cats", "max_results": 5}
    assert json_repair.parse('{"query": "a\nb"') == {"query": "a\nb"}
    assert json_repair.parse('{"prompts": ["one", "two"') == {"prompts": ["one", "two"]}


def test_truncated_after_dangling_key_falls_back():
    assert json_repair.parse('{"query": "cats", "max_results"') == {"query": "cats"}
    assert json_repair.parse('{"query": "cats", "max_results":') == {"query": "cats"}


def test_truncated_nested_structure():
    raw = '{"prompts": [{"scene": "one", "prompt": "first"}, {"scene": "two", "prom'
    assert json_repair.parse(raw) == {"prompts": [{"scene": "one", "prompt": "first"}, {"scene": "two"}]}


def test_truncated_with_raw_newline():
    raw = '{"prompt": "multi\nline", "chinese_texts": ["你好", "世'
    assert json_repair.parse(raw) == {"prompt": "multi\nline", "chinese_texts": ["你好"]}


def test_escape_control_chars_keeps_valid_escapes():
    text = '{"a": "already\\nescaped \\"quoted\\""}'
    assert json_repair.escape_control_chars(text) == text


def test_normalize_quotes_escapes_inner_double_quotes():
    assert json_repair.normalize_quotes("{'say': 'he said \"hi\"'}") == '{"say": "he said \\"hi\\""}'
