"""Tests for the template parser and delimiter patterns."""

import pytest

from mustache import (
    DEFAULT_DELIMITERS,
    InvalidDelimiterError,
    MismatchedCloseSectionError,
    ParseError,
    PartialNode,
    RawSection,
    SectionNode,
    TextNode,
    UnclosedSectionError,
    UnknownTagTypeError,
    UnmatchedCloseSectionError,
    VarNode,
    build_pattern,
    parse,
)


def test_pattern_splits_tag():
    m = build_pattern("{{", "}}").match("Hi  {{# items }}")
    assert m.group(1) == "Hi"
    assert m.group(2) == "  "
    assert m.group(7) == "#"
    assert m.group(8) == "items"


def test_pattern_treats_delimiters_literally():
    pattern = build_pattern("[*", "*]")
    m = pattern.match("a[* name *]")
    assert m.group(8) == "name"
    assert pattern.match("a{{name}}") is None


def test_pattern_stops_at_first_closing_delimiter():
    m = build_pattern().match("{{.}}{{/a}}")
    assert m.group(7) == ""
    assert m.group(8) == "."
    assert m.end() == len("{{.}}")


def test_dot_tag_inside_section(cache):
    (section,) = parse("{{#a}}{{.}}{{/a}}", cache=cache)
    assert section.name == "a"
    assert section.body.text == "{{.}}"
    assert section.body.nodes == (VarNode("."),)


def test_pattern_matches_across_lines():
    m = build_pattern().match("{{!a\nmultiline\ncomment}}")
    assert m.group(7) == "!"
    assert m.group(8) == "a\nmultiline\ncomment"


def test_plain_text(cache):
    assert parse("Hello", cache=cache) == (TextNode("Hello"),)


def test_variable_kinds(cache):
    nodes = parse("{{a}}{{{b}}}{{&c}}{{ d }}", cache=cache)
    assert nodes == (
        VarNode("a", escaped=True),
        VarNode("b", escaped=False),
        VarNode("c", escaped=False),
        VarNode("d", escaped=True),
    )


def test_comment_emits_nothing(cache):
    assert parse("a{{! ignore me }}b", cache=cache) == (TextNode("a"), TextNode("b"))


def test_section_body_kept_raw(cache):
    nodes = parse("{{#a}}x{{b}}{{/a}}!", cache=cache)
    assert nodes == (
        SectionNode("a", False, RawSection("x{{b}}", DEFAULT_DELIMITERS)),
        TextNode("!"),
    )


def test_inverted_section(cache):
    nodes = parse("{{^a}}none{{/a}}", cache=cache)
    assert nodes == (SectionNode("a", True, RawSection("none")),)


def test_nested_sections_stay_in_body(cache):
    nodes = parse("{{#a}}{{#b}}x{{/b}}{{/a}}", cache=cache)
    assert nodes == (SectionNode("a", False, RawSection("{{#b}}x{{/b}}")),)


def test_standalone_section_lines_removed(cache):
    nodes = parse("A\n{{#a}}\nB\n{{/a}}\nC", cache=cache)
    assert nodes == (
        TextNode("A\n"),
        SectionNode("a", False, RawSection("B\n")),
        TextNode("C"),
    )


def test_standalone_with_crlf(cache):
    nodes = parse("A\r\n{{! note }}\r\nB", cache=cache)
    assert nodes == (TextNode("A\r\n"), TextNode("B"))


def test_standalone_comment_with_indentation(cache):
    nodes = parse("A\n   {{! note }}\nB", cache=cache)
    assert nodes == (TextNode("A\n"), TextNode("B"))


def test_interpolation_never_standalone(cache):
    assert parse("  {{a}}\n", cache=cache) == (
        TextNode("  "),
        VarNode("a"),
        TextNode("\n"),
    )


def test_inline_tag_keeps_whitespace(cache):
    nodes = parse("x {{#a}}y{{/a}}", cache=cache)
    assert nodes == (
        TextNode("x"),
        TextNode(" "),
        SectionNode("a", False, RawSection("y")),
    )


def test_standalone_partial_captures_indentation(cache):
    assert parse("  {{>p}}\n", cache=cache) == (PartialNode("p", "  "),)


def test_inline_partial_has_no_indentation(cache):
    assert parse("x {{>p}}", cache=cache) == (
        TextNode("x"),
        TextNode(" "),
        PartialNode("p", ""),
    )


def test_set_delimiters(cache):
    nodes = parse("{{=<% %>=}}<%a%>{{b}}", cache=cache)
    assert nodes == (VarNode("a"), TextNode("{{b}}"))


def test_delimiters_scoped_to_section(cache):
    nodes = parse("{{#s}}{{=<% %>=}}<%a%><%/s%>{{b}}", cache=cache)
    assert nodes == (
        SectionNode("s", False, RawSection("{{=<% %>=}}<%a%>", DEFAULT_DELIMITERS)),
        VarNode("b"),
    )


def test_section_remembers_active_delimiters(cache):
    nodes = parse("{{=| |=}}|#a|x|/a|", cache=cache)
    assert nodes == (SectionNode("a", False, RawSection("x", ("|", "|"))),)


def test_parse_is_cached(cache):
    first = parse("Hi {{name}}", cache=cache)
    second = parse("Hi {{name}}", cache=cache)
    assert first is second
    assert cache.hits == 1


def test_delimiters_are_part_of_cache_key(cache):
    default = parse("<%a%>", cache=cache)
    custom = parse("<%a%>", ("<%", "%>"), cache=cache)
    assert default == (TextNode("<%a%>"),)
    assert custom == (VarNode("a"),)


def test_section_body_cached_under_opening_delimiters(cache):
    parse("{{#a}}x{{b}}{{/a}}", cache=cache)
    assert (DEFAULT_DELIMITERS, "x{{b}}") in cache
    assert cache.get(DEFAULT_DELIMITERS, "x{{b}}") == (TextNode("x"), VarNode("b"))


def test_unmatched_close_section(cache):
    with pytest.raises(UnmatchedCloseSectionError) as exc:
        parse("a\n{{/a}}", cache=cache)
    assert "'a' found, but not in a section" in str(exc.value)
    assert exc.value.line == 2


def test_mismatched_close_section(cache):
    with pytest.raises(MismatchedCloseSectionError) as exc:
        parse("a\n{{#a}}\n{{/b}}\n", cache=cache)
    assert "closes 'b'; expected 'a'" in str(exc.value)
    assert exc.value.line == 3
    assert not isinstance(exc.value, UnmatchedCloseSectionError)


def test_unclosed_section(cache):
    with pytest.raises(UnclosedSectionError):
        parse("{{#a}}forever", cache=cache)


@pytest.mark.parametrize("tmpl", ["{{=a=}}", "{{=<% %> x=}}"])
def test_invalid_delimiters(cache, tmpl):
    with pytest.raises(InvalidDelimiterError, match="exactly two values"):
        parse(tmpl, cache=cache)


def test_unknown_tag_type(cache):
    with pytest.raises(UnknownTagTypeError, match="Unknown tag type -- %"):
        parse("ok\n{{%a}}", cache=cache)


def test_parse_error_message_has_line(cache):
    with pytest.raises(ParseError, match=r"\(line 1\)$"):
        parse("{{/x}}", cache=cache)


def test_failed_parse_not_cached(cache):
    with pytest.raises(ParseError):
        parse("{{/x}}", cache=cache)
    assert len(cache) == 0
