"""
Mustache template engine.

Supported:
- Variables: {{name}} (HTML-escaped), {{{name}}} and {{&name}} (unescaped)
- Sections: {{#items}} ... {{/items}} (lists/mappings/lambdas/truthy)
- Inverted sections: {{^items}} ... {{/items}}
- Comments: {{! comment }}
- Partials: {{> partial}} (re-indented when standalone)
- Set delimiters: {{=<% %>=}}

Names are single, undotted fields: {{person.name}} and {{.}} are not
resolved. Parsed templates are cached per delimiter pair; see TemplateCache.
"""
from __future__ import annotations

import enum
import html
import inspect
import logging
import os
import re
import threading
from collections import OrderedDict
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, List, NoReturn, Optional, Tuple, Union

log = logging.getLogger(__name__)

Delimiters = Tuple[str, str]

DEFAULT_DELIMITERS: Delimiters = ("{{", "}}")

# Tag types that never take part in standalone-line handling.
_INTERPOLATION_TYPES = frozenset(("{", "&", ""))

# -----------------------------
# Errors
# -----------------------------
class MustacheError(Exception):
    """Base exception for all template errors."""


class ParseError(MustacheError):
    """A template could not be parsed.

    ``line`` is the 1-based line on which the offending tag starts.
    """

    def __init__(self, message: str, line: int):
        self.message = message
        self.line = line
        super().__init__(f"{message} (line {line})")


class UnmatchedCloseSectionError(ParseError):
    """Raised for a close-section tag with no open section."""


class MismatchedCloseSectionError(ParseError):
    """Raised when a close-section tag names a section other than the innermost open one."""


class UnclosedSectionError(ParseError):
    """Raised when the template ends inside a section."""


class InvalidDelimiterError(ParseError):
    """Raised when a Set Delimiters tag does not hold exactly two delimiters."""


class UnknownTagTypeError(ParseError):
    """Raised for a tag whose type marker is not recognized."""


# -----------------------------
# Escaping
# -----------------------------
def html_escape(s: str) -> str:
    return html.escape(s, quote=True)

# -----------------------------
# AST nodes
# -----------------------------
@dataclass(frozen=True)
class TextNode:
    text: str

@dataclass(frozen=True)
class VarNode:
    name: str
    escaped: bool = True

@dataclass(frozen=True)
class RawSection:
    """Section body text plus the delimiters active where it opened.

    ``nodes`` holds the body as parsed in place inside its template, so
    standalone lines at its edges render the same whether or not the cache
    still has the body.
    """
    text: str
    delimiters: Delimiters = DEFAULT_DELIMITERS
    nodes: Optional[Tuple[Any, ...]] = field(default=None, compare=False, repr=False)

@dataclass(frozen=True)
class SectionNode:
    name: str
    inverted: bool
    body: RawSection

@dataclass(frozen=True)
class PartialNode:
    name: str
    indent: str = ""


Node = Union[TextNode, VarNode, SectionNode, PartialNode]
Template = Tuple[Node, ...]

# -----------------------------
# Template cache
# -----------------------------
class TemplateCache:
    """Parsed templates keyed by (delimiters, source text).

    Unbounded by default: entries live as long as the cache does. Pass
    ``max_size`` to evict the least recently used entries instead. All
    access goes through one lock so a cache can be shared between threads.
    """

    def __init__(self, max_size: Optional[int] = None):
        if max_size is not None and max_size < 1:
            raise ValueError(f"max_size must be a positive integer, got {max_size!r}")
        self.max_size = max_size
        self.hits = 0
        self.misses = 0
        self._entries: "OrderedDict[Tuple[Delimiters, str], Template]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, delimiters: Delimiters, text: str) -> Optional[Template]:
        key = (tuple(delimiters), text)
        with self._lock:
            nodes = self._entries.get(key)
            if nodes is None:
                self.misses += 1
                return None
            self.hits += 1
            if self.max_size is not None:
                self._entries.move_to_end(key)
            return nodes

    def put(self, delimiters: Delimiters, text: str, nodes: Template) -> Template:
        key = (tuple(delimiters), text)
        with self._lock:
            self._entries[key] = nodes
            self._evict()
        return nodes

    def setdefault(self, delimiters: Delimiters, text: str, nodes: Template) -> Template:
        """Store ``nodes`` unless another parse got there first; return the stored value."""
        key = (tuple(delimiters), text)
        with self._lock:
            stored = self._entries.setdefault(key, nodes)
            self._evict()
            return stored

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = self.misses = 0

    def _evict(self) -> None:
        if self.max_size is None:
            return
        while len(self._entries) > self.max_size:
            (delimiters, _), _ = self._entries.popitem(last=False)
            log.debug("Evicted cached template for delimiters %r", delimiters)

    def __contains__(self, key: Tuple[Delimiters, str]) -> bool:
        delimiters, text = key
        with self._lock:
            return (tuple(delimiters), text) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


default_cache = TemplateCache()

# -----------------------------
# Parsing
# -----------------------------
@lru_cache(maxsize=64)
def build_pattern(otag: str = "{{", ctag: str = "}}") -> "re.Pattern[str]":
    """Build the regex that finds the next tag for a delimiter pair.

    Groups: 1 pre-tag content, 2 pre-tag inline whitespace, then one of
    3/4 (set delimiters), 5/6 (triple mustache) or 7/8 (everything else)
    as type marker / tag body.
    """
    otag, ctag = re.escape(otag), re.escape(ctag)
    # a tag body never runs past the closing delimiter
    body = r"((?:(?!" + ctag + r").)+?)"
    return re.compile(
        r"(.*?)"                      # pre-tag content
        r"([ \t]*)"                   # pre-tag whitespace
        + otag + r"\s*"
        r"(?:"
        r"(=)\s*" + body + r"\s*=|"   # set delimiters
        r"(\{)\s*" + body + r"\s*\}|" # triple mustache
        r"(\W?)\s*" + body +          # everything else
        r")"
        r"\s*" + ctag,
        re.DOTALL,
    )

def _line_break(tmpl: str, pos: int) -> int:
    """Length of the line break at ``pos`` (end of template counts as one of length 0)."""
    if tmpl.startswith("\r\n", pos):
        return 2
    if tmpl.startswith("\n", pos):
        return 1
    return 0 if pos >= len(tmpl) else -1


class _Parser:
    def __init__(self, tmpl: str, cache: TemplateCache):
        self.tmpl = tmpl
        self.cache = cache

    def fail(self, error_cls, message: str, pos: int) -> NoReturn:
        raise error_cls(message, self.tmpl.count("\n", 0, pos) + 1)

    def scan(self, delimiters: Delimiters, section: Optional[str] = None,
             start: int = 0) -> Tuple[List[Node], str, int]:
        """Parse from ``start``; returns ``(nodes, raw text, end offset)``.

        Inside a section (``section`` set) parsing stops at the matching
        close tag: the raw text is the section body, its nodes are cached
        under the delimiters the section opened with, and the end offset is
        just past the close tag.
        """
        tmpl = self.tmpl
        opening = delimiters
        pattern = build_pattern(*delimiters)
        nodes: List[Node] = []
        pos = start

        while True:
            m = pattern.match(tmpl, pos)
            if not m:
                break
            content, whitespace = m.group(1), m.group(2)
            tag_type = m.group(3) or m.group(5) or m.group(7) or ""
            name = m.group(4) or m.group(6) or m.group(8)
            tag_start = m.end(2)

            if content:
                nodes.append(TextNode(content))

            # eoc: index of the last character before the tag (and its whitespace)
            eoc = pos + len(content) - 1
            pos = m.end()

            # Standalone: the tag is the only non-whitespace content on its line.
            newline = _line_break(tmpl, pos)
            standalone = (eoc < 0 or tmpl[eoc] == "\n") and newline >= 0

            if standalone and tag_type not in _INTERPOLATION_TYPES:
                pos += newline
            elif whitespace:
                eoc += len(whitespace)
                nodes.append(TextNode(whitespace))
                whitespace = ""

            if tag_type == "!":
                pass
            elif tag_type in _INTERPOLATION_TYPES:
                nodes.append(VarNode(name, escaped=not tag_type))
            elif tag_type == ">":
                nodes.append(PartialNode(name, whitespace))
            elif tag_type == "=":
                parts = name.split()
                if len(parts) != 2:
                    self.fail(InvalidDelimiterError,
                              "Set Delimiters tags must have exactly two values", tag_start)
                delimiters = (parts[0], parts[1])
                pattern = build_pattern(*delimiters)
                log.debug("Delimiters changed to %r", delimiters)
            elif tag_type in ("#", "^"):
                body, raw, pos = self.scan(delimiters, name, pos)
                nodes.append(SectionNode(name, tag_type == "^",
                                         RawSection(raw, delimiters, tuple(body))))
            elif tag_type == "/":
                if section is None:
                    self.fail(UnmatchedCloseSectionError,
                              f"End Section tag '{name}' found, but not in a section", tag_start)
                if name != section:
                    self.fail(MismatchedCloseSectionError,
                              f"End Section tag closes '{name}'; expected '{section}'", tag_start)
                raw = tmpl[start:eoc + 1]
                self.cache.put(opening, raw, tuple(nodes))
                return nodes, raw, pos
            else:
                self.fail(UnknownTagTypeError, f"Unknown tag type -- {tag_type}", tag_start)

        if section is not None:
            self.fail(UnclosedSectionError, f"Section '{section}' is never closed", start)
        if pos < len(tmpl):
            nodes.append(TextNode(tmpl[pos:]))
        return nodes, tmpl, len(tmpl)


def parse(tmpl: str, delimiters: Optional[Delimiters] = None, *,
          cache: Optional[TemplateCache] = None) -> Template:
    """Parse ``tmpl`` into a tuple of nodes, consulting the cache first.

    Section bodies keep their raw text for lambdas (see RawSection).
    Raises a ParseError subclass on malformed templates.
    """
    delimiters = tuple(delimiters or DEFAULT_DELIMITERS)
    if cache is None:
        cache = default_cache
    nodes = cache.get(delimiters, tmpl)
    if nodes is not None:
        return nodes
    log.debug("Parsing %d characters with delimiters %r", len(tmpl), delimiters)
    built, _, _ = _Parser(tmpl, cache).scan(delimiters)
    return cache.setdefault(delimiters, tmpl, tuple(built))

# -----------------------------
# Context lookup
# -----------------------------
class ValueKind(enum.Enum):
    SCALAR = "scalar"
    MAPPING = "mapping"
    SEQUENCE = "sequence"
    LAMBDA = "lambda"
    OBJECT = "object"


_SCALAR_TYPES = (type(None), bool, int, float, complex, str, bytes)

def kind_of(value: Any) -> ValueKind:
    if isinstance(value, _SCALAR_TYPES):
        return ValueKind.SCALAR
    if isinstance(value, Mapping):
        return ValueKind.MAPPING
    if isinstance(value, Sequence):
        return ValueKind.SEQUENCE
    if callable(value) and not isinstance(value, type):
        return ValueKind.LAMBDA
    return ValueKind.OBJECT

def _is_accessor(attr: Any) -> bool:
    return inspect.ismethod(attr)

def lookup(name: str, ctx_stack: Sequence[Any]) -> Tuple[Any, Any]:
    """Resolve ``name`` against a context stack (innermost frame last).

    Returns ``(frame, value)`` for the first frame that has the name: a
    mapping holding it as a key, or an object with such a public attribute
    (bound methods are called with no arguments). Presence, not truthiness,
    decides. Scalar, sequence and lambda frames are skipped, so the methods
    of a string item never shadow outer keys. Without a match the outermost
    frame is returned with ``""``.
    """
    frame = None
    for frame in reversed(ctx_stack):
        kind = kind_of(frame)
        if kind is ValueKind.MAPPING:
            if name in frame:
                return frame, frame[name]
        elif kind is ValueKind.OBJECT:
            if name.startswith("_") or not hasattr(frame, name):
                continue
            value = getattr(frame, name)
            if _is_accessor(value):
                value = value()
            return frame, value
    return frame, ""

def _to_text(value: Any) -> str:
    return "" if value is None else str(value)

# -----------------------------
# Rendering
# -----------------------------
PartialResolver = Callable[[str], str]

_INDENT_RE = re.compile(r"^(?=.)", re.MULTILINE)
_NO_FRAME = object()

def partial_resolver(partials: Any) -> PartialResolver:
    """Turn a callable, mapping or object into a ``name -> text`` resolver."""
    if partials is None:
        return lambda name: ""
    if kind_of(partials) is ValueKind.LAMBDA:
        return partials

    def resolve(name: str) -> str:
        _, text = lookup(name, [partials])
        return text

    return resolve


class Renderer:
    def __init__(self, partials: Any = None, cache: Optional[TemplateCache] = None):
        self.partials = partial_resolver(partials)
        self.cache = default_cache if cache is None else cache

    def render(self, template: str, data: Any = None,
               delimiters: Optional[Delimiters] = None) -> str:
        ctx_stack: List[Any] = [] if data is None else [data]
        return self.generate(parse(template, delimiters, cache=self.cache), ctx_stack)

    def _expand(self, text: str, delimiters: Optional[Delimiters],
                ctx_stack: List[Any], frame: Any = _NO_FRAME) -> str:
        """Parse and render ``text``, with ``frame`` pushed for the duration."""
        return self._generate_with(parse(text, delimiters, cache=self.cache), ctx_stack, frame)

    def _expand_body(self, body: RawSection, ctx_stack: List[Any],
                     frame: Any = _NO_FRAME) -> str:
        if body.nodes is None:
            return self._expand(body.text, body.delimiters, ctx_stack, frame)
        return self._generate_with(body.nodes, ctx_stack, frame)

    def _generate_with(self, nodes: Template, ctx_stack: List[Any], frame: Any) -> str:
        if frame is _NO_FRAME:
            return self.generate(nodes, ctx_stack)
        ctx_stack.append(frame)
        try:
            return self.generate(nodes, ctx_stack)
        finally:
            ctx_stack.pop()

    def generate(self, nodes: Template, ctx_stack: List[Any]) -> str:
        out: List[str] = []
        for node in nodes:
            if isinstance(node, TextNode):
                out.append(node.text)
            elif isinstance(node, VarNode):
                out.append(self._render_variable(node, ctx_stack))
            elif isinstance(node, SectionNode):
                out.append(self._render_section(node, ctx_stack))
            elif isinstance(node, PartialNode):
                out.append(self._render_partial(node, ctx_stack))
            else:
                raise TypeError(f"Unknown node: {node!r}")
        return "".join(out)

    def _render_variable(self, node: VarNode, ctx_stack: List[Any]) -> str:
        frame, value = lookup(node.name, ctx_stack)
        if kind_of(value) is ValueKind.LAMBDA:
            def render(text: str) -> str:
                return self._expand(text, None, ctx_stack)

            value = self._expand(_to_text(value(render)), None, ctx_stack)
            # Later lookups of the same name in this frame reuse the result.
            if isinstance(frame, MutableMapping):
                frame[node.name] = value
        text = _to_text(value)
        return html_escape(text) if node.escaped else text

    def _render_section(self, node: SectionNode, ctx_stack: List[Any]) -> str:
        _, value = lookup(node.name, ctx_stack)
        body = node.body
        kind = kind_of(value)

        if node.inverted:
            if value:
                return ""
            return self._expand_body(body, ctx_stack)

        if kind is ValueKind.SEQUENCE:
            return "".join(self._expand_body(body, ctx_stack, item) for item in value)
        if kind is ValueKind.LAMBDA:
            def render(text: str) -> str:
                return self._expand(text, body.delimiters, ctx_stack)

            text = _to_text(value(body.text, render))
            return self._expand(text, body.delimiters, ctx_stack, value)
        if value:
            return self._expand_body(body, ctx_stack, value)
        return ""

    def _render_partial(self, node: PartialNode, ctx_stack: List[Any]) -> str:
        text = _to_text(self.partials(node.name))
        log.debug("Partial %r resolved to %d characters", node.name, len(text))
        if node.indent:
            indent = node.indent
            text = _INDENT_RE.sub(lambda m: indent, text)
        return self._expand(text, None, ctx_stack)


def render(template: str, data: Any = None, partials: Any = None, *,
           cache: Optional[TemplateCache] = None) -> str:
    """Render ``template`` against ``data``.

    ``partials`` may be a callable ``name -> text``, a mapping, or an object
    whose attributes/methods are named after the partials.
    """
    return Renderer(partials, cache=cache).render(template, data)

# -----------------------------
# Views
# -----------------------------
def read_file(path: Union[str, Path]) -> str:
    """Contents of ``path``, or the empty string when it is not a file."""
    path = Path(path)
    if not path.is_file():
        log.debug("Template file %s not found", path)
        return ""
    return path.read_text(encoding="utf-8")


class Mustache:
    """Base class for views that find their template and partials on disk.

    Subclass and expose fields as methods or attributes; the view itself is
    the rendering context unless other data is given. Keyword arguments to
    the constructor become attributes; the names of the view's own methods
    are rejected with TypeError.

    With ``template_file`` unset the template of ``app.views.Profile`` is
    ``<template_path>/app/views/Profile.mustache``; setting
    ``template_namespace = "app.views"`` shortens it to ``Profile.mustache``.
    """

    template_path: str = "."
    template_extension: str = "mustache"
    template_namespace: str = ""
    template_file: Optional[str] = None
    cache: Optional[TemplateCache] = None

    _reserved = frozenset(("render", "template", "partial", "template_file_name"))

    def __init__(self, **fields: Any):
        clash = self._reserved.intersection(fields)
        if clash:
            raise TypeError(f"Field names clash with view methods: {', '.join(sorted(clash))}")
        for key, value in fields.items():
            setattr(self, key, value)

    def template_file_name(self) -> str:
        if self.template_file:
            return self.template_file
        cls = type(self)
        name = f"{cls.__module__}.{cls.__qualname__}"
        namespace = self.template_namespace
        if namespace and name.startswith(namespace + "."):
            name = name[len(namespace) + 1:]
        return os.path.join(*name.split(".")) + "." + self.template_extension

    def template(self) -> str:
        return read_file(Path(self.template_path) / self.template_file_name())

    def partial(self, name: str) -> str:
        return read_file(Path(self.template_path) / f"{name}.{self.template_extension}")

    def render(self, template: Any = None, data: Any = None, partials: Any = None) -> str:
        # view.render(data) is accepted as well as view.render(template, data)
        if template is not None and not isinstance(template, str) \
                and (data is None or isinstance(data, str)):
            template, data = data, template
        if template is None:
            template = self.template()
        if data is None:
            data = self
        if partials is None:
            partials = self.partial
        return render(template, data, partials, cache=self.cache)
