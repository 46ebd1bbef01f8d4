#!/usr/bin/env python3
"""
Render Mustache templates from the command line.

Usage:
  python mustache_render.py template.mustache
  python mustache_render.py --data data.yml --partials templates/ page.mustache
  cat data.yml template.mustache | python mustache_render.py

A document may open with a YAML front-matter block, which is removed and
used as the rendering data:

  ---
  planet: World
  ---
  Hello {{planet}}!

Files given as arguments are concatenated in order before rendering, so a
data file that is itself a front-matter block can be passed ahead of the
template.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from mustache import Mustache, MustacheError

log = logging.getLogger(__name__)

# -----------------------------
# Front matter
# -----------------------------
_FRONT_MATTER_RE = re.compile(
    r"\A\s*^---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL | re.MULTILINE,
)

class DataError(Exception):
    """Raised when front matter or a data file does not hold a mapping."""


def _as_mapping(data: Any, source: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DataError(f"{source} must be a mapping, got {type(data).__name__}")
    return data

def split_front_matter(doc: str) -> Tuple[Optional[Dict[str, Any]], str]:
    """Split a leading ``---`` YAML block off ``doc``.

    Returns ``(data, template)``; ``data`` is None when there is no block.
    """
    m = _FRONT_MATTER_RE.match(doc)
    if not m:
        return None, doc
    data = _as_mapping(yaml.safe_load(m.group(1)), "Front matter")
    return data, doc[m.end():]

def load_data_file(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    return _as_mapping(data, f"Data file {path}")

def read_documents(names: List[str]) -> str:
    if not names:
        names = ["-"]
    parts: List[str] = []
    for name in names:
        if name == "-":
            parts.append(sys.stdin.read())
        else:
            parts.append(Path(name).read_text(encoding="utf-8"))
    return "".join(parts)

# -----------------------------
# CLI
# -----------------------------
def setup_logging(verbosity: int = 0) -> None:
    """WARNING by default, INFO with -v, DEBUG with -vv or MUSTACHE_DEBUG=1."""
    if os.environ.get("MUSTACHE_DEBUG") or verbosity > 1:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        prog="mustache",
        description="Render Mustache templates, taking data from YAML front matter or data files.",
    )
    ap.add_argument("files", nargs="*", metavar="FILE",
                    help="Template files, concatenated in order ('-' or none reads stdin)")
    ap.add_argument("-d", "--data", action="append", default=[], type=Path,
                    help="YAML or JSON data file (repeatable; front matter wins on conflicts)")
    ap.add_argument("-p", "--partials", default=".",
                    help="Directory to look up {{>name}} partials in")
    ap.add_argument("-e", "--ext", default="mustache", help="File extension of partials")
    ap.add_argument("-o", "--output", default=None, help="Write output here instead of stdout")
    ap.add_argument("--data-out", default=None, help="Optional path to write the merged data as JSON")
    ap.add_argument("-v", "--verbose", action="count", default=0,
                    help="More logging (-v info, -vv debug)")
    args = ap.parse_args(argv)
    setup_logging(args.verbose)

    if not args.files and sys.stdin.isatty():
        ap.print_help()
        return 0

    try:
        data: Dict[str, Any] = {}
        for path in args.data:
            data.update(load_data_file(path))
            log.info("Loaded data from %s", path)

        front_matter, template = split_front_matter(read_documents(args.files))
        if front_matter is not None:
            data.update(front_matter)
            log.info("Using %d front-matter keys", len(front_matter))

        if args.data_out:
            Path(args.data_out).write_text(
                json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")

        view = Mustache(template_path=args.partials, template_extension=args.ext)
        output = view.render(template, data)
    except (MustacheError, DataError, OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if args.output:
        out_path = Path(args.output)
        out_path.write_text(output, encoding="utf-8")
        print(f"Wrote: {out_path}")
    else:
        sys.stdout.write(output)
    return 0

if __name__ == "__main__":
    sys.exit(main())
