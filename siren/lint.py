"""HTML linting for Siren.

The lint stage checks built HTML files against a small set of rules. Rules
are named after their htmllint counterparts so existing configurations read
naturally, and each one can be switched on or off in ``siren.yaml``:

- ``tag-close``: every non-void element is closed, and closing tags match
  (elements whose end tag HTML lets you omit, like ``<p>`` and ``<li>``, are
  exempt).
- ``attr-no-dup``: no attribute appears twice on one element.
- ``id-no-dup``: no ``id`` value appears twice in one document.
- ``img-req-alt``: every ``<img>`` has an ``alt`` attribute.
- ``tag-name-lowercase``: tag names are written in lowercase.
- ``doctype-first``: the document starts with a doctype.

Parsing uses the standard library's tolerant ``html.parser``, which reports
every tag as written instead of repairing the tree.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from html.parser import HTMLParser
from pathlib import Path

from .errors import TransformError
from .transforms import BaseTransform, OutputFile, SourceFile, read_utf8

logger = logging.getLogger(__name__)

VOID_ELEMENTS = frozenset(
    {
        "area", "base", "br", "col", "embed", "hr", "img", "input",
        "link", "meta", "param", "source", "track", "wbr",
    }
)  # fmt: skip

OPTIONAL_END_ELEMENTS = frozenset(
    {
        "html", "head", "body", "p", "li", "dt", "dd", "option", "optgroup",
        "tr", "td", "th", "thead", "tbody", "tfoot", "colgroup", "caption",
        "rt", "rp",
    }
)  # fmt: skip

OPTIONAL_START_ELEMENTS = frozenset({"html", "head", "body", "tbody", "colgroup"})

RULES = (
    "tag-close",
    "attr-no-dup",
    "id-no-dup",
    "img-req-alt",
    "tag-name-lowercase",
    "doctype-first",
)


@dataclass(frozen=True)
class LintIssue:
    """A single rule violation."""

    path: Path
    line: int
    column: int
    rule: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}:{self.column} [{self.rule}] {self.message}"


class _LintParser(HTMLParser):
    def __init__(self, path: Path, rules: frozenset[str]):
        super().__init__(convert_charrefs=True)
        self.path = path
        self.rules = rules
        self.issues: list[LintIssue] = []
        self._stack: list[tuple[str, int, int]] = []
        self._ids: dict[str, int] = {}
        self._seen_doctype = False
        self._seen_element = False

    def _report(self, rule: str, message: str, pos: tuple[int, int] | None = None) -> None:
        if rule not in self.rules:
            return
        line, column = pos or self.getpos()
        self.issues.append(LintIssue(self.path, line, column + 1, rule, message))

    def handle_decl(self, decl: str) -> None:
        if decl.lower().startswith("doctype"):
            self._seen_doctype = True

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self._check_element(tag, attrs)
        if tag not in VOID_ELEMENTS:
            line, column = self.getpos()
            self._stack.append((tag, line, column))

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self._check_element(tag, attrs)

    def handle_endtag(self, tag: str) -> None:
        if tag in VOID_ELEMENTS:
            return
        if not any(open_tag == tag for open_tag, _, _ in self._stack):
            if tag in OPTIONAL_START_ELEMENTS:
                return
            self._report("tag-close", f"Unexpected closing tag </{tag}>")
            return
        while self._stack:
            open_tag, line, column = self._stack.pop()
            if open_tag == tag:
                break
            self._unclosed(open_tag, line, column)

    def close(self) -> None:
        super().close()
        while self._stack:
            self._unclosed(*self._stack.pop())

    def _unclosed(self, tag: str, line: int, column: int) -> None:
        if tag in OPTIONAL_END_ELEMENTS:
            return
        self._report("tag-close", f"Tag <{tag}> is not closed", (line, column))

    def _check_element(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if not self._seen_element:
            self._seen_element = True
            if not self._seen_doctype:
                self._report("doctype-first", "Document does not start with a doctype")

        raw = self.get_starttag_text() or ""
        raw_name = raw[1 : 1 + len(tag)]
        if raw_name != raw_name.lower():
            self._report("tag-name-lowercase", f"Tag name <{raw_name}> is not lowercase")

        names = [name for name, _ in attrs]
        for name in sorted({n for n in names if names.count(n) > 1}):
            self._report("attr-no-dup", f"Duplicate attribute '{name}' on <{tag}>")

        element_id = dict(attrs).get("id")
        if element_id:
            line, _ = self.getpos()
            if element_id in self._ids:
                self._report(
                    "id-no-dup",
                    f"Duplicate id '{element_id}' (first used on line {self._ids[element_id]})",
                )
            else:
                self._ids[element_id] = line

        if tag == "img" and "alt" not in names:
            self._report("img-req-alt", "<img> is missing an alt attribute")


class HtmlLinter:
    """Checks HTML documents against the enabled rules.

    Attributes:
        rules: Names of enabled rules.
    """

    def __init__(self, rules: Mapping[str, bool] | None = None):
        if rules is None:
            enabled = set(RULES)
        else:
            unknown = sorted(set(rules) - set(RULES))
            if unknown:
                raise ValueError(f"Unknown lint rules: {', '.join(unknown)}")
            enabled = {name for name, on in rules.items() if on}
        self.rules = frozenset(enabled)

    def lint_text(self, html: str, path: Path) -> list[LintIssue]:
        parser = _LintParser(path, self.rules)
        parser.feed(html)
        parser.close()
        return sorted(parser.issues, key=lambda i: (i.line, i.column))

    def lint_file(self, path: Path) -> list[LintIssue]:
        return self.lint_text(read_utf8(path), path)


class LintTransform(BaseTransform):
    """Stage transform that lints HTML and writes nothing.

    All files are checked before failing so that one run reports every issue.
    """

    label = "htmllint"

    def __init__(self, linter: HtmlLinter):
        self.linter = linter

    def transform(self, source: SourceFile) -> Iterator[OutputFile]:
        yield from self.transform_all([source])

    def transform_all(self, sources: Sequence[SourceFile]) -> Iterator[OutputFile]:
        issues: list[LintIssue] = []
        for source in sources:
            issues.extend(self.linter.lint_file(source.path))
        for issue in issues:
            logger.error("%s", issue)
        if issues:
            files = len({issue.path for issue in issues})
            first = issues[0]
            raise TransformError(
                first.path if files == 1 else None,
                f"{len(issues)} lint error(s) in {files} file(s)",
            )
        logger.debug("Linted %d file(s) cleanly", len(sources))
        yield from ()
