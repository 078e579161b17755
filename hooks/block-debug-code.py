#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.10"
# dependencies = []
# ///
"""Git pre-commit hook that blocks committing debug code.

Inspects the staged (index) version of every changed file:

- PHP files (.php, .module, .install, .inc) are searched for calls to
  debug helpers such as var_dump(), dpm() and debug_backtrace(), then
  syntax-checked with `php -l`.
- JavaScript files (.js, .coffee) are searched for console.log() and
  alert() calls.

Calls inside comments are ignored; for PHP the comments are stripped by
`php -w` when php is installed.  Symlinks, submodules and intent-to-add
entries are skipped, and a repository's first commit is compared against
the empty tree.

Every matching file is checked before the verdict is printed, so one run
reports every problem.  A non-zero exit aborts the commit;
`git commit --no-verify` skips the hook entirely.

Install by symlinking or copying to .git/hooks/pre-commit.  The hook runs
from the repository root and keeps its scratch copies and lint log under
.validate_pre_commit/.
"""

import logging
import os
import re
import subprocess
import sys
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple

# Non-zero exit aborts the commit
ABORT_COMMIT = 1

# `php -l` exits with this status on a parse error; anything else is informational
PARSE_ERROR_STATUS = 255

STAGED_DIR = ".validate_pre_commit"
LINT_LOG = "lint.log"

PHP_EXTENSIONS = (".php", ".module", ".install", ".inc")
SCRIPT_EXTENSIONS = (".js", ".coffee")

# print_r() has valid uses with its optional $return argument, so it is not listed.
PHP_DEBUG_FUNCTIONS = (
    "var_dump",
    "dpq",
    "dpm",
    "dvm",
    "dsm",
    "dpr",
    "kpr",
    "dvr",
    "kprint_r",
    "dprint_r",
    "devel_render",
    "ddebug_backtrace",
    "debug_backtrace",
    "debug_print_backtrace",
)
SCRIPT_DEBUG_FUNCTIONS = ("console.log", "alert")

# Printed by `php -l` for every file; dropped from the syntax error report
LINT_BANNERS = ("Errors parsing", "No syntax errors detected")

CONTEXT_LINES = 2

# Index entries that are not regular files: symlinks and submodules
SKIPPED_MODES = ("120000", "160000")

# Empty blob ids (SHA-1, SHA-256); `git add -N` stages an empty entry
EMPTY_BLOBS = (
    "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391",
    "473a0f4c3be8a93681a267e3b1e9a7dcda1185436fe141f7749120a303721813",
)

RULE = "-" * 39

log = logging.getLogger("commit-gate")


class GitError(RuntimeError):
    """A git plumbing command failed."""


class DebugMatch(NamedTuple):
    line_no: int
    line: str


@dataclass(frozen=True)
class LintResult:
    returncode: int
    output: str

    @property
    def is_parse_error(self) -> bool:
        return self.returncode == PARSE_ERROR_STATUS


@dataclass
class RunResult:
    """Everything a single run accumulates before the verdict."""

    scratch: Path
    abort_requested: bool = False
    debug_reports: list[str] = field(default_factory=list)
    lint_log: str = ""
    lint_output: dict[str, str] = field(default_factory=dict)
    syntax_error_files: list[str] = field(default_factory=list)


def _setup_log() -> logging.Logger:
    if not log.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s"))
        log.addHandler(handler)
        level = os.environ.get("COMMIT_GATE_LOG_LEVEL", "WARNING").upper()
        try:
            log.setLevel(level)
        except ValueError:
            log.setLevel(logging.WARNING)
            log.warning("unknown COMMIT_GATE_LOG_LEVEL %r; using WARNING", level)
    return log


# ── git plumbing ──────────────────────────────────────────────────────


def _git(*args: str) -> str:
    try:
        proc = subprocess.run(["git", *args], capture_output=True, text=True)
    except OSError as exc:
        raise GitError(f"git {args[0]}: {exc}") from exc
    if proc.returncode != 0:
        raise GitError(f"git {args[0]} exited {proc.returncode}: {proc.stderr.strip()}")
    return proc.stdout


def _diff_base() -> str:
    """HEAD, or the empty tree when the repository has no commits yet."""
    try:
        _git("rev-parse", "--verify", "-q", "HEAD")
    except GitError:
        return _git("hash-object", "-t", "tree", os.devnull).strip()
    return "HEAD"


def list_staged_files() -> list[str]:
    """Return paths that differ between HEAD and the index, in git's order.

    Only regular files with staged content are returned: deletions,
    symlinks, submodules and intent-to-add entries have no blob worth
    inspecting.
    """
    out = _git("diff-index", _diff_base(), "--cached", "-z", "--diff-filter=d")
    fields = out.split("\0")
    paths: list[str] = []
    # -z raw output alternates ":<old mode> <new mode> <old sha> <new sha> <status>" and the path
    for meta, path in zip(fields[0::2], fields[1::2]):
        _, new_mode, _, new_sha, _ = meta.split()
        if new_mode in SKIPPED_MODES or new_sha in EMPTY_BLOBS or not new_sha.strip("0"):
            log.debug("skipping %s (mode %s)", path, new_mode)
            continue
        paths.append(path)
    return paths


@contextmanager
def staged_copy(path: str, scratch: Path) -> Iterator[Path]:
    """Check out the index version of *path* under *scratch* for the duration of the block.

    The working tree copy may carry unstaged edits, so only the index blob
    reflects what is about to be committed.
    """
    _git("checkout-index", "-f", f"--prefix={scratch.as_posix()}/", "--", path)
    copy = scratch / path
    try:
        yield copy
    finally:
        copy.unlink(missing_ok=True)
        parent = copy.parent
        while parent != scratch and scratch in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break  # not empty
            parent = parent.parent


# ── matching ──────────────────────────────────────────────────────────


def strip_line_comments(text: str) -> str:
    """Drop everything from `//` to the end of each line."""
    return re.sub(r"//.*", "", text)


_OPEN_TAG = re.compile(r"<\?(?:php\b|=)", re.IGNORECASE)
_LINE_COMMENT_END = re.compile(r"\n|\?>")
_HEREDOC_START = re.compile(r"<<<[ \t]*(['\"]?)([A-Za-z_]\w*)\1\r?\n")


def _string_end(text: str, i: int) -> int:
    quote = text[i]
    j = i + 1
    while j < len(text):
        if text[j] == "\\":
            j += 2
        elif text[j] == quote:
            return j + 1
        else:
            j += 1
    return len(text)


def _heredoc_end(text: str, start: int, label: str) -> int:
    m = re.compile(rf"^[ \t]*{re.escape(label)}\b", re.MULTILINE).search(text, start)
    return m.end() if m else len(text)


def strip_php_comments(text: str) -> str:
    """Remove `//`, `#` and `/* */` comments from the PHP blocks of *text*.

    Stands in for `php -w` when no PHP binary is available.  Inline HTML
    outside `<?php ... ?>`, quoted strings and heredocs are copied as-is;
    a line comment ends at the newline or at `?>`, whichever comes first.
    Newlines inside block comments are kept so line numbers stay aligned.
    `#[` starts an attribute, not a comment.
    """
    out: list[str] = []
    i, n = 0, len(text)
    in_php = False
    while i < n:
        if not in_php:
            m = _OPEN_TAG.search(text, i)
            end = m.end() if m else n
            out.append(text[i:end])
            i, in_php = end, True
            continue
        ch = text[i]
        heredoc = _HEREDOC_START.match(text, i) if ch == "<" else None
        if text.startswith("?>", i):
            out.append("?>")
            i, in_php = i + 2, False
        elif ch in "'\"`":
            end = _string_end(text, i)
            out.append(text[i:end])
            i = end
        elif heredoc:
            end = _heredoc_end(text, heredoc.end(), heredoc.group(2))
            out.append(text[i:end])
            i = end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append("\n" * text.count("\n", i, end))
            i = end
        elif text.startswith("//", i) or (ch == "#" and not text.startswith("#[", i)):
            m = _LINE_COMMENT_END.search(text, i)
            i = m.start() if m else n
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def call_pattern(names: Iterable[str]) -> re.Pattern[str]:
    """Match `name(` for any of *names*, not as the tail of a longer identifier."""
    return re.compile(r"\b(?:" + "|".join(re.escape(name) for name in names) + r")\(")


PHP_DEBUG_PATTERN = call_pattern(PHP_DEBUG_FUNCTIONS)
SCRIPT_DEBUG_PATTERN = call_pattern(SCRIPT_DEBUG_FUNCTIONS)


def _lines(text: str) -> list[str]:
    """Split on newlines only, so numbering matches editors and `php -l`."""
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def find_calls(text: str, pattern: re.Pattern[str]) -> list[DebugMatch]:
    return [
        DebugMatch(line_no, line)
        for line_no, line in enumerate(_lines(text), start=1)
        if pattern.search(line)
    ]


def format_context(text: str, matches: list[DebugMatch], context: int = CONTEXT_LINES) -> str:
    """Render *matches* the way `grep -n -C<context>` does.

    Matching lines read `12:code`, surrounding lines `11-code`, and
    non-adjacent groups are separated by `--`.
    """
    lines = _lines(text)
    hits = {m.line_no for m in matches}
    shown = sorted(
        {
            n
            for hit in hits
            for n in range(max(1, hit - context), min(len(lines), hit + context) + 1)
        }
    )
    out: list[str] = []
    previous = None
    for n in shown:
        if previous is not None and n != previous + 1:
            out.append("--")
        sep = ":" if n in hits else "-"
        out.append(f"{n}{sep}{lines[n - 1]}")
        previous = n
    return "\n".join(out)


def _debug_block(context: str, language: str, path: str) -> str:
    lines = [context] if context else []
    lines += [RULE, f"^ Found {language} debug code in {path}", RULE]
    return "\n".join(lines)


# ── linting ───────────────────────────────────────────────────────────


class PhpLinter:
    """The PHP binary: `php -l` for syntax, `php -w` for comment stripping."""

    def __init__(self, php: str | None = None) -> None:
        self.php = php or os.environ.get("COMMIT_GATE_PHP", "php")

    def check(self, path: Path) -> LintResult:
        try:
            proc = subprocess.run(
                [self.php, "-l", str(path)],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError:
            log.warning("%s not found; skipping syntax check of %s", self.php, path)
            return LintResult(127, f"{self.php}: command not found\n")
        return LintResult(proc.returncode, proc.stdout)

    def strip_comments(self, path: Path) -> str | None:
        """Return the source of *path* without comments, as `php_strip_whitespace()` does.

        None when php is unavailable or fails, in which case callers fall
        back to strip_php_comments().
        """
        try:
            proc = subprocess.run(
                [self.php, "-w", str(path)],
                capture_output=True,
                text=True,
                errors="replace",
            )
        except FileNotFoundError:
            return None
        if proc.returncode != 0:
            log.debug("%s -w exited %d for %s", self.php, proc.returncode, path)
            return None
        return proc.stdout


# ── checks ────────────────────────────────────────────────────────────


def _read(path: str, copy: Path, result: RunResult) -> str | None:
    try:
        return copy.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        log.warning("cannot read staged copy of %s: %s", path, exc)
        result.debug_reports.append(
            "\n".join([RULE, f"^ Could not read the staged version of {path}", RULE])
        )
        result.abort_requested = True
        return None


def check_php_file(path: str, copy: Path, result: RunResult, checker: PhpLinter) -> None:
    text = _read(path, copy, result)
    if text is None:
        return

    # Matching against fully comment-stripped code reliably skips files whose
    # only debug calls are commented out; the report still shows real lines.
    stripped = checker.strip_comments(copy)
    if stripped is None:
        stripped = strip_php_comments(text)
    if PHP_DEBUG_PATTERN.search(stripped):
        shown = strip_line_comments(text)
        context = format_context(shown, find_calls(shown, PHP_DEBUG_PATTERN))
        result.debug_reports.append(_debug_block(context, "PHP", path))
        result.abort_requested = True

    lint = checker.check(copy)
    result.lint_log += lint.output
    result.lint_output[path] = lint.output
    with (result.scratch / LINT_LOG).open("a", encoding="utf-8") as fh:
        fh.write(lint.output)
    if lint.is_parse_error:
        log.debug("parse error in %s", path)
        result.syntax_error_files.append(path)
        result.abort_requested = True


def check_script_file(path: str, copy: Path, result: RunResult) -> None:
    text = _read(path, copy, result)
    if text is None:
        return
    shown = strip_line_comments(text)
    matches = find_calls(shown, SCRIPT_DEBUG_PATTERN)
    if matches:
        context = format_context(shown, matches)
        result.debug_reports.append(_debug_block(context, "Javascript", path))
        result.abort_requested = True


def run_gate(files: list[str], scratch: Path, checker: PhpLinter) -> RunResult:
    """Check every PHP file, then every script file, and collect the findings."""
    scratch.mkdir(parents=True, exist_ok=True)
    (scratch / LINT_LOG).write_text("", encoding="utf-8")
    result = RunResult(scratch=scratch)

    for path in files:
        if path.endswith(PHP_EXTENSIONS):
            log.debug("checking %s", path)
            with staged_copy(path, scratch) as copy:
                check_php_file(path, copy, result, checker)

    for path in files:
        if path.endswith(SCRIPT_EXTENSIONS):
            log.debug("checking %s", path)
            with staged_copy(path, scratch) as copy:
                check_script_file(path, copy, result)

    return result


def render_report(result: RunResult) -> str:
    """Build the user-facing report; empty when the commit may proceed."""
    if not result.abort_requested:
        return ""

    sections = list(result.debug_reports)

    if result.syntax_error_files:
        prefix = f"{result.scratch.as_posix()}/"
        lines = ["", "The following syntax errors were found:", RULE]
        for path in result.syntax_error_files:
            for line in result.lint_output[path].splitlines():
                if not line.strip() or line.startswith(LINT_BANNERS):
                    continue
                lines.append(line.replace(prefix, ""))
        lines.append(RULE)
        sections.append("\n".join(lines))

    sections.append(
        "\n".join(
            [
                "",
                "Can't commit; fix errors first.",
                "(If you definitely need to commit this as-is, use the --no-verify option.)",
                "",
                "If the reported line numbers do not match, try stashing your unstaged changes:",
                "git stash push --keep-index",
            ]
        )
    )
    return "\n".join(sections)


def main() -> int:
    _setup_log()

    try:
        files = list_staged_files()
    except GitError as exc:
        log.error("%s", exc)
        print("Error getting list of changed files in pre-commit hook")
        return ABORT_COMMIT

    try:
        result = run_gate(files, Path(STAGED_DIR), PhpLinter())
    except GitError as exc:
        log.error("%s", exc)
        print("Error checking out staged files in pre-commit hook")
        return ABORT_COMMIT

    report = render_report(result)
    if report:
        print(report)
    return ABORT_COMMIT if result.abort_requested else 0


if __name__ == "__main__":
    raise SystemExit(main())
