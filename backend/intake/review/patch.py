from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Optional

LineSide = Literal["old", "new"]

HUNK_HEADER_PATTERN = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
RISK_KEYWORDS_PATTERN = re.compile(
    r"\b(auth|token|secret|password|permission|oauth|jwt|sql|query|exec|shell|decrypt|"
    r"encrypt|cache|concurr|race|lock|thread|async|await|timeout|retry|error|exception|"
    r"null|undefined)\b",
    re.IGNORECASE,
)
PATCH_TRUNCATED_MARKER = "\n... [patch truncated]"
HUNKS_PRIORITIZED_MARKER = "\n... [hunks prioritized]"
NO_SNIPPET = "(no diff snippet available)"


@dataclass
class Hunk:
    """One ``@@`` block of a unified diff. ``lines[0]`` is the header."""

    old_start: int
    new_start: int
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


@dataclass(frozen=True)
class AnnotatedLine:
    """A diff line tagged with the line number(s) it occupies."""

    raw: str
    old_number: Optional[int]
    new_number: Optional[int]

    @property
    def marker(self) -> str:
        old = "" if self.old_number is None else str(self.old_number)
        new = "" if self.new_number is None else str(self.new_number)
        return f"({old or ' '}, {new})" if new else f"({old or ' '}, )"


@dataclass
class ParsedPatch:
    annotated_diff: str
    old_lines: dict[int, str]
    new_lines: dict[int, str]
    hunks: list[Hunk]


@dataclass
class DiffFileContext:
    """Line-addressable view of one file's diff."""

    path: str
    old_lines: dict[int, str]
    new_lines: dict[int, str]
    annotated_diff: str = ""

    @classmethod
    def from_patch(cls, path: str, raw_patch: str) -> "DiffFileContext":
        parsed = parse_patch(raw_patch)
        return cls(
            path=path,
            old_lines=parsed.old_lines,
            new_lines=parsed.new_lines,
            annotated_diff=parsed.annotated_diff,
        )


def split_hunks(diff: str) -> list[Hunk]:
    """Split a unified diff on ``@@`` headers. Lines before the first header are dropped."""

    hunks: list[Hunk] = []
    current: Optional[Hunk] = None
    for line in diff.split("\n"):
        if line.startswith("@@"):
            match = HUNK_HEADER_PATTERN.match(line)
            current = Hunk(
                old_start=int(match.group(1)) if match else 0,
                new_start=int(match.group(3)) if match else 0,
                lines=[line],
            )
            hunks.append(current)
            continue
        if current is not None:
            current.lines.append(line)
    return hunks


def annotate_hunk(hunk: Hunk) -> list[AnnotatedLine]:
    """Number every body line of ``hunk``.

    Removed and context lines advance the old counter, added and context lines
    advance the new counter, ``\\`` markers advance neither.
    """

    old_line = hunk.old_start
    new_line = hunk.new_start
    annotated: list[AnnotatedLine] = []
    for raw in hunk.lines[1:]:
        if raw.startswith("\\"):
            annotated.append(AnnotatedLine(raw, None, None))
        elif raw.startswith("-"):
            annotated.append(AnnotatedLine(raw, old_line, None))
            old_line += 1
        elif raw.startswith("+"):
            annotated.append(AnnotatedLine(raw, None, new_line))
            new_line += 1
        else:
            annotated.append(AnnotatedLine(raw, old_line, new_line))
            old_line += 1
            new_line += 1
    return annotated


def parse_patch(raw_patch: str) -> ParsedPatch:
    """Annotate a unified diff and index its lines by old and new line number.

    A patch without any hunk header is returned unchanged with empty indexes.
    """

    patch = raw_patch.strip()
    if not patch or "@@" not in patch:
        return ParsedPatch(annotated_diff=raw_patch, old_lines={}, new_lines={}, hunks=[])

    hunks = split_hunks(patch)
    old_lines: dict[int, str] = {}
    new_lines: dict[int, str] = {}
    rendered: list[str] = []
    for hunk in hunks:
        rendered.append(hunk.lines[0])
        rows = annotate_hunk(hunk)
        width = max((len(row.marker) for row in rows), default=0)
        for row in rows:
            if row.old_number is not None:
                old_lines[row.old_number] = row.raw
            if row.new_number is not None:
                new_lines[row.new_number] = row.raw
            rendered.append(f"{row.marker.ljust(width)} {row.raw}")

    return ParsedPatch(
        annotated_diff="\n".join(rendered),
        old_lines=old_lines,
        new_lines=new_lines,
        hunks=hunks,
    )


def score_hunk(lines: list[str]) -> int:
    """Risk score: +1 per changed line and per header, plus a keyword bonus."""

    score = 0
    for line in lines:
        if line.startswith("@@"):
            score += 1
        elif line.startswith("+"):
            score += 1
            if RISK_KEYWORDS_PATTERN.search(line):
                score += 4
        elif line.startswith("-"):
            score += 1
            if RISK_KEYWORDS_PATTERN.search(line):
                score += 2
    return score


def prioritize_patch_hunks(raw_patch: str, max_chars: int) -> str:
    """Fit a patch into ``max_chars`` by keeping its riskiest hunks.

    Hunks are picked by descending score (ties by position) until the next one
    would overflow the budget; the first pick is always kept. Picked hunks are
    emitted in document order and a marker is appended when any were dropped.
    """

    limit = max(1, int(max_chars))
    if len(raw_patch) <= limit:
        return raw_patch

    trimmed = raw_patch.strip()
    hunks = split_hunks(trimmed) if "@@" in trimmed else []
    if not hunks:
        return raw_patch[:limit] + PATCH_TRUNCATED_MARKER

    texts = [hunk.text for hunk in hunks]
    ranked = sorted(range(len(hunks)), key=lambda index: (-score_hunk(hunks[index].lines), index))

    picked: set[int] = set()
    used = 0
    for index in ranked:
        addition = len(texts[index]) + (1 if picked else 0)
        if picked and used + addition > limit:
            break
        picked.add(index)
        used += addition

    result = "\n".join(texts[index] for index in sorted(picked))
    if len(picked) == len(hunks) and len(result) <= limit:
        return result
    return result + HUNKS_PRIORITIZED_MARKER


def get_diff_snippet(
    file: DiffFileContext,
    side: LineSide,
    start_line: int,
    end_line: int,
    context_lines: int = 3,
) -> str:
    """Return indexed lines from ``start - context`` to ``end + context`` on one side."""

    source = file.new_lines if side == "new" else file.old_lines
    if not source:
        return NO_SNIPPET

    first = max(1, start_line - context_lines)
    last = end_line + context_lines
    snippet = [source[number] for number in range(first, last + 1) if number in source]
    return "\n".join(snippet) if snippet else NO_SNIPPET


def build_file_context(path: str, raw_patch: str, max_chars: int) -> DiffFileContext:
    """Budget-fit a file's patch, then make it line-addressable."""

    return DiffFileContext.from_patch(path, prioritize_patch_hunks(raw_patch, max_chars))
