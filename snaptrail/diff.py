"""
Hashing and line diffs.

Content hashes are plain SHA-256 over the UTF-8 bytes. The same digest
is used to dedup a new snapshot against its chain head and, applied to
the file identity, to name the blob shard directory.

Diffs are line-oriented and built on difflib.SequenceMatcher with the
junk heuristics turned off, so results are deterministic and independent
of file length. Two flavors:

- compute_diff: aggregate counts (added / removed / modified lines),
  stored on each snapshot as its DiffInfo.
- compute_detailed_diff: an ordered list of non-overlapping hunks that
  turn the old text into the new one. Hunk positions depend only on the
  two texts, so block ids derived from (original_start, original_length)
  stay valid across re-renders while the content is unchanged.
"""

import difflib
import hashlib
import re
from dataclasses import dataclass, field

_LINE_BREAK = re.compile(r"\r?\n")


def compute_hash(content: str | bytes) -> str:
    """SHA-256 hex digest of content (str is encoded as UTF-8)."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def split_lines(text: str) -> list[str]:
    """Split on LF or CRLF. Empty text is a single empty line."""
    return _LINE_BREAK.split(text)


def count_lines(text: str) -> int:
    return len(split_lines(text))


@dataclass(frozen=True)
class DiffCounts:
    added_lines: int = 0
    removed_lines: int = 0
    modified_lines: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added_lines or self.removed_lines or self.modified_lines)

    def to_dict(self) -> dict:
        return {
            "added_lines": self.added_lines,
            "removed_lines": self.removed_lines,
            "modified_lines": self.modified_lines,
        }


@dataclass(frozen=True)
class DiffHunk:
    """One replaced region: original[start:start+length] -> modified[start:start+length]."""
    original_start: int
    original_length: int
    modified_start: int
    modified_length: int
    original_content: list[str] = field(default_factory=list)
    modified_content: list[str] = field(default_factory=list)

    @property
    def block_id(self) -> str:
        return f"{self.original_start}:{self.original_length}"

    def to_dict(self) -> dict:
        return {
            "original_start": self.original_start,
            "original_length": self.original_length,
            "original_content": list(self.original_content),
            "modified_start": self.modified_start,
            "modified_length": self.modified_length,
            "modified_content": list(self.modified_content),
        }


def _opcodes(a: list[str], b: list[str]):
    return difflib.SequenceMatcher(None, a, b, autojunk=False).get_opcodes()


def compute_diff(old_text: str, new_text: str) -> DiffCounts:
    """
    Count line changes between two texts.

    Within a replaced region, lines that pair up by position count as
    modified; the surplus on either side counts as added or removed.
    Never raises for any pair of strings.
    """
    if old_text == new_text:
        return DiffCounts()

    added = removed = modified = 0
    for tag, i1, i2, j1, j2 in _opcodes(split_lines(old_text), split_lines(new_text)):
        old_len = i2 - i1
        new_len = j2 - j1
        if tag == "insert":
            added += new_len
        elif tag == "delete":
            removed += old_len
        elif tag == "replace":
            paired = min(old_len, new_len)
            modified += paired
            added += new_len - paired
            removed += old_len - paired

    return DiffCounts(added_lines=added, removed_lines=removed, modified_lines=modified)


def compute_detailed_diff(old_text: str, new_text: str) -> list[DiffHunk]:
    """
    Edit script from old_text to new_text as ordered, non-overlapping hunks.

    Lines are split on LF only (a CR stays part of its line) so that
    apply_hunks(old_text, hunks) reproduces new_text byte for byte.
    """
    if old_text == new_text:
        return []

    a = old_text.split("\n")
    b = new_text.split("\n")
    hunks = []
    for tag, i1, i2, j1, j2 in _opcodes(a, b):
        if tag == "equal":
            continue
        hunks.append(
            DiffHunk(
                original_start=i1,
                original_length=i2 - i1,
                modified_start=j1,
                modified_length=j2 - j1,
                original_content=a[i1:i2],
                modified_content=b[j1:j2],
            )
        )
    return hunks


def apply_hunks(old_text: str, hunks: list[DiffHunk]) -> str:
    """Rebuild the new text by applying hunks (in order) to old_text."""
    lines = old_text.split("\n")
    out: list[str] = []
    pos = 0
    for hunk in hunks:
        if hunk.original_start < pos:
            raise ValueError(f"Overlapping hunk at line {hunk.original_start}")
        out.extend(lines[pos:hunk.original_start])
        out.extend(hunk.modified_content)
        pos = hunk.original_start + hunk.original_length
    out.extend(lines[pos:])
    return "\n".join(out)
