"""Glob matching of a command or path against a rule pattern.

Pure functions, no I/O. Patterns always match the full subject and are
case-sensitive.

Two flavours of glob:
  - command mode (Bash): ``*`` is any run of characters, ``?`` any one
    character. Command text has no path segments.
  - path mode (Read/Edit/Write/Grep/Glob): ``*`` and ``?`` stay inside one
    path segment, ``**`` crosses segments, ``a/**/b`` also matches ``a/b``.
"""

import functools
import re

from sandgate.errors import PatternError


def _translate_class(pattern: str, i: int) -> tuple[str, int]:
    """Translate a ``[...]`` class starting at *i*. Returns (regex, next index)."""
    n = len(pattern)
    j = i + 1
    if j < n and pattern[j] in "!^":
        j += 1
    if j < n and pattern[j] == "]":
        j += 1
    while j < n and pattern[j] != "]":
        j += 1
    if j >= n:
        raise PatternError(f"unbalanced '[' in pattern {pattern!r}")
    stuff = pattern[i + 1:j].replace("\\", "\\\\")
    if stuff[0] in "!^":
        stuff = "^" + stuff[1:]
    return f"[{stuff}]", j + 1


def translate(pattern: str, path_mode: bool = False) -> str:
    r"""Translate a glob into an anchored regular expression.

    >>> translate("git push*")
    '(?s:git\\ push.*)\\Z'
    >>> translate("src/*.py", path_mode=True)
    '(?s:src/[^/]*\\.py)\\Z'
    >>> translate("**/.env", path_mode=True)
    '(?s:(?:.*/)?\\.env)\\Z'
    """
    if not pattern:
        raise PatternError("empty pattern")
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            j = i
            while j < n and pattern[j] == "*":
                j += 1
            stars = j - i
            if stars >= 2 and path_mode and j < n and pattern[j] == "/":
                out.append("(?:.*/)?")
                i = j + 1
            elif stars >= 2 or not path_mode:
                out.append(".*")
                i = j
            else:
                out.append("[^/]*")
                i = j
        elif c == "?":
            out.append("[^/]" if path_mode else ".")
            i += 1
        elif c == "[":
            regex, i = _translate_class(pattern, i)
            out.append(regex)
        else:
            out.append(re.escape(c))
            i += 1
    return "(?s:" + "".join(out) + r")\Z"


@functools.lru_cache(maxsize=1024)
def compile_pattern(pattern: str, path_mode: bool = False) -> re.Pattern:
    """Compile *pattern*, raising PatternError if it cannot be parsed."""
    try:
        return re.compile(translate(pattern, path_mode))
    except re.error as e:
        raise PatternError(f"invalid pattern {pattern!r}: {e}") from e


def matches(pattern: str, subject: str, path_mode: bool = False) -> bool:
    """True if *subject* matches *pattern* in full.

    >>> matches("ls *", "ls -la")
    True
    >>> matches("ls", "ls -la")
    False
    >>> matches("*.py", "src/main.py", path_mode=True)
    False
    >>> matches("**/*.py", "src/main.py", path_mode=True)
    True
    >>> matches("*", "")
    False
    """
    if not subject:
        return False
    return compile_pattern(pattern, path_mode).match(subject) is not None
