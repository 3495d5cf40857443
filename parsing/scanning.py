"""Line scanning helpers shared by the brace-delimited language parsers."""

from typing import List, Sequence

OPENERS = '{(['
CLOSERS = '})]'
CONTINUATION_SUFFIXES = ('=', ',', '=>', '+', '-', '*', '/', '?', ':', '|', '&', '.', '(')


def mask_code(
    lines: Sequence[str],
    line_comments: Sequence[str] = ('//',),
    block_comments: bool = True,
    quotes: str = '"\'`',
    multiline_quotes: str = '`',
) -> List[str]:
    """Blank out string literals and comments, keeping line and column layout.

    The masked lines keep their length so that indentation checks still work;
    masked characters become spaces. Quotes listed in ``multiline_quotes`` may
    span lines (template strings, Go raw strings); a block comment may too.
    """
    masked: List[str] = []
    in_block = False
    open_quote = ''

    for line in lines:
        out = []
        i = 0
        length = len(line)
        while i < length:
            ch = line[i]
            if in_block:
                if line.startswith('*/', i):
                    in_block = False
                    out.append('  ')
                    i += 2
                else:
                    out.append(' ')
                    i += 1
                continue
            if open_quote:
                if ch == '\\' and open_quote != '`':
                    out.append('  ' if i + 1 < length else ' ')
                    i += 2
                    continue
                if ch == open_quote:
                    open_quote = ''
                    out.append(ch)
                else:
                    out.append(' ')
                i += 1
                continue
            if block_comments and line.startswith('/*', i):
                in_block = True
                out.append('  ')
                i += 2
                continue
            if any(line.startswith(marker, i) for marker in line_comments):
                out.append(' ' * (length - i))
                break
            if ch in quotes:
                open_quote = ch
                out.append(ch)
                i += 1
                continue
            out.append(ch)
            i += 1
        if open_quote and open_quote not in multiline_quotes:
            open_quote = ''
        masked.append(''.join(out)[:length].ljust(length))
    return masked


def bracket_delta(line: str) -> int:
    return sum(1 for ch in line if ch in OPENERS) - sum(1 for ch in line if ch in CLOSERS)


def find_block_end(masked: Sequence[str], start: int) -> int:
    """Return the 0-based index of the line that closes the statement at ``start``.

    A statement ends when its brackets balance after having opened, or, when
    it never opens a bracket, on the first line that does not end with a
    continuation token.
    """
    depth = 0
    opened = False
    total = len(masked)
    for j in range(start, total):
        line = masked[j]
        for ch in line:
            if ch in OPENERS:
                depth += 1
                opened = True
            elif ch in CLOSERS:
                depth -= 1
        stripped = line.strip()
        if opened and depth <= 0:
            nxt = _next_code_line(masked, j + 1)
            if nxt is not None and masked[nxt].strip().startswith('{') and not stripped.endswith(('}', ';')):
                continue
            return j
        if not opened and stripped and not stripped.endswith(CONTINUATION_SUFFIXES):
            nxt = _next_code_line(masked, j + 1)
            if nxt is not None and masked[nxt].strip().startswith('{'):
                continue
            return j
    return total - 1


def _next_code_line(masked: Sequence[str], start: int):
    for k in range(start, len(masked)):
        if masked[k].strip():
            return k
    return None


def indentation(line: str) -> int:
    return len(line) - len(line.lstrip())
