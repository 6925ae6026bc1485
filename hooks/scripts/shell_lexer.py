#!/usr/bin/env python3
"""Shell command lexer and destructive-command matcher.

Not a shell interpreter. The lexer only understands enough shell syntax to
find command boundaries and the real command behind wrappers:

1. segment()   - split at ; && || | & newline (top level, outside quotes)
2. classify()  - Complex node for substitution/heredoc, else Command node
3. tokenize()  - unquoted words plus redirection operators
4. find_destructive() - match the policy's destructive table

Anything the lexer cannot see through (command substitution, heredocs,
ANSI-C tricks it cannot decode) is matched against the raw segment text.
False positives are accepted over false negatives.
"""

import codecs
import re
from dataclasses import dataclass
from functools import lru_cache

from _gate_utils import MAX_COMMAND_LENGTH, log_gate, safe_regex_search, truncate_command

MAX_NESTING = 3
"""Maximum recursion through groups, substitutions and inline shells."""

SUBSTITUTION_MARKERS = ("$(", "`", "<(", ">(")
HEREDOC_MARKER = "<<"

INLINE_SHELLS = frozenset({"sh", "bash", "zsh", "dash", "ksh", "mksh", "ash", "busybox"})

SHELL_KEYWORDS = frozenset({"if", "then", "elif", "else", "do", "while", "until", "!", "{", "("})

# wrapper name -> (flags that consume the next token, leading positional args)
WRAPPERS: dict[str, tuple[frozenset, int]] = {
    "env": (frozenset({"-u", "--unset", "-C", "--chdir", "-S", "--split-string"}), 0),
    "nice": (frozenset({"-n", "--adjustment"}), 0),
    "ionice": (frozenset({"-c", "--class", "-n", "--classdata", "-p", "--pid"}), 0),
    "nohup": (frozenset(), 0),
    "sudo": (
        frozenset({"-u", "--user", "-g", "--group", "-h", "--host", "-p", "--prompt",
                   "-C", "--close-from", "-D", "--chdir", "-r", "--role", "-t", "--type",
                   "-U", "--other-user"}),
        0,
    ),
    "doas": (frozenset({"-u", "-C"}), 0),
    "timeout": (frozenset({"-s", "--signal", "-k", "--kill-after"}), 1),
    "time": (frozenset({"-f", "--format", "-o", "--output"}), 0),
    "command": (frozenset(), 0),
    "builtin": (frozenset(), 0),
    "exec": (frozenset({"-a"}), 0),
    "stdbuf": (frozenset({"-i", "-o", "-e"}), 0),
    "xargs": (frozenset({"-I", "-n", "-P", "-L", "-s", "-d", "-E", "-a"}), 0),
    "chrt": (frozenset(), 1),
    "taskset": (frozenset(), 1),
}

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_DOUBLE_QUOTE_ESCAPABLE = '$`"\\\n'


@dataclass(frozen=True)
class CommandNode:
    """A plain command: first word plus arguments, all unquoted."""

    command: str
    args: tuple[str, ...]
    tokens: tuple[str, ...]
    text: str


@dataclass(frozen=True)
class ComplexNode:
    """A segment whose content is opaque to the lexer."""

    reason: str
    text: str


BashNode = CommandNode | ComplexNode


# ============================================================
# Segmentation
# ============================================================


def segment(command: str) -> list[str]:
    """Split a compound command into top-level segments.

    Handles delimiters: ;  &&  ||  |  |&  &  newline  carriage return

    Does NOT split inside:
    - Single-quoted strings ('...')
    - Double-quoted strings ("...")
    - Backtick substitution
    - Parentheses or braces ($(...), (...), {...}, <(...))
    - Backslash-escaped characters

    &> / &>> and fd duplication (>&, <&, 2>&1) are redirections, not
    separators.

    Args:
        command: The compound shell command to split.

    Returns:
        List of non-empty, stripped segments.
    """
    segments: list[str] = []
    current: list[str] = []
    depth = 0
    in_single_quote = False
    in_double_quote = False
    in_backtick = False
    n = len(command)
    i = 0

    def flush() -> None:
        text = "".join(current).strip()
        if text:
            segments.append(text)
        current.clear()

    while i < n:
        c = command[i]

        # Backslash escape (outside single quotes): \; is not a delimiter
        if c == "\\" and not in_single_quote:
            current.append(c)
            if i + 1 < n:
                i += 1
                current.append(command[i])
            i += 1
            continue

        if c == "'" and not in_double_quote and not in_backtick:
            in_single_quote = not in_single_quote
            current.append(c)
            i += 1
            continue

        if c == '"' and not in_single_quote and not in_backtick:
            in_double_quote = not in_double_quote
            current.append(c)
            i += 1
            continue

        if in_single_quote or in_double_quote:
            current.append(c)
            i += 1
            continue

        if c == "`":
            in_backtick = not in_backtick
            current.append(c)
            i += 1
            continue

        if in_backtick:
            current.append(c)
            i += 1
            continue

        if c in "({":
            depth += 1
            current.append(c)
            i += 1
            continue
        if c in ")}":
            depth = max(depth - 1, 0)
            current.append(c)
            i += 1
            continue

        if depth == 0:
            next_c = command[i + 1] if i + 1 < n else ""
            prev_c = command[i - 1] if i > 0 else ""

            if c in ";\n\r":
                flush()
                i += 1
                continue
            if c == "&" and next_c == "&":
                flush()
                i += 2
                continue
            if c == "|" and next_c == "|":
                flush()
                i += 2
                continue
            if c == "|":
                if prev_c == ">":
                    # >| is a clobbering redirection
                    current.append(c)
                    i += 1
                    continue
                flush()
                # |& pipes stderr too
                i += 2 if next_c == "&" else 1
                continue
            if c == "&":
                # &> redirects stdout+stderr, >& and <& duplicate fds
                if next_c == ">" or prev_c in (">", "<"):
                    current.append(c)
                    i += 1
                    continue
                flush()
                i += 1
                continue

        current.append(c)
        i += 1

    flush()
    return segments


def _split_group(text: str) -> tuple[str, str] | None:
    """Split "(body) rest" or "{ body; } rest" into (body, rest).

    Returns None when text does not start with a balanced group.
    """
    if not text or text[0] not in "({":
        return None
    opener = text[0]
    closer = ")" if opener == "(" else "}"
    depth = 0
    in_single = in_double = False
    i = 0
    while i < len(text):
        c = text[i]
        if c == "\\" and not in_single:
            i += 2
            continue
        if c == "'" and not in_double:
            in_single = not in_single
        elif c == '"' and not in_single:
            in_double = not in_double
        elif not in_single and not in_double:
            if c == opener:
                depth += 1
            elif c == closer:
                depth -= 1
                if depth == 0:
                    return text[1:i], text[i + 1 :].strip()
        i += 1
    return None


# ============================================================
# Tokenization
# ============================================================


def _read_operator(text: str, i: int) -> str:
    c = text[i]
    nxt = text[i + 1] if i + 1 < len(text) else ""
    nxt2 = text[i + 2] if i + 2 < len(text) else ""
    if c == "&":
        return "&>>" if nxt2 == ">" else "&>"
    if c == ">":
        if nxt in (">", "&", "|"):
            return c + nxt
        return ">"
    # c == "<"
    if nxt == "<":
        return "<<<" if nxt2 == "<" else "<<"
    if nxt in ("&", ">"):
        return c + nxt
    return "<"


def _raw_tokens(text: str) -> list[str]:
    tokens: list[str] = []
    current: list[str] = []
    in_single = False
    in_double = False
    n = len(text)
    i = 0

    def push() -> None:
        if current:
            tokens.append("".join(current))
            current.clear()

    while i < n:
        c = text[i]
        if in_single:
            current.append(c)
            if c == "'":
                in_single = False
            i += 1
            continue
        if in_double:
            current.append(c)
            if c == "\\" and i + 1 < n:
                current.append(text[i + 1])
                i += 2
                continue
            if c == '"':
                in_double = False
            i += 1
            continue
        if c == "\\":
            current.append(c)
            if i + 1 < n:
                current.append(text[i + 1])
            i += 2
            continue
        if c == "'":
            in_single = True
            current.append(c)
            i += 1
            continue
        if c == '"':
            in_double = True
            current.append(c)
            i += 1
            continue
        if c.isspace():
            push()
            i += 1
            continue
        if c in "<>" or (c == "&" and i + 1 < n and text[i + 1] == ">"):
            op = _read_operator(text, i)
            i += len(op)
            # 2> / 1>> style: digits directly before the operator name an fd
            fd = "".join(current)
            if fd.isdigit() and not op.startswith("&"):
                current.clear()
                tokens.append(fd + op)
            else:
                push()
                tokens.append(op)
            continue
        current.append(c)
        i += 1

    push()
    return tokens


def unquote(token: str) -> str:
    """Strip quote delimiters and resolve backslash escapes.

    Single-quoted content is kept verbatim, double-quoted content resolves
    only the escapes the shell resolves there, and ANSI-C quoting
    ($'\\x72m') is decoded.
    """
    out: list[str] = []
    n = len(token)
    i = 0
    in_single = False
    in_double = False
    while i < n:
        c = token[i]
        if in_single:
            if c == "'":
                in_single = False
            else:
                out.append(c)
            i += 1
            continue
        if in_double:
            if c == '"':
                in_double = False
            elif c == "\\" and i + 1 < n and token[i + 1] in _DOUBLE_QUOTE_ESCAPABLE:
                out.append(token[i + 1])
                i += 1
            else:
                out.append(c)
            i += 1
            continue
        if c == "$" and i + 1 < n and token[i + 1] == "'":
            end = i + 2
            while end < n and token[end] != "'":
                end += 2 if token[end] == "\\" else 1
            body = token[i + 2 : min(end, n)]
            try:
                out.append(codecs.decode(body, "unicode_escape"))
            except (UnicodeError, ValueError):
                out.append(body)
            i = end + 1
            continue
        if c == "$" and i + 1 < n and token[i + 1] == '"':
            # $"..." is a locale-translated double-quoted string
            i += 1
            continue
        if c == "'":
            in_single = True
        elif c == '"':
            in_double = True
        elif c == "\\":
            if i + 1 < n:
                out.append(token[i + 1])
                i += 1
        else:
            out.append(c)
        i += 1
    return "".join(out)


def tokenize(text: str) -> list[str]:
    """Split a segment into unquoted words and redirection operators."""
    return [unquote(tok) for tok in _raw_tokens(text)]


def classify(text: str) -> BashNode:
    """Classify one segment as Complex (opaque) or Command."""
    for marker in SUBSTITUTION_MARKERS:
        if marker in text:
            return ComplexNode("substitution_detected", text)
    if HEREDOC_MARKER in text:
        return ComplexNode("heredoc_detected", text)
    tokens = tuple(tokenize(text))
    if not tokens:
        return ComplexNode("empty_segment", text)
    return CommandNode(command=tokens[0], args=tokens[1:], tokens=tokens, text=text)


def parse(command: str, _depth: int = 0) -> list[BashNode]:
    """Segment and classify a command. Groups are parsed recursively."""
    nodes: list[BashNode] = []
    for seg in segment(command):
        group = _split_group(seg) if _depth < MAX_NESTING else None
        if group is not None:
            body, rest = group
            nodes.extend(parse(body, _depth + 1))
            if rest:
                nodes.append(classify(rest))
            continue
        nodes.append(classify(seg))
    return nodes


# ============================================================
# Wrapper Skipping
# ============================================================


def _basename(token: str) -> str:
    return token.rstrip("/").rsplit("/", 1)[-1] if "/" in token.rstrip("/") else token


def effective_tokens(tokens) -> list[str]:
    """Drop no-op prefixes to reach the command that actually runs.

    Skipped: shell keywords (then, do, ...), NAME=value assignments, and
    wrappers such as env, nice, sudo, timeout with their options, option
    arguments and leading positional arguments. Nested wrappers are
    skipped repeatedly (sudo env X=1 nice rm).
    """
    tokens = list(tokens)
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok in SHELL_KEYWORDS or _ASSIGNMENT_RE.match(tok):
            i += 1
            continue
        name = _basename(tok)
        spec = WRAPPERS.get(name)
        if spec is None:
            break
        takes_arg, positionals = spec
        i += 1
        while i < len(tokens):
            t = tokens[i]
            if t == "--":
                i += 1
                break
            if t.startswith("-") and t != "-":
                i += 1
                if t in takes_arg:
                    i += 1
                continue
            if name == "env" and _ASSIGNMENT_RE.match(t):
                i += 1
                continue
            break
        i += positionals
    return tokens[i:]


# ============================================================
# Destructive Pattern Matching
# ============================================================


def _is_short_cluster(word: str) -> bool:
    return len(word) > 1 and word[0] == "-" and word[1] != "-" and word[1:].isalnum()


def _is_flag(word: str) -> bool:
    return word.startswith("-") and word != "--"


@lru_cache(maxsize=256)
def _pattern_words(pattern: str) -> tuple[str, ...]:
    return tuple(tokenize(pattern.strip()))


def _flags_satisfied(flag_words, tokens) -> bool:
    short_present: set[str] = set()
    long_present: set[str] = set()
    any_flag = False
    for tok in tokens:
        if _is_short_cluster(tok):
            short_present.update(tok[1:])
            any_flag = True
        elif tok.startswith("--") and len(tok) > 2:
            long_present.add(tok.split("=", 1)[0])
            any_flag = True
        elif tok.startswith("-") and tok != "-":
            any_flag = True
    for word in flag_words:
        if word == "-":
            if not any_flag:
                return False
        elif _is_short_cluster(word):
            if not set(word[1:]) <= short_present:
                return False
        elif word.split("=", 1)[0] not in long_present:
            return False
    return True


def _head_matches(token: str, head: str) -> bool:
    base = _basename(token)
    if token == head or base == head:
        return True
    # A quoted argument ("rm -rf /") never acts as the command word.
    return base.startswith(head) and not any(c.isspace() for c in token)


def _contains_run(haystack: list[str], needle: list[str]) -> bool:
    """Find needle as a contiguous run; its last word may be a prefix."""
    if not needle:
        return True
    span = len(needle)
    exact, last = needle[:-1], needle[-1]
    for i in range(len(haystack) - span + 1):
        window = haystack[i : i + span]
        if window[:-1] == exact and window[-1].startswith(last):
            return True
    return False


def match_tokens(tokens, pattern: str) -> bool:
    """Check whether a pattern matches a token list.

    Pattern words are prefixes. The first word is located anywhere in the
    tokens as a prefix of a token's basename (/bin/rm and rm match rm,
    mkfs.ext4 matches mkfs). The rest must follow it: positional words as
    a contiguous run among the following non-flag tokens, the last of them
    a prefix of its token (/ covers /home, of=/dev/sda covers
    of=/dev/sda1), and flag words satisfied by the following flags (-rf is
    satisfied by -fr, -r -f or -rfv; a bare - by any flag). A lone -- is
    positional.
    """
    words = _pattern_words(pattern)
    if not words:
        return False
    head, rest = words[0], list(words[1:])
    flag_words = [w for w in rest if _is_flag(w)]
    positional_words = [w for w in rest if not _is_flag(w)]
    tokens = list(tokens)

    for start, tok in enumerate(tokens):
        if not _head_matches(tok, head):
            continue
        following = tokens[start + 1 :]
        positional_tokens = [t for t in following if not _is_flag(t)]
        if not _contains_run(positional_tokens, positional_words):
            continue
        if _flags_satisfied(flag_words, following):
            return True
    return False


def _raw_pattern_regex(pattern: str) -> str:
    words = _pattern_words(pattern)
    body = r"\s+".join(re.escape(w) for w in words)
    return r"(?:^|[\s;&|(`'\"$={])(?:[^\s;&|(`'\"]*/)?" + body


def _substitution_bodies(text: str) -> list[str]:
    """Extract the bodies of $(...), <(...), >(...) and `...` in text."""
    bodies: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        if text[i] == "`":
            end = text.find("`", i + 1)
            if end == -1:
                bodies.append(text[i + 1 :])
                break
            bodies.append(text[i + 1 : end])
            i = end + 1
            continue
        if text[i] in "$<>" and i + 1 < n and text[i + 1] == "(":
            group = _split_group(text[i + 1 :])
            if group is None:
                bodies.append(text[i + 2 :])
                break
            body, _rest = group
            bodies.append(body)
            i += len(body) + 3
            continue
        i += 1
    return bodies


def _inline_script(tokens: list[str]) -> str | None:
    """Return the script run by `bash -c SCRIPT` or `eval ARGS`, if any."""
    if not tokens:
        return None
    name = _basename(tokens[0])
    if name == "eval":
        return " ".join(tokens[1:])
    if name in INLINE_SHELLS:
        args = tokens[1:]
        if name == "busybox" and args and args[0] in INLINE_SHELLS:
            args = args[1:]
        for idx, arg in enumerate(args):
            if _is_short_cluster(arg) and "c" in arg[1:]:
                return args[idx + 1] if idx + 1 < len(args) else ""
    return None


def find_destructive(command: str, patterns, _depth: int = 0) -> str | None:
    """Find the first destructive pattern a command matches.

    Args:
        command: Full shell command (may be compound).
        patterns: Destructive command patterns from the policy.

    Returns:
        The matched pattern, a fail-closed reason string, or None.
    """
    if len(command) > MAX_COMMAND_LENGTH:
        log_gate("BLOCK", f"Command exceeds {MAX_COMMAND_LENGTH} chars (fail-closed)")
        return f"command longer than {MAX_COMMAND_LENGTH} characters"
    patterns = [p for p in patterns if isinstance(p, str) and p.strip()]
    if not patterns:
        return None
    if _depth > MAX_NESTING:
        return "command nesting too deep to inspect"

    for node in parse(command):
        if isinstance(node, ComplexNode):
            for pattern in patterns:
                if safe_regex_search(_raw_pattern_regex(pattern), node.text):
                    log_gate("DEBUG", f"Raw match '{pattern}' in {node.reason}: {truncate_command(node.text)}")
                    return pattern
            visible = effective_tokens(tokenize(node.text))
            for pattern in patterns:
                if match_tokens(visible, pattern):
                    return pattern
            if node.reason == "substitution_detected":
                for body in _substitution_bodies(node.text):
                    found = find_destructive(body, patterns, _depth + 1)
                    if found:
                        return found
            continue

        tokens = effective_tokens(node.tokens)
        for pattern in patterns:
            if match_tokens(tokens, pattern):
                return pattern

        script = _inline_script(tokens)
        if script:
            found = find_destructive(script, patterns, _depth + 1)
            if found:
                return found
    return None


def is_destructive(command: str, patterns) -> bool:
    """Bool form of find_destructive()."""
    return find_destructive(command, patterns) is not None
