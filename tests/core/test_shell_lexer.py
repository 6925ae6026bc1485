#!/usr/bin/env python3
"""Tests for the shell lexer and destructive-command matching.

Run:
    python -m pytest tests/core/test_shell_lexer.py -v
"""

import json
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import _bootstrap  # noqa: F401, E402

from _gate_fixtures import REPO_ROOT  # noqa: E402
from _gate_utils import MAX_COMMAND_LENGTH  # noqa: E402
from shell_lexer import (  # noqa: E402
    CommandNode,
    ComplexNode,
    classify,
    effective_tokens,
    find_destructive,
    is_destructive,
    match_tokens,
    parse,
    segment,
    tokenize,
    unquote,
)

PATTERNS = ["rm -rf /", "git push --force", "reset --hard"]


class TestSegment(unittest.TestCase):
    def test_splits_on_all_separators(self):
        """; && || | & and newlines all end a segment."""
        self.assertEqual(segment("a; b && c || d | e & f\ng"), ["a", "b", "c", "d", "e", "f", "g"])

    def test_carriage_return_and_blank_segments(self):
        self.assertEqual(segment("a\r\nb;;  ;c"), ["a", "b", "c"])

    def test_quotes_protect_separators(self):
        cmd = "echo 'a;b' \"c && d\""
        self.assertEqual(segment(cmd), [cmd])

    def test_escaped_separator(self):
        self.assertEqual(segment("find . -exec ls {} \\; -print"), ["find . -exec ls {} \\; -print"])

    def test_redirections_do_not_split(self):
        """&>, >& and 2>&1 are redirections, not background separators."""
        for cmd in ("make &> log", "make >& log", "make 2>&1", "make &>> log"):
            with self.subTest(cmd=cmd):
                self.assertEqual(segment(cmd), [cmd])

    def test_pipe_stderr(self):
        self.assertEqual(segment("make |& tee log"), ["make", "tee log"])

    def test_nesting_depth(self):
        """Separators inside $(...), (...) and {...} stay in one segment."""
        self.assertEqual(segment("echo $(a; b) && c"), ["echo $(a; b)", "c"])
        self.assertEqual(segment("(cd x; make)"), ["(cd x; make)"])
        self.assertEqual(segment("{ a; b; }"), ["{ a; b; }"])

    def test_backticks(self):
        self.assertEqual(segment("echo `a; b`; c"), ["echo `a; b`", "c"])

    def test_empty(self):
        self.assertEqual(segment(""), [])
        self.assertEqual(segment("   "), [])


class TestClassify(unittest.TestCase):
    def test_substitutions_are_complex(self):
        for text in ("echo $(date)", "echo `date`", "diff <(a) <(b)", "tee >(gzip)"):
            with self.subTest(text=text):
                node = classify(text)
                self.assertIsInstance(node, ComplexNode)
                self.assertEqual(node.reason, "substitution_detected")

    def test_heredoc_is_complex(self):
        node = classify("cat <<EOF")
        self.assertIsInstance(node, ComplexNode)
        self.assertEqual(node.reason, "heredoc_detected")

    def test_plain_command(self):
        node = classify("ls -la 'my dir'")
        self.assertIsInstance(node, CommandNode)
        self.assertEqual(node.command, "ls")
        self.assertEqual(node.args, ("-la", "my dir"))

    def test_parse_descends_into_groups(self):
        nodes = parse("(cd /tmp; rm -rf x) && echo ok")
        commands = [n.command for n in nodes if isinstance(n, CommandNode)]
        self.assertEqual(commands, ["cd", "rm", "echo"])


class TestTokenize(unittest.TestCase):
    def test_quotes_and_escapes(self):
        self.assertEqual(tokenize("echo 'a b' \"c d\" e\\ f"), ["echo", "a b", "c d", "e f"])

    def test_redirection_operators(self):
        self.assertEqual(
            tokenize("cmd >out 2>>err <in"),
            ["cmd", ">", "out", "2>>", "err", "<", "in"],
        )
        self.assertEqual(tokenize("a&>b"), ["a", "&>", "b"])

    def test_unquote(self):
        self.assertEqual(unquote("'it'\\''s'"), "it's")
        self.assertEqual(unquote('"a\\"b"'), 'a"b')
        self.assertEqual(unquote("'$HOME'"), "$HOME")
        self.assertEqual(unquote('"keep\\n"'), "keep\\n")

    def test_ansi_c_quoting_is_decoded(self):
        self.assertEqual(unquote("$'\\x72m'"), "rm")


class TestEffectiveTokens(unittest.TestCase):
    def test_nested_wrappers(self):
        tokens = ["sudo", "env", "X=1", "nice", "-n", "5", "rm", "-rf", "/"]
        self.assertEqual(effective_tokens(tokens), ["rm", "-rf", "/"])

    def test_timeout_duration_and_assignments(self):
        self.assertEqual(effective_tokens(["A=1", "timeout", "-s", "KILL", "5", "make"]), ["make"])

    def test_keywords(self):
        self.assertEqual(effective_tokens(["then", "rm", "x"]), ["rm", "x"])

    def test_plain_command_untouched(self):
        self.assertEqual(effective_tokens(["ls", "-la"]), ["ls", "-la"])


class TestMatchTokens(unittest.TestCase):
    def test_flag_cluster_variants(self):
        for tokens in (["rm", "-rf", "/"], ["rm", "-fr", "/"], ["rm", "-r", "-f", "/"], ["rm", "-rfv", "/"]):
            with self.subTest(tokens=tokens):
                self.assertTrue(match_tokens(tokens, "rm -rf /"))

    def test_target_must_match(self):
        self.assertFalse(match_tokens(["rm", "-rf", "build"], "rm -rf /"))

    def test_words_match_as_prefixes(self):
        self.assertTrue(match_tokens(["rm", "-rf", "/tmp/build"], "rm -rf /"))
        self.assertTrue(match_tokens(["mkfs.ext4", "/dev/sda1"], "mkfs"))
        self.assertTrue(match_tokens(["/sbin/mkfs.ext4", "/dev/sda1"], "mkfs"))
        self.assertTrue(match_tokens(["dd", "if=/dev/zero", "of=/dev/sda1"], "dd of=/dev/sda"))

    def test_only_last_positional_is_prefix(self):
        self.assertTrue(match_tokens(["chmod", "-R", "777", "/srv"], "chmod -R 777 /"))
        self.assertFalse(match_tokens(["chmod", "-R", "7777", "/srv"], "chmod -R 777 /"))

    def test_quoted_argument_is_not_a_command(self):
        self.assertFalse(match_tokens(["echo", "rm -rf /"], "rm -rf /"))

    def test_double_dash_is_positional(self):
        self.assertTrue(match_tokens(["git", "checkout", "--", "."], "git checkout -- ."))
        self.assertFalse(match_tokens(["git", "checkout", "main"], "git checkout -- ."))

    def test_pattern_not_at_start(self):
        self.assertTrue(match_tokens(["git", "reset", "--hard", "HEAD~1"], "reset --hard"))

    def test_bare_dash_matches_any_flag(self):
        self.assertTrue(match_tokens(["rm", "-i", "x"], "rm -"))
        self.assertFalse(match_tokens(["rm", "x"], "rm -"))


class TestFindDestructive(unittest.TestCase):
    def test_detected_forms(self):
        """rm -rf / is caught standalone, chained, wrapped and substituted."""
        commands = [
            "rm -rf /",
            "ls && rm -rf /",
            "false || rm -rf /",
            "echo hi; rm -rf /",
            "echo hi & rm -rf /",
            "env -i rm -rf /",
            "nice -n 10 rm -rf /",
            "sudo -u root rm -rf /",
            "timeout 5 rm -rf /",
            "FOO=1 rm -rf /",
            "/bin/rm -rf /",
            "rm -r -f /",
            "echo $(rm -rf /)",
            "echo `rm -rf /`",
            "bash -c 'rm -rf /'",
            "sh -ec \"rm -rf /\"",
            "eval rm -rf /",
            "(cd /tmp; rm -rf /)",
            "if true; then rm -rf /; fi",
        ]
        for cmd in commands:
            with self.subTest(cmd=cmd):
                self.assertEqual(find_destructive(cmd, PATTERNS), "rm -rf /")

    def test_not_detected_when_quoted_or_harmless(self):
        for cmd in (
            'echo "rm -rf /"',
            "grep -r 'rm -rf /' .",
            "rm -rf build",
            "rm -f /tmp/x",
            "git push origin main",
            "ls -la",
        ):
            with self.subTest(cmd=cmd):
                self.assertIsNone(find_destructive(cmd, PATTERNS))

    def test_default_table_catches_variants(self):
        """Each variant is caught by some pattern of the shipped table."""
        policy = json.loads((REPO_ROOT / "assets" / "policy.default.json").read_text(encoding="utf-8"))
        patterns = policy["destructiveBash"]
        for cmd in (
            "rm -rf /home",
            "rm -rf ./",
            "rm -rf ~/",
            "mkfs.ext4 /dev/sda1",
            "dd if=/dev/zero of=/dev/sda1",
            "echo $(rm -rf /home)",
            "git checkout -- .",
            "sudo /sbin/mkfs.xfs /dev/nvme0n1",
        ):
            with self.subTest(cmd=cmd):
                self.assertIsNotNone(find_destructive(cmd, patterns))
        for cmd in ('echo "rm -rf /"', "git status", "ls -la", "rm -rf build"):
            with self.subTest(cmd=cmd):
                self.assertIsNone(find_destructive(cmd, patterns))

    def test_flags_anywhere_after_command(self):
        self.assertEqual(find_destructive("git push origin main --force", PATTERNS), "git push --force")
        self.assertEqual(find_destructive("git reset --hard HEAD~1", PATTERNS), "reset --hard")

    def test_empty_pattern_list(self):
        self.assertIsNone(find_destructive("rm -rf /", []))

    def test_oversized_command_fails_closed(self):
        cmd = "echo " + "a" * MAX_COMMAND_LENGTH
        self.assertTrue(is_destructive(cmd, PATTERNS))
        self.assertTrue(is_destructive(cmd, []))


if __name__ == "__main__":
    unittest.main()
