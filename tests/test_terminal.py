import pytest

from warden.terminal.ansi import strip_ansi, tail_lines
from warden.terminal.classifier import (
    classify,
    detect_task_completion,
    extract_stats,
    has_ready_prompt,
    summarize_output,
)
from warden.terminal.profiles import CLAUDE, CODEX, TerminalStatus, get_profile


class TestStripAnsi:
    def test_removes_color_codes(self):
        assert strip_ansi("\x1b[32mgreen\x1b[0m text") == "green text"

    def test_removes_osc_title(self):
        assert strip_ansi("\x1b]0;claude\x07ready") == "ready"

    def test_normalizes_crlf_and_control_chars(self):
        assert strip_ansi("line one\r\nline two\x08") == "line one\nline two"

    def test_tail_lines_skips_blank(self):
        assert tail_lines("a\n\n  \nb\nc\n", 2) == ["b", "c"]


class TestClassify:
    def test_ellipsis_is_working(self):
        assert classify("Reticulating splines...", CLAUDE) == TerminalStatus.WORKING

    def test_spinner_is_working(self):
        assert classify("⠋ Scanning project", CLAUDE) == TerminalStatus.WORKING

    def test_tool_call_is_working(self):
        assert classify("⏺ Write(src/app.py)", CLAUDE) == TerminalStatus.WORKING

    def test_confirmation_is_waiting(self):
        assert classify("Overwrite existing file? (y/n)", CLAUDE) == TerminalStatus.WAITING

    def test_visible_prompt_is_waiting(self):
        assert classify("All files written.\n> ", CLAUDE) == TerminalStatus.WAITING

    def test_blank_tail_is_idle(self):
        assert classify("\n\n   \n", CLAUDE) == TerminalStatus.IDLE

    def test_plain_text_is_unknown(self):
        assert classify("Here is a summary of the changes", CLAUDE) == TerminalStatus.UNKNOWN

    def test_working_beats_prompt(self):
        text = "> \n⠙ Analyzing dependencies"
        assert classify(text, CLAUDE) == TerminalStatus.WORKING

    def test_ansi_is_ignored(self):
        assert classify("\x1b[1mAllow?\x1b[0m", CLAUDE) == TerminalStatus.WAITING

    def test_codex_prompt(self):
        assert classify("Ready.\n› ", CODEX) == TerminalStatus.WAITING


class TestReadyPrompt:
    def test_prompt_is_ready(self):
        assert has_ready_prompt("Welcome to Claude Code\n\n> ", CLAUDE)

    def test_trust_question_is_not_ready(self):
        assert not has_ready_prompt("Do you trust this folder? (y/n)\n> ", CLAUDE)

    def test_no_prompt(self):
        assert not has_ready_prompt("Loading configuration", CLAUDE)


class TestExtractStats:
    def test_counts_tool_calls_and_errors(self):
        text = "Write(src/a.py)\nEdit(src/b.py)\nRead(README.md)\nError: module not found"
        stats = extract_stats(text)
        assert stats["files_written"] == 2
        assert stats["files_read"] == 1
        assert stats["errors_encountered"] == 1

    def test_takes_highest_test_counts(self):
        stats = extract_stats("5 passed\n12 passed, 1 failed")
        assert stats["tests_passed"] == 12
        assert stats["tests_failed"] == 1

    def test_absent_counters_are_omitted(self):
        assert extract_stats("nothing interesting") == {}


class TestTaskCompletion:
    def test_question_after_work(self):
        assert detect_task_completion("Created app.py and tests.\nIs there anything else you need?")

    def test_question_without_work(self):
        assert not detect_task_completion("Hello! Is there anything else?")

    def test_work_without_question(self):
        assert not detect_task_completion("Created app.py")


class TestSummarize:
    def test_short_output_unchanged(self):
        assert summarize_output("short", max_chars=100) == "short"

    def test_long_output_keeps_head_tail_and_errors(self):
        lines = [f"line {i} " + "x" * 40 for i in range(200)]
        lines[100] = "ERROR: database connection refused"
        summary = summarize_output("\n".join(lines), max_chars=4000)

        assert "line 0 " in summary
        assert "line 199 " in summary
        assert "ERROR: database connection refused" in summary
        assert "lines summarized" in summary
        assert "line 50 " not in summary


class TestProfiles:
    def test_lookup(self):
        assert get_profile("codex") is CODEX

    def test_unknown_profile(self):
        with pytest.raises(ValueError, match="Unknown CLI profile"):
            get_profile("vim")
