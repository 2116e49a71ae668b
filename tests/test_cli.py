"""Tests for command-line parsing and prompt resolution."""
import pytest

from ralph_wiggum.core import (
    LoopConfig,
    build_agent_command,
    build_config,
    build_prompt,
    load_outer_prompt,
    main,
    resolve_prompt,
    setup_argument_parser,
)
from ralph_wiggum.errors import UsageError
from ralph_wiggum.state import LoopState


def parse(argv):
    return setup_argument_parser().parse_intermixed_args(argv)


class TestArgumentParsing:

    def test_defaults(self):
        args = parse(["Build", "a", "thing"])
        assert args.prompt == ["Build", "a", "thing"]
        assert args.max_iterations == 0
        assert args.completion_promise == "COMPLETE"
        assert args.model == ""
        assert args.stream is True
        assert args.verbose_tools is False
        assert args.no_plugins is False
        assert args.no_commit is False

    def test_options_intermixed_with_prompt_words(self):
        args = parse(["Fix", "--max-iterations", "5", "the", "bug", "--model", "openai/gpt-5.1"])
        assert args.prompt == ["Fix", "the", "bug"]
        assert args.max_iterations == 5
        assert args.model == "openai/gpt-5.1"

    @pytest.mark.parametrize("flags,expected", [
        ([], True),
        (["--no-stream"], False),
        (["--no-stream", "--stream"], True),
        (["--stream", "--no-stream"], False),
    ])
    def test_stream_flags_last_one_wins(self, flags, expected):
        assert parse(["task"] + flags).stream is expected

    @pytest.mark.parametrize("flag", ["-f", "--prompt-file", "--file"])
    def test_prompt_file_aliases(self, flag):
        assert parse([flag, "task.md"]).prompt_file == "task.md"

    def test_unknown_option_is_usage_error(self):
        with pytest.raises(UsageError):
            parse(["task", "--bogus"])

    def test_abbreviations_are_rejected(self):
        with pytest.raises(UsageError):
            parse(["task", "--max-iter", "3"])

    def test_non_integer_max_iterations(self):
        with pytest.raises(UsageError):
            parse(["task", "--max-iterations", "many"])

    def test_missing_option_value(self):
        with pytest.raises(UsageError):
            parse(["task", "--model"])


class TestPromptResolution:

    def test_inline_words_are_joined(self):
        assert resolve_prompt(["Build", "a", "REST", "API"]) == ("Build a REST API", "")

    def test_prompt_file_option(self, tmp_path):
        prompt_file = tmp_path / "task.md"
        prompt_file.write_text("# Task\nDo the thing\n")
        assert resolve_prompt(["ignored"], str(prompt_file)) == ("# Task\nDo the thing\n", str(prompt_file))

    def test_single_positional_existing_path_is_read(self, tmp_path):
        prompt_file = tmp_path / "task.md"
        prompt_file.write_text("From file")
        assert resolve_prompt([str(prompt_file)]) == ("From file", str(prompt_file))

    def test_missing_prompt_file(self, tmp_path):
        with pytest.raises(UsageError, match="not found"):
            resolve_prompt([], str(tmp_path / "missing.md"))

    def test_directory_prompt_file(self, tmp_path):
        with pytest.raises(UsageError, match="not a file"):
            resolve_prompt([], str(tmp_path))

    def test_single_positional_directory_is_rejected(self, tmp_path):
        with pytest.raises(UsageError, match="not a file"):
            resolve_prompt([str(tmp_path)])

    def test_empty_prompt_file(self, tmp_path):
        prompt_file = tmp_path / "empty.md"
        prompt_file.write_text("  \n\n")
        with pytest.raises(UsageError, match="empty"):
            resolve_prompt([], str(prompt_file))

    def test_no_prompt(self):
        with pytest.raises(UsageError, match="No prompt provided"):
            resolve_prompt([])


class TestBuildConfig:

    def test_negative_max_iterations(self):
        with pytest.raises(UsageError, match="non-negative"):
            build_config(parse(["task", "--max-iterations", "-1"]))

    def test_blank_completion_promise(self):
        with pytest.raises(UsageError, match="--completion-promise"):
            build_config(parse(["task", "--completion-promise", "  "]))

    def test_flags_map_onto_config(self):
        config = build_config(parse([
            "task", "--max-iterations", "3", "--completion-promise", "DONE",
            "--no-stream", "--verbose-tools", "--no-plugins", "--no-commit",
        ]))
        assert config.prompt == "task"
        assert config.max_iterations == 3
        assert config.completion_promise == "DONE"
        assert config.stream_output is False
        assert config.verbose_tools is True
        assert config.disable_plugins is True
        assert config.auto_commit is False

    def test_custom_outer_prompt(self, tmp_path):
        template = tmp_path / "outer.md"
        template.write_text("Iteration {iteration_num}: {user_prompt}")
        config = build_config(parse(["task", "--outer-prompt", str(template)]))
        assert config.outer_prompt_template == "Iteration {iteration_num}: {user_prompt}"

    def test_outer_prompt_with_unknown_placeholder(self, tmp_path):
        template = tmp_path / "outer.md"
        template.write_text("{iteration_num} {feedback}")
        with pytest.raises(UsageError, match="Invalid outer prompt template"):
            build_config(parse(["task", "--outer-prompt", str(template)]))

    def test_missing_outer_prompt(self, tmp_path):
        with pytest.raises(UsageError, match="Outer prompt file not found"):
            load_outer_prompt(tmp_path / "missing.md")

    def test_agent_bin_from_environment(self, monkeypatch):
        monkeypatch.setenv("RALPH_OPENCODE_BIN", "/opt/bin/opencode-dev")
        assert LoopConfig(prompt="x").agent_bin == "/opt/bin/opencode-dev"

        monkeypatch.delenv("RALPH_OPENCODE_BIN")
        assert LoopConfig(prompt="x").agent_bin == "opencode"


class TestPromptBuilding:

    def test_limited_iterations(self):
        template = LoopConfig(prompt="x").outer_prompt_template
        prompt = build_prompt(LoopState(prompt="Write docs", max_iterations=10, iteration=2), template)

        assert prompt.startswith("# Ralph Wiggum Loop - Iteration 2")
        assert "Write docs" in prompt
        assert "<promise>COMPLETE</promise>" in prompt
        assert "## Current Iteration: 2 / 10" in prompt

    def test_unlimited_iterations(self):
        template = "Iteration {iteration_limit} for <promise>{completion_promise}</promise>\n\n"
        prompt = build_prompt(LoopState(prompt="x", completion_promise="DONE", iteration=4), template)
        assert prompt == "Iteration 4 (unlimited) for <promise>DONE</promise>"

    def test_agent_command(self):
        assert build_agent_command("do it") == ["opencode", "run", "do it"]
        assert build_agent_command("do it", "anthropic/claude-sonnet", "/bin/oc") == \
            ["/bin/oc", "run", "-m", "anthropic/claude-sonnet", "do it"]


class TestMainUsage:

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.startswith("ralph ")

    def test_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--help"])
        assert exc_info.value.code == 0
        assert "Ralph Wiggum Loop" in capsys.readouterr().out

    @pytest.mark.parametrize("argv", [
        [],
        ["task", "--bogus"],
        ["task", "--max-iterations", "x"],
        ["task", "--max-iterations", "-2"],
        ["--prompt-file", "/nonexistent/task.md"],
    ])
    def test_usage_errors_exit_with_one(self, argv, capsys, workspace):
        assert main(argv) == 1
        assert "❌ Error:" in capsys.readouterr().err
        assert not (workspace / ".opencode").exists()
