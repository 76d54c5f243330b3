"""Tests for running scripts through the embedded interpreter."""

import io
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from commkit.shell import (
    ArgMatcher,
    CommandCancelledError,
    CommandExecutionError,
    CommandRule,
    CommandSource,
    CommandTimeoutError,
    GoshConfig,
    GoshExecutor,
    MatchMode,
    SecurityCheckError,
    ShellError,
    ShellParseError,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX tools required")


class TestBasics:
    """Tests for output, quoting and variables."""

    def test_echo(self, run_script):
        """Test that echo writes to the script output."""
        assert run_script("echo hello") == "hello\n"

    def test_echo_flags(self, run_script):
        """Test echo -n and -e."""
        assert run_script("echo -n one; echo -e 'a\\tb'") == "onea\tb\n"

    def test_caller_vars(self, run_script):
        """Test that caller variables are visible to the script."""
        assert run_script("echo $NAME", vars={"NAME": "gosh"}) == "gosh\n"

    def test_caller_vars_stringified(self, run_script):
        """Test that non-string caller values are stringified."""
        assert run_script("echo $N $FLAG", vars={"N": 3, "FLAG": True}) == "3 true\n"

    def test_single_quotes_literal(self, run_script):
        """Test that single quotes suppress expansion."""
        assert run_script("echo '$HOME'") == "$HOME\n"

    def test_double_quotes_keep_spaces(self, run_script):
        """Test that double-quoted expansions are not split."""
        assert run_script('X="a   b"; echo "$X"; echo $X') == "a   b\na b\n"

    def test_default_value(self, run_script):
        """Test ${VAR:-default} for unset and set variables."""
        assert run_script("echo ${COMMKIT_UNSET_VAR:-default}") == "default\n"
        assert run_script("V=set; echo ${V:-default}") == "set\n"

    def test_assign_default(self, run_script):
        """Test that ${VAR:=value} assigns."""
        assert run_script("echo ${COMMKIT_NEW:=fresh}; echo $COMMKIT_NEW") == "fresh\nfresh\n"

    def test_length(self, run_script):
        """Test ${#VAR}."""
        assert run_script("V=hello; echo ${#V}") == "5\n"

    def test_append_assignment(self, run_script):
        """Test that += appends to a variable."""
        assert run_script("P=a; P+=b; echo $P") == "ab\n"

    def test_empty_script(self, run_script):
        """Test that blank scripts succeed with no output."""
        assert run_script("") == ""
        assert run_script("# nothing\n") == ""


class TestStatusAndErrexit:
    """Tests for exit statuses and sh -e behavior."""

    def test_false_fails(self, run_script):
        """Test that a failing command fails the script."""
        with pytest.raises(CommandExecutionError) as exc_info:
            run_script("false")

        assert exc_info.value.exit_status == 1
        assert str(exc_info.value) == "exit status 1"

    def test_or_recovers(self, run_script):
        """Test that || handles a failure."""
        assert run_script("false || echo recovered") == "recovered\n"

    def test_and_chain(self, run_script):
        """Test that && runs the right side only on success."""
        assert run_script("true && echo yes") == "yes\n"

    def test_errexit_stops_script(self, temp_workspace):
        """Test that a failing command stops the rest of the script."""
        out = io.StringIO()

        with pytest.raises(CommandExecutionError):
            GoshExecutor().run("echo before; false; echo never", dir=str(temp_workspace), stdout=out)

        assert out.getvalue() == "before\n"

    def test_set_plus_e(self, run_script):
        """Test that set +e lets the script continue after failures."""
        assert run_script("set +e; false; echo after") == "after\n"

    def test_negation(self, run_script):
        """Test that ! inverts the status without triggering errexit."""
        assert run_script("! false && echo negated") == "negated\n"

    def test_status_variable(self, run_script):
        """Test that $? holds the last status."""
        assert run_script("false || echo $?") == "1\n"

    def test_exit(self, run_script):
        """Test that exit ends the script with the given status."""
        with pytest.raises(CommandExecutionError) as exc_info:
            run_script("exit 3; echo never")

        assert exc_info.value.exit_status == 3
        assert run_script("echo done; exit 0; echo never") == "done\n"

    def test_command_not_found(self, run_script):
        """Test that unknown commands fail with status 127."""
        err = io.StringIO()

        with pytest.raises(CommandExecutionError) as exc_info:
            run_script("commkit-no-such-command-xyz", stderr=err)

        assert exc_info.value.exit_status == 127
        assert "commkit-no-such-command-xyz: command not found" in err.getvalue()

    def test_parse_error(self, run_script):
        """Test that syntax errors are reported before running anything."""
        with pytest.raises(ShellParseError):
            run_script('echo "unclosed')

    def test_unsupported_construct(self, run_script):
        """Test that arithmetic expansion is rejected."""
        with pytest.raises(ShellError):
            run_script("echo $((1 + 2))")


class TestControlFlow:
    """Tests for conditionals, loops, groups and functions."""

    def test_if_else(self, run_script):
        """Test if/elif/else branch selection."""
        assert run_script("if true; then echo yes; else echo no; fi") == "yes\n"
        assert run_script("if false; then echo a; elif true; then echo b; else echo c; fi") == "b\n"
        assert run_script("if false; then echo a; fi; echo end") == "end\n"

    def test_failing_condition_does_not_exit(self, run_script):
        """Test that a failing if condition does not trigger errexit."""
        assert run_script("if false; then echo a; else echo fallback; fi") == "fallback\n"

    def test_for_loop(self, run_script):
        """Test iteration over words."""
        assert run_script("for x in a b c; do echo $x; done") == "a\nb\nc\n"

    def test_for_field_splitting(self, run_script):
        """Test that unquoted expansions split into items."""
        script = 'LIST="one two"; for w in $LIST; do echo "[$w]"; done'

        assert run_script(script) == "[one]\n[two]\n"

    def test_break_and_continue(self, run_script):
        """Test loop control builtins."""
        assert run_script("for i in a b c; do echo $i; break; done") == "a\n"
        script = 'for i in a b c; do if [ "$i" = b ]; then continue; fi; echo $i; done'
        assert run_script(script) == "a\nc\n"

    def test_until_loop(self, run_script):
        """Test that until stops once the condition succeeds."""
        script = "until true; do echo never; done; echo done"

        assert run_script(script) == "done\n"

    def test_subshell_isolation(self, run_script, temp_workspace):
        """Test that subshell changes do not leak out."""
        assert run_script("X=outer; (X=inner; echo $X); echo $X") == "inner\nouter\n"
        assert run_script("(cd /; pwd); pwd") == f"/\n{temp_workspace}\n"

    def test_brace_group_shares_state(self, run_script):
        """Test that brace groups run in the current shell."""
        assert run_script("{ X=inner; }; echo $X") == "inner\n"

    def test_function_arguments(self, run_script):
        """Test that functions receive positional parameters."""
        script = 'greet() { echo "hello $1 ($#)"; }; greet world'

        assert run_script(script) == "hello world (1)\n"

    def test_function_return(self, run_script):
        """Test that return leaves the function with a status."""
        script = "check() { return 0; echo never; }; check && echo ok"

        assert run_script(script) == "ok\n"

    def test_set_positional(self, run_script):
        """Test set -- and shift."""
        assert run_script("set -- a b c; shift; echo $# $1") == "2 b\n"

    def test_quoted_all_params_keeps_fields(self, run_script):
        """Test that "$@" gives one field per positional parameter."""
        loop = 'for a in "$@"; do echo "[$a]"; done'

        assert run_script(f'f() {{ {loop}; }}; f "a b" c') == "[a b]\n[c]\n"
        assert run_script(f'f() {{ {loop}; echo end; }}; f') == "end\n"
        assert run_script('f() { for a in "x${@}y"; do echo "[$a]"; done; }; f 1 2') == "[x1]\n[2y]\n"

    def test_quoted_star_joins_params(self, run_script):
        """Test that "$*" stays a single field."""
        assert run_script('f() { for a in "$*"; do echo "[$a]"; done; }; f a b') == "[a b]\n"


class TestSubstitution:
    """Tests for command substitution."""

    def test_command_substitution(self, run_script):
        """Test that output is substituted with trailing newlines removed."""
        assert run_script('echo "got $(echo inner)"') == "got inner\n"

    def test_nested_substitution(self, run_script):
        """Test nested substitutions."""
        assert run_script("echo $(echo $(echo deep))") == "deep\n"

    def test_backticks(self, run_script):
        """Test backtick substitution."""
        assert run_script("echo `echo tick`") == "tick\n"

    def test_failed_substitution_status(self, run_script):
        """Test that a bare assignment takes the substitution status."""
        assert run_script("X=$(false) || echo failed") == "failed\n"

    def test_substitution_from_external(self, run_script, temp_workspace):
        """Test substitution of an executable's output."""
        (temp_workspace / "name.txt").write_text("content\n")

        assert run_script("echo [$(cat name.txt)]") == "[content]\n"

    def test_substitution_in_default_value(self, run_script, temp_workspace):
        """Test that substitutions inside ${X:-word} run only when needed."""
        assert run_script("echo ${COMMKIT_UNSET_X:-$(echo fallback)}") == "fallback\n"
        assert run_script('echo "${COMMKIT_UNSET_X:-got $(echo it)}"') == "got it\n"

        run_script("X=set; echo ${X:-$(touch skipped)}; : ${COMMKIT_UNSET_X:-$(touch made)}")

        assert (temp_workspace / "made").exists()
        assert not (temp_workspace / "skipped").exists()

    def test_substitution_in_default_value_is_checked(self, run_script, temp_workspace):
        """Test that commands inside ${X:-word} are checked before and during the run."""
        script = "echo ${COMMKIT_UNSET_X:-$(touch made)}"

        with pytest.raises(SecurityCheckError):
            run_script(script, GoshConfig().with_blacklist_simple("touch"))

        runtime_only = GoshConfig(precheck=False).with_blacklist(
            CommandRule("touch").with_source_filter(CommandSource.CMD_SUBST)
        )
        with pytest.raises(SecurityCheckError):
            run_script(script, runtime_only)
        assert not (temp_workspace / "made").exists()


class TestFilesAndEnvironment:
    """Tests for directories, redirections and exported variables."""

    def test_cd_and_pwd(self, run_script, temp_workspace):
        """Test that cd changes the directory for later commands."""
        (temp_workspace / "sub").mkdir()

        assert run_script("cd sub; pwd") == f"{temp_workspace / 'sub'}\n"

    def test_cd_missing_dir(self, run_script):
        """Test that cd into a missing directory fails."""
        with pytest.raises(CommandExecutionError):
            run_script("cd missing-dir")

    def test_external_runs_in_dir(self, run_script, temp_workspace):
        """Test that executables inherit the script directory."""
        (temp_workspace / "marker.txt").write_text("")

        assert run_script("ls") == "marker.txt\n"

    def test_output_redirects(self, run_script, temp_workspace):
        """Test > and >> redirections."""
        run_script("echo hello > out.txt; echo again >> out.txt")

        assert (temp_workspace / "out.txt").read_text() == "hello\nagain\n"

    def test_input_redirect(self, run_script, temp_workspace):
        """Test < redirection."""
        (temp_workspace / "in.txt").write_text("from file\n")

        assert run_script("cat < in.txt") == "from file\n"

    def test_dev_null(self, run_script):
        """Test that writes to /dev/null are discarded."""
        assert run_script("echo hidden > /dev/null; echo shown") == "shown\n"
        assert run_script("cat < /dev/null; echo eof") == "eof\n"

    def test_stderr_to_stdout(self, run_script):
        """Test 2>&1 on an external command."""
        assert run_script("sh -c 'echo err >&2' 2>&1") == "err\n"

    def test_pipeline(self, run_script):
        """Test that stage output feeds the next stage."""
        assert run_script("echo hello | cat") == "hello\n"
        assert run_script("printf 'b\\na\\n' | sort | head -n 1") == "a\n"

    def test_pipeline_status_is_last_stage(self, run_script):
        """Test that a pipeline takes the last stage's status."""
        assert run_script("false | true; echo ok") == "ok\n"

    def test_pipeline_endless_producer(self, run_script):
        """Test that a consumer can finish before an endless producer."""
        config = GoshConfig().with_kill_timeout(5)
        start = time.monotonic()

        assert run_script("yes | head -n 1", config) == "y\n"
        assert time.monotonic() - start < 4

    def test_pipeline_large_output(self, run_script):
        """Test that stage output is streamed rather than limited."""
        assert run_script("seq 1 200000 | tail -n 1") == "200000\n"

    def test_pipeline_handler_producer_stops(self, run_script):
        """Test that a handler writing to a closed pipe stops with SIGPIPE status."""

        def endless(ctx, args):
            while True:
                ctx.stdout.write("line\n")

        config = GoshConfig().with_handler("endless", endless)

        assert run_script("endless | head -n 2", config) == "line\nline\n"

    def test_glob(self, run_script, temp_workspace):
        """Test pathname expansion and unmatched patterns."""
        (temp_workspace / "a.txt").write_text("")
        (temp_workspace / "b.txt").write_text("")

        assert run_script("echo *.txt") == "a.txt b.txt\n"
        assert run_script("echo *.none") == "*.none\n"
        assert run_script("echo '*.txt'") == "*.txt\n"

    def test_export_reaches_executables(self, run_script):
        """Test that only exported variables reach child processes."""
        script = "export COMMKIT_SHOWN=yes; COMMKIT_HIDDEN=no; sh -c 'echo $COMMKIT_SHOWN[$COMMKIT_HIDDEN]'"

        assert run_script(script) == "yes[]\n"

    def test_prefix_assignment(self, run_script):
        """Test that VAR=value cmd sets the variable for that command only."""
        script = "COMMKIT_ONCE=hey sh -c 'echo $COMMKIT_ONCE'; echo [$COMMKIT_ONCE]"

        assert run_script(script) == "hey\n[]\n"


class TestSecurity:
    """Tests for pre-run and runtime rule enforcement."""

    def test_blacklist_precheck_runs_nothing(self, temp_workspace):
        """Test that a blacklisted command stops the script before it starts."""
        out = io.StringIO()
        config = GoshConfig().with_blacklist_simple("rm")

        with pytest.raises(SecurityCheckError):
            GoshExecutor(config).run("echo before; rm -rf x", dir=str(temp_workspace), stdout=out)

        assert out.getvalue() == ""

    def test_glob_blacklist(self, run_script):
        """Test that a glob rule blocks every command it matches."""
        config = GoshConfig().with_blacklist(CommandRule("rm*", MatchMode.GLOB))

        with pytest.raises(SecurityCheckError):
            run_script("rm x", config)
        with pytest.raises(SecurityCheckError):
            run_script("rmdir x", config)

    def test_argument_scoped_blacklist(self, run_script):
        """Test that an argument pattern narrows what a rule blocks."""

        def fake_rm(ctx, args):
            ctx.stdout.write(f"rm {' '.join(args)}\n")

        config = (
            GoshConfig()
            .with_handler("rm", fake_rm)
            .with_blacklist(
                CommandRule("rm").with_args_filter(ArgMatcher(0, "-r*", MatchMode.GLOB))
            )
        )

        with pytest.raises(SecurityCheckError):
            run_script("rm -rf x", config)
        assert run_script("rm --help", config) == "rm --help\n"

    def test_runtime_check_sees_expanded_name(self, run_script):
        """Test that commands built from variables are checked when run."""
        config = GoshConfig().with_blacklist_simple("rm")

        with pytest.raises(SecurityCheckError) as exc_info:
            run_script("CMD=rm; $CMD -f nothing", config)

        assert exc_info.value.command == "rm"

    def test_runtime_check_uses_source(self, run_script):
        """Test that runtime checks carry the substitution source."""
        config = GoshConfig().with_blacklist(
            CommandRule("sh").with_source_filter(CommandSource.CMD_SUBST)
        )

        assert run_script("sh -c 'echo direct'", config) == "direct\n"
        with pytest.raises(SecurityCheckError):
            run_script("echo $(sh -c 'echo nested')", config)

    def test_test_command_source_whitelist(self, run_script):
        """Test that [ carries the test source when checked at runtime."""
        config = (
            GoshConfig()
            .with_whitelist(CommandRule("[").with_source_filter(CommandSource.TEST))
            .with_whitelist_simple("echo")
            .with_whitelist_mode(True)
        )

        assert run_script("[ -n x ] && echo ok", config) == "ok\n"

    def test_test_command_source_blacklist_at_runtime(self, run_script):
        """Test that a test-scoped blacklist rule is enforced without the pre-run check."""
        config = GoshConfig(precheck=False).with_blacklist(
            CommandRule("[").with_source_filter(CommandSource.TEST)
        )

        with pytest.raises(SecurityCheckError) as exc_info:
            run_script("[ -n x ] && echo ran", config)

        assert exc_info.value.command == "["

    def test_whitelist_mode(self, run_script):
        """Test that whitelist mode only admits listed commands."""
        config = GoshConfig().with_whitelist_simple("echo", "cat").with_whitelist_mode(True)

        assert run_script("echo ok | cat", config) == "ok\n"
        with pytest.raises(SecurityCheckError):
            run_script("ls", config)

    def test_builtins_checked_before_run(self, run_script):
        """Test that builtins are covered by the pre-run check only."""
        config = GoshConfig().with_blacklist_simple("echo")

        with pytest.raises(SecurityCheckError):
            run_script("echo hi", config)

        unchecked = GoshConfig(precheck=False).with_blacklist_simple("echo")
        assert run_script("echo hi", unchecked) == "hi\n"


class TestHandlers:
    """Tests for registered in-process handlers."""

    def test_glob_handler(self, run_script):
        """Test that matching commands run the handler instead of a binary."""

        def fake_wget(ctx, args):
            ctx.stdout.write(f"fetched {ctx.name} {' '.join(args)}\n")

        config = GoshConfig().with_handler("wget*", fake_wget)

        assert run_script("wget http://example.com", config) == "fetched wget http://example.com\n"
        assert run_script("wget2 -q", config) == "fetched wget2 -q\n"

    def test_handler_reads_pipe(self, run_script):
        """Test that handlers receive piped input."""

        def upper(ctx, args):
            ctx.stdout.write(ctx.stdin.read().upper())

        config = GoshConfig().with_handler("upper", upper)

        assert run_script("echo quiet | upper", config) == "QUIET\n"

    def test_handler_environment(self, run_script, temp_workspace):
        """Test that handlers see the command environment and directory."""
        seen = {}

        def record(ctx, args):
            seen["env"] = ctx.env.get("COMMKIT_SEEN")
            seen["dir"] = ctx.dir

        config = GoshConfig().with_handler("record", record)
        run_script("COMMKIT_SEEN=1 record", config)

        assert seen == {"env": "1", "dir": str(temp_workspace)}

    def test_handler_status(self, run_script):
        """Test that a handler's status becomes the command status."""
        config = GoshConfig().with_handler("fail", lambda ctx, args: 2)

        with pytest.raises(CommandExecutionError) as exc_info:
            run_script("fail", config)

        assert exc_info.value.exit_status == 2
        assert run_script("fail || echo handled", config) == "handled\n"

    def test_handler_still_checked(self, run_script):
        """Test that handlers do not bypass the security rules."""
        config = (
            GoshConfig()
            .with_handler("wget", lambda ctx, args: 0)
            .with_blacklist_simple("wget")
        )

        with pytest.raises(SecurityCheckError):
            run_script("wget x", config)


class TestTimeoutAndCancel:
    """Tests for kill timeouts and cancellation."""

    def test_kill_timeout(self, run_script):
        """Test that slow executables are killed."""
        config = GoshConfig().with_kill_timeout(0.2)
        start = time.monotonic()

        with pytest.raises(CommandTimeoutError):
            run_script("sleep 5", config)

        assert time.monotonic() - start < 4

    def test_cancel_before_start(self, run_script):
        """Test that a set cancel event stops the script immediately."""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CommandCancelledError):
            run_script("echo never", cancel=cancel)

    def test_cancel_while_running(self, run_script):
        """Test that cancelling kills the running executable."""
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(CommandCancelledError):
                run_script("sleep 5", cancel=cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - start < 4


class TestConcurrency:
    """Tests for sharing an executor between threads."""

    def test_concurrent_runs_are_isolated(self, temp_workspace):
        """Test that concurrent scripts keep separate state."""
        executor = GoshExecutor()

        def run(value):
            out = io.StringIO()
            executor.run("X=$V; cd /; echo $X", dir=str(temp_workspace), vars={"V": value}, stdout=out)
            return out.getvalue()

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(run, [str(i) for i in range(8)]))

        assert results == [f"{i}\n" for i in range(8)]
