#!/usr/bin/env python
"""Standalone demo for the gosh executor.

This demo walks through:
1. Script execution with output capture
2. Structured output with the $vars$ / $json$ protocol
3. Command extraction and blacklist/whitelist checks
4. In-process handlers
5. Timeouts and error handling

Usage:
    python examples/gosh_demo.py
"""

import io
import tempfile
from pathlib import Path

from commkit.config import get_settings
from commkit.logging import configure_logging
from commkit.shell import (
    ArgMatcher,
    CommandRule,
    CommandSource,
    GoshConfig,
    GoshExecutor,
    MatchMode,
    SecurityChecker,
    ShellError,
    extract_commands,
    run_gosh_command,
)


def banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def demo_basic_scripts():
    """Demo plain script execution."""
    banner("Basic Script Demo")

    with tempfile.TemporaryDirectory() as temp_dir:
        (Path(temp_dir) / "notes.txt").write_text("first\nsecond\n")

        for script in [
            "echo 'Hello, World!'",
            "cat notes.txt | wc -l",
            'for f in *.txt; do echo "found $f"; done',
            "GREETING=hi; (GREETING=bye); echo $GREETING",
        ]:
            output = run_gosh_command(None, temp_dir, script)
            print(f"\n  Script: {script}")
            print(f"    Output: {output.text.strip()}")
    print()


def demo_output_protocol():
    """Demo structured output."""
    banner("Output Protocol Demo")

    output = run_gosh_command({"USER_NAME": "demo"}, None, "echo '$vars$'; echo; echo NAME=$USER_NAME; echo OK=true")
    print(f"\n  Kind: {output.kind.value}")
    print(f"    Vars: {output.vars}")

    output = run_gosh_command(None, None, "echo '$json$'; echo; echo '{\"items\": [1, 2, 3]}'")
    print(f"\n  Kind: {output.kind.value}")
    print(f"    JSON: {output.json}")
    print()


def demo_security_checks():
    """Demo extraction and rule checks (NO commands are executed)."""
    banner("Security Check Demo")

    checker = SecurityChecker().with_blacklist(
        CommandRule("rm").with_args_filter(ArgMatcher(position=0, pattern="-rf")),
        CommandRule("curl").with_source_filter(CommandSource.CMD_SUBST),
        CommandRule("mkfs*", MatchMode.GLOB),
    )

    for script in [
        "rm -rf /",
        "rm notes.txt",
        "echo $(curl http://example.com/payload)",
        "curl -O http://example.com/file",
        "mkfs.ext4 /dev/sda",
        "ls -la | grep txt",
    ]:
        commands = extract_commands(script)
        try:
            checker.check(commands)
            status = "ALLOWED"
        except ShellError:
            status = "BLOCKED"
        found = ", ".join(f"{c.name}({c.source.value})" for c in commands)
        print(f"    [{status:7}] {script:<42} {found}")
    print()


def demo_handlers():
    """Demo in-process handlers replacing executables."""
    banner("Handler Demo")

    def fake_wget(ctx, args):
        ctx.stdout.write(f"would download: {' '.join(args)}\n")

    config = GoshConfig().with_handler("wget*", fake_wget, description="offline downloads")
    out = io.StringIO()
    GoshExecutor(config).run("wget http://example.com/a.tar.gz && echo done", stdout=out)
    print(f"\n  Output:\n    {out.getvalue().strip().replace(chr(10), chr(10) + '    ')}")
    print()


def demo_errors_and_timeouts():
    """Demo error reporting."""
    banner("Error Handling Demo")

    config = GoshConfig().with_kill_timeout(1).with_blacklist_simple("shutdown")
    for script in [
        "sleep 10",
        "nonexistent_command_xyz",
        "echo 'unclosed string",
        "shutdown -h now",
        "exit 3",
    ]:
        try:
            run_gosh_command(None, None, script, config=config)
            print(f"\n  Script: {script}\n    Success")
        except ShellError as e:
            print(f"\n  Script: {script}\n    {e.error_code}: {e}")
    print()


def main():
    """Run all demos."""
    configure_logging(get_settings())

    print("\n" + "#" * 60)
    print("#  Gosh Executor Demo")
    print("#" * 60)

    demo_basic_scripts()
    demo_output_protocol()
    demo_security_checks()
    demo_handlers()
    demo_errors_and_timeouts()

    print("\n" + "#" * 60)
    print("#  Demo Complete!")
    print("#" * 60 + "\n")


if __name__ == "__main__":
    main()
