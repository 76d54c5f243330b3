"""commkit: embedded-shell command execution with security checking.

Usage:
    from commkit.shell import GoshConfig, GoshExecutor, run_gosh_command

    output = run_gosh_command({"NAME": "world"}, None, "echo hello $NAME")
    print(output.text)
"""

__version__ = "0.1.0"
