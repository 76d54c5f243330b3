"""GUI dialog handler for zenity-style commands.

Scripts can call `zenity --info --text=...` and friends without the real
zenity binary; dialogs are shown with tkinter message boxes.
"""

from __future__ import annotations

from commkit.shell.errors import ShellError
from commkit.shell.handlers import HandlerContext

DIALOG_KINDS = {
    "--error": "error",
    "--info": "info",
    "--warning": "warning",
    "--question": "question",
}


def _show_dialog(kind: str, title: str, text: str) -> bool:
    """Show a message box; returns the answer for question dialogs."""
    import tkinter
    from tkinter import messagebox

    try:
        root = tkinter.Tk()
    except tkinter.TclError as e:
        raise ShellError(f"zenity: cannot open display: {e}") from e
    root.withdraw()
    try:
        if kind == "question":
            return bool(messagebox.askyesno(title, text, parent=root))
        show = {
            "error": messagebox.showerror,
            "info": messagebox.showinfo,
            "warning": messagebox.showwarning,
        }[kind]
        show(title, text, parent=root)
        return True
    finally:
        root.destroy()


def _parse_options(args: list[str]) -> tuple[str, str]:
    text = ""
    title = ""
    positional: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith("--text="):
            text = arg.partition("=")[2]
        elif arg.startswith("--title="):
            title = arg.partition("=")[2]
        elif arg in ("--text", "--title") and i + 1 < len(args):
            if arg == "--text":
                text = args[i + 1]
            else:
                title = args[i + 1]
            i += 1
        elif not arg.startswith("--"):
            positional.append(arg)
        i += 1
    if not text and positional:
        text = positional[0]
    return text, title


def zenity_handler(ctx: HandlerContext, args: list[str]) -> int:
    """Handle `zenity <subcommand> [options]`.

    Returns 1 when a question is answered with no, 0 otherwise.
    """
    if not args:
        print("zenity: missing subcommand", file=ctx.stdout)
        return 0

    kind = DIALOG_KINDS.get(args[0])
    if kind is None:
        print(f"zenity: unknown subcommand: {args[0]}", file=ctx.stdout)
        return 0

    text, title = _parse_options(args[1:])
    answer = _show_dialog(kind, title or kind.capitalize(), text)
    return 0 if answer else 1
