"""
A library of useful, general values and functions for the harness and its scripts.
"""

from contextlib import contextmanager
from os import environ
from subprocess import DEVNULL, PIPE, Popen
from typing import Mapping, Optional

from rich.console import Console

console = Console(stderr=True, highlight=False, soft_wrap=True)


@contextmanager
def step(status: str):
    """
    Display a status message with an animated spinner for the life of this context.

    On success, keep the status message with a check mark.

    On failure, keep the status message with an X mark, and immediately print the exception text.
    The exception is also re-raised, but there may be cleanup actions that occur first.
    """
    try:
        with console.status(status):
            yield
    except Exception as e:
        console.print(f'[red]✘[/red] {status}')
        console.print(e, style='red', markup=False)
        raise e
    console.print(f'[green]✔[/green] {status}')


def warn(message: str):
    """Report a problem that should not stop whatever is currently happening."""
    console.print(message, style='yellow', markup=False)


def runWithStderr(*args, env: Optional[Mapping[str, str]] = None):
    """
    Run the command defined by the specified arguments.

    Any output written to stdout is discarded.
    Any output written to stderr is displayed in yellow.
    If the command exits with a non-zero status, an exception is raised.

    Variables in `env` are added on top of the current environment.
    """
    processEnv = None if env is None else environ | dict(env)
    process = Popen(args, stderr=PIPE, stdout=DEVNULL, text=True, env=processEnv)

    for line in process.stderr:
        console.print(line.rstrip(), style='yellow', markup=False)

    status = process.wait()
    if status != 0:
        raise RuntimeError(codeMessage(status, 'Command failed'))


def codeMessage(code: int | str, message: str) -> str:
    """
    Format a code-message pair in a standard way.

    These kinds of pairs are common in error handling,
    like HTTP response codes / messages,
    command exit status / outputs,
    or many types of Python exceptions which include "status code" fields.
    """
    return f'[{code}] {message}'
