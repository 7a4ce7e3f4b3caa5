from __future__ import annotations

from typing import IO, Any

import click


class RunnerError(click.ClickException):
    """Base error for a run that ends before the user command reports a status."""

    exit_code = 1

    def show(self, file: IO[Any] | None = None) -> None:
        click.secho(f"Error: {self.format_message()}", file=file, err=file is None, fg="red")


class ConfigurationError(RunnerError):
    exit_code = 2


class BuildError(RunnerError):
    exit_code = 3


class LaunchError(RunnerError):
    exit_code = 4


class JobAborted(RunnerError):
    def __init__(self, signum: int) -> None:
        signum = int(signum)
        super().__init__(f"Interrupted by signal {signum}")
        self.signum = signum
        self.exit_code = 128 + signum
