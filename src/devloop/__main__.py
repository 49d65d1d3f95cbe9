"""Command line entry point for devloop."""

from typing import Annotated

from typer import Exit, Option, Typer

from devloop import __version__
from devloop.cli.dev.commands import dev_app
from devloop.utils import console

app = Typer(
    name="devloop",
    help="Keep a development server in sync with an incremental build",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"devloop {__version__}")
        raise Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show the version and exit",
        ),
    ] = False,
):
    """devloop command line interface."""


app.add_typer(dev_app)


if __name__ == "__main__":
    app()
