from oneshot.cli import cli

cli()
