from feed_personalizer.cli import cli

cli()
