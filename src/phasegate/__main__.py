from phasegate.cli.app import app

app()
