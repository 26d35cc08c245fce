from awsrat.cli import run

run()
