"""Allow running the gateway with ``python -m slack_gateway``."""

from slack_gateway.cli import main

main()
