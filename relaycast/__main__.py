#!/usr/bin/env python3
"""
Enable running relaycast commands via: python -m relaycast

Usage:
    python -m relaycast serve      # Run the event log server
    python -m relaycast tail ...   # Print events for a subscriber
    python -m relaycast publish    # Publish one event
"""

import sys


def main():
    from relaycast.cli import main as cli_main

    sys.exit(cli_main())


if __name__ == "__main__":
    main()
