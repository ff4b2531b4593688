#!/usr/bin/env python3
"""
Main entry point for the inbox triage agent.

    python main.py sweep poll
    python main.py work
    python main.py sweep evening

See --help for available commands. Installed as the `triage-agent` console
script as well.
"""
import logging
import signal
import sys

from triage_agent.cli import cli


def _setup_signal_handlers() -> None:
    """Exit cleanly on SIGTERM (SIGINT already raises KeyboardInterrupt)."""
    def signal_handler(signum, frame):
        signal_name = signal.Signals(signum).name
        logging.getLogger('triage_agent').warning(f"Received {signal_name}, shutting down...")
        sys.exit(128 + signum)

    if hasattr(signal, 'SIGTERM'):
        signal.signal(signal.SIGTERM, signal_handler)


def main() -> None:
    _setup_signal_handlers()
    cli(obj={})


if __name__ == "__main__":
    main()
