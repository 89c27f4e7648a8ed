"""Realtime relay entry point."""

from src.relay.server import main

if __name__ == "__main__":
    main()
