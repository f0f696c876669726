"""gitserve - run commands from isolated Git checkouts.

Tracks detached instances across invocations of a stateless CLI.
"""

__version__ = "0.1.0"
