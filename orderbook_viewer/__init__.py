"""
Order Book Viewer - live local mirror of an exchange order book over WebSocket.

Architecture:
- datafeed/: WebSocket transport and the local order book (snapshot + deltas)
- engine/: Connection state machine and view calculation
- ui/: Order book ladder (Textual TUI)
"""

__version__ = "0.1.0"
