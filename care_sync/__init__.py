"""
Care marketplace realtime sync core

Keeps per-user counters (unread messages, pending contact requests) and the
notification feed consistent across an initial authoritative read, a live
stream of row-level change events, and optimistic local mutations.
"""

__version__ = "0.1.0"
