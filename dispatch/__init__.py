"""
Alert dispatch core.

Claims due events, fans each one out to the subscribers that want it, sends
instant notifications immediately and queues the rest for per-subscriber
digests, then flushes digests whose send window is open.
"""

from dispatch.dispatcher import Dispatcher, DispatchReport

__all__ = ["Dispatcher", "DispatchReport"]
