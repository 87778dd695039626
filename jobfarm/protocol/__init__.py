"""
Filesystem protocol shared by the dispatcher and out-of-process workers.
"""

from jobfarm.protocol.files import JobFileProtocol

__all__ = ["JobFileProtocol"]
