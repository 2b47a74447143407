"""meshcall: peer-to-peer group voice and video calls over aiortc."""

__version__ = "0.1.0"
