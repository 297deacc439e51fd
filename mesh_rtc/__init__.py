"""Full-mesh WebRTC rooms built on aiortc."""

__version__ = "0.1.0"
