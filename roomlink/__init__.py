"""roomlink: room-code rendezvous and peer mesh negotiation over WebRTC."""

__version__ = "0.1.0"
