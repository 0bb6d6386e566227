from .streaming import TicketEventStreamer

__all__ = ["TicketEventStreamer"]
