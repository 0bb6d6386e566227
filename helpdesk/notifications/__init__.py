from .email import TicketNotifier, TicketSummary

__all__ = ["TicketNotifier", "TicketSummary"]
