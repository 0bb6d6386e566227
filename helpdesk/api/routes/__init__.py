from . import maintenance, ping, profiles, ratings, tickets

__all__ = ["maintenance", "ping", "profiles", "ratings", "tickets"]
