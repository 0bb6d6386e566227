"""Customer support helpdesk service."""
