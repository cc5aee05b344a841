"""courier: durable outbox dispatch for messaging channels."""

__version__ = "1.0.0"
