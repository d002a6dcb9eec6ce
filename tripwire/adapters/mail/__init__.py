"""Mail transport adapters."""

from .smtp import SMTPMailDelivery

__all__ = ["SMTPMailDelivery"]
