"""
Email delivery for dunning notifications.
"""
from app.domain.services.email.email_service import EmailService, EmailResult

__all__ = ["EmailService", "EmailResult"]
