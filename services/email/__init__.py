"""
Outgoing mail: SMTP sender and message templates.
"""
from .sender import (
    EMAIL_TEMPLATES,
    render_template,
    send_email,
    send_template,
)

__all__ = [
    "EMAIL_TEMPLATES",
    "render_template",
    "send_email",
    "send_template",
]
