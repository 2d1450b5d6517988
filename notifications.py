"""
Transactional email.

Sending is best-effort: messages are rendered up front, handed to FastAPI
background tasks and delivered after the response with aiosmtplib. When SMTP
is not configured the send is skipped with a warning.
"""

import logging
from email.message import EmailMessage
from typing import Any, Optional

import aiosmtplib
from fastapi import BackgroundTasks
from jinja2 import DictLoader, Environment

import settings

logger = logging.getLogger(__name__)

SHOP_NAME = "EloraVista"

TEMPLATES = {
    "base.html": """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="color: #233e89; border-bottom: 3px solid #233e89; padding-bottom: 10px;">{% block title %}{% endblock %}</h2>
    {% block content %}{% endblock %}
    <p>Best regards,<br>{{ shop }} Team</p>
  </div>
</body>
</html>""",
    "verify_email.html": """{% extends "base.html" %}
{% block title %}Welcome to {{ shop }}!{% endblock %}
{% block content %}
<p>Hi {{ name }},</p>
<p>Please verify your email by clicking the link below:</p>
<p><a href="{{ url }}">Verify Email</a></p>
<p>This link expires in 24 hours. If you didn't create an account, please ignore this email.</p>
{% endblock %}""",
    "reset_password.html": """{% extends "base.html" %}
{% block title %}Password reset{% endblock %}
{% block content %}
<p>Hi {{ name }},</p>
<p>You asked to reset your password. Use the link below within the next hour:</p>
<p><a href="{{ url }}">Reset Password</a></p>
<p>If you didn't request this, you can ignore this email.</p>
{% endblock %}""",
    "order_confirmation.html": """{% extends "base.html" %}
{% block title %}Order Confirmation{% endblock %}
{% block content %}
<p>Hi {{ name }},</p>
<p>Thank you for your order! Your order #{{ order.id }} has been confirmed.</p>
<ul>
{% for item in order.order_items %}  <li>{{ item.name }} x {{ item.quantity }} - &pound;{{ "%.2f"|format(item.price) }}</li>
{% endfor %}</ul>
<p><strong>Total: &pound;{{ "%.2f"|format(order.total_price) }}</strong></p>
<p>We'll send you a shipping notification when your order is on its way.</p>
{% endblock %}""",
    "admin_new_order.html": """{% extends "base.html" %}
{% block title %}New Order Received{% if guest %} [GUEST ORDER]{% endif %}{% endblock %}
{% block content %}
<p><strong>Order ID:</strong> {{ order.id }}</p>
<p><strong>Customer:</strong> {{ name }} ({{ email or "N/A" }}){% if guest %} <em>(Guest)</em>{% endif %}</p>
<p><strong>Payment Method:</strong> {{ order.payment_method }}</p>
<ul>
{% for item in order.order_items %}  <li>{{ item.name }} x {{ item.quantity }} - &pound;{{ "%.2f"|format(item.quantity * item.price) }}</li>
{% endfor %}</ul>
<p><strong>Total: &pound;{{ "%.2f"|format(order.total_price) }}</strong></p>
{% set a = order.shipping_address %}
<p>{{ a.street }}, {{ a.city }}, {{ a.state }} {{ a.zip_code }}, {{ a.country }}<br>Phone: {{ a.phone }}</p>
{% endblock %}""",
    "order_shipped.html": """{% extends "base.html" %}
{% block title %}Order Shipped!{% endblock %}
{% block content %}
<p>Hi {{ name }},</p>
<p>Your order #{{ order.id }} has been shipped and is on its way to you!</p>
{% endblock %}""",
    "order_delivered.html": """{% extends "base.html" %}
{% block title %}Order Delivered!{% endblock %}
{% block content %}
<p>Hi {{ name }},</p>
<p>Your order #{{ order.id }} has been delivered. Thank you for shopping with {{ shop }}!</p>
{% endblock %}""",
    "contact_admin.html": """{% extends "base.html" %}
{% block title %}New Contact Form Submission{% endblock %}
{% block content %}
<p><strong>From:</strong> {{ contact.name }}</p>
<p><strong>Email:</strong> <a href="mailto:{{ contact.email }}">{{ contact.email }}</a></p>
<p><strong>Subject:</strong> {{ contact.subject }}</p>
<p style="white-space: pre-wrap;">{{ contact.message }}</p>
{% endblock %}""",
    "contact_confirmation.html": """{% extends "base.html" %}
{% block title %}Thank You for Contacting {{ shop }}!{% endblock %}
{% block content %}
<p>Hi {{ contact.name }},</p>
<p>We've received your message and will get back to you as soon as possible, usually within 24-48 hours.</p>
<p style="white-space: pre-wrap;">{{ contact.message }}</p>
{% endblock %}""",
    "contact_reply.html": """{% extends "base.html" %}
{% block title %}Reply from {{ shop }}{% endblock %}
{% block content %}
<p>Hi {{ contact.name }},</p>
<p>Thank you for contacting us. Here's our response to your inquiry:</p>
<p style="white-space: pre-wrap;">{{ reply }}</p>
<p><strong>Your original message:</strong></p>
<p style="color: #666; font-style: italic;">{{ contact.message }}</p>
{% endblock %}""",
}

env = Environment(loader=DictLoader(TEMPLATES), autoescape=True)


def render(template: str, **context: Any) -> str:
    return env.get_template(template).render(shop=SHOP_NAME, **context)


class Mailer:
    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        sender: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender or username

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    def build_message(self, to: str, subject: str, html: str, text: str = "") -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text or "This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")
        return message

    async def send(self, to: str, subject: str, html: str, text: str = "") -> None:
        if not self.configured:
            logger.warning("SMTP not configured, skipping email to=%s subject=%r", to, subject)
            return
        try:
            await aiosmtplib.send(
                self.build_message(to, subject, html, text),
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                use_tls=self.use_tls,
                start_tls=not self.use_tls,
            )
        except (aiosmtplib.SMTPException, OSError):
            logger.exception("Email send failed to=%s subject=%r", to, subject)
            return
        logger.info("Email sent to=%s subject=%r", to, subject)


_mailer = Mailer(
    host=settings.EMAIL_HOST,
    port=settings.EMAIL_PORT,
    username=settings.EMAIL_USER,
    password=settings.EMAIL_PASS,
    use_tls=settings.EMAIL_SECURE,
    sender=settings.EMAIL_FROM,
)


def get_mailer() -> Mailer:
    return _mailer


def queue_email(
    background_tasks: BackgroundTasks,
    mailer: Mailer,
    to: Optional[str],
    subject: str,
    template: str,
    **context: Any,
) -> bool:
    """Render now, deliver after the response. Returns False when there is no recipient."""
    if not to:
        return False
    background_tasks.add_task(mailer.send, to, subject, render(template, **context))
    return True

