"""
Notifier Service
Adapter pattern for billing notifications (dev logging vs production SMTP)
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


@dataclass
class NotificationTemplate:
    """Subject and plain-text body with str.format placeholders"""
    subject: str
    body: str


TEMPLATES: Dict[str, NotificationTemplate] = {
    "grace_period_reminder_day_1": NotificationTemplate(
        subject="Payment failed for invoice {invoice_id}",
        body=(
            "We could not collect payment of {amount} {currency} for invoice {invoice_id}.\n"
            "Your account stays fully active until {grace_period_end}.\n"
            "Add funds or update your payment method: {billing_url}\n"
        ),
    ),
    "grace_period_reminder_day_7": NotificationTemplate(
        subject="Reminder: invoice {invoice_id} is still unpaid",
        body=(
            "Invoice {invoice_id} for {amount} {currency} is still unpaid.\n"
            "You have {days_remaining} days left before your account is suspended.\n"
            "Pay now: {billing_url}\n"
        ),
    ),
    "grace_period_reminder_day_13": NotificationTemplate(
        subject="Final notice: your account will be suspended tomorrow",
        body=(
            "Invoice {invoice_id} for {amount} {currency} is overdue.\n"
            "Your account will be suspended on {grace_period_end} unless payment is received.\n"
            "Pay now: {billing_url}\n"
        ),
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_template(template_id: str, variables: Dict[str, Any]) -> NotificationTemplate:
    """Fill a template; unknown placeholders are left as-is"""
    template = TEMPLATES.get(template_id)
    if template is None:
        raise ValueError(f"Unknown notification template: {template_id}")
    values = _SafeDict({k: v for k, v in variables.items() if v is not None})
    return NotificationTemplate(
        subject=template.subject.format_map(values),
        body=template.body.format_map(values),
    )


class Notifier(ABC):
    """
    Abstract notifier interface
    
    Implementations:
    - LogNotifier: Logs notifications (development, tests)
    - SMTPNotifier: Sends email via SMTP (production)
    """
    
    @abstractmethod
    def send(self, recipient: str, template_id: str, variables: Dict[str, Any]) -> bool:
        """
        Send a notification
        
        Args:
            recipient: Destination address
            template_id: Template identifier
            variables: Template variables
        
        Returns:
            True if handed off successfully, False otherwise
        """
        pass


class LogNotifier(Notifier):
    """Development notifier - logs instead of sending"""
    
    def send(self, recipient: str, template_id: str, variables: Dict[str, Any]) -> bool:
        message = render_template(template_id, variables)
        logger.info("=" * 60)
        logger.info("NOTIFICATION (DEV MODE - NOT ACTUALLY SENT)")
        logger.info(f"To: {recipient}")
        logger.info(f"Template: {template_id}")
        logger.info(f"Subject: {message.subject}")
        logger.info("-" * 60)
        logger.info(message.body)
        logger.info("=" * 60)
        return True


class SMTPNotifier(Notifier):
    """SMTP notifier for production"""
    
    def __init__(self, host: str, port: int, user: str, password: str, from_address: str, use_tls: bool = True):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_address = from_address
        self.use_tls = use_tls
    
    def send(self, recipient: str, template_id: str, variables: Dict[str, Any]) -> bool:
        """Send email via SMTP"""
        import smtplib
        from email.mime.text import MIMEText
        
        message = render_template(template_id, variables)
        msg = MIMEText(message.body, "plain")
        msg["Subject"] = message.subject
        msg["From"] = self.from_address
        msg["To"] = recipient
        
        try:
            server = smtplib.SMTP(self.host, self.port, timeout=10)
            try:
                if self.use_tls:
                    server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send {template_id} to {recipient}: {e}", exc_info=True)
            return False
        
        logger.info(f"✓ Notification {template_id} sent to {recipient}")
        return True


# Singleton instance
_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    """
    Get or create notifier singleton
    
    Returns SMTPNotifier when SMTP is configured, LogNotifier otherwise
    """
    global _notifier
    
    if _notifier is None:
        from ..config import config
        
        if config.SMTP_HOST and config.SMTP_USER and config.SMTP_PASSWORD:
            logger.info(f"✓ Notifier: SMTP ({config.SMTP_HOST}:{config.SMTP_PORT})")
            _notifier = SMTPNotifier(
                host=config.SMTP_HOST,
                port=config.SMTP_PORT,
                user=config.SMTP_USER,
                password=config.SMTP_PASSWORD,
                from_address=config.SMTP_FROM_ADDRESS,
            )
        else:
            logger.info("Notifier: LogNotifier (logs to console only - expected in development)")
            _notifier = LogNotifier()
    
    return _notifier
