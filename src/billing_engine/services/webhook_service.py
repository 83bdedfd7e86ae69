"""
Webhook Service

Verifies, deduplicates and applies payment gateway events.

Handlers only touch invoice status/payment fields and billing account
status/mandate/payment-method fields. They never read or write usage data.
Each event's changes and its idempotency record commit in one transaction,
so a redelivered event is either fully applied once or not at all.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from fastapi import status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models.billing_account import BillingAccount, BillingStatus, MandateStatus
from ..db.models.idempotency import IdempotencyScope
from ..db.models.invoice import Invoice, InvoiceStatus
from ..exceptions import WebhookRejected
from .account_service import BillingAccountService
from .audit_log_service import AuditLogService, BillingAuditEvent
from .idempotency_registry import IdempotencyRegistry, webhook_event_id
from .payment_gateway import PaymentGateway, get_payment_gateway

logger = logging.getLogger(__name__)

SUBSCRIPTION_HALTED_REASON = "Grace period expired - subscription halted"


class WebhookStatus:
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    ERROR_LOGGED = "error_logged"


@dataclass
class WebhookOutcome:
    status: str
    event_id: str
    event_type: str
    message: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": True,
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "message": self.message,
        }


def _from_unix(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.utcfromtimestamp(int(value))


class WebhookService:
    """Gateway webhook ingestion"""
    
    def __init__(self, db: Session, gateway: Optional[PaymentGateway] = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.accounts = BillingAccountService(db)
        self.audit = AuditLogService(db)
        self.registry = IdempotencyRegistry(db)
        self._handlers: Dict[str, Callable[[Dict[str, Any], str, datetime], Optional[str]]] = {
            "payment.captured": self._handle_payment_captured,
            "payment.failed": self._handle_payment_failed,
            "payment.authorized": self._handle_payment_authorized,
            "subscription.charged": self._handle_subscription_charged,
            "subscription.halted": self._handle_subscription_halted,
            "subscription.cancelled": self._handle_subscription_cancelled,
            "refund.processed": self._handle_refund_processed,
            "refund.failed": self._handle_refund_failed,
            "token.confirmed": self._handle_token_confirmed,
            "token.rejected": self._handle_token_rejected,
            "token.cancelled": self._handle_token_cancelled,
        }
    
    def handle_webhook(self, raw_body: bytes, signature: Optional[str], now: Optional[datetime] = None) -> WebhookOutcome:
        """
        Verify and apply one webhook delivery
        
        Raises:
            WebhookRejected: 400 for a missing signature or malformed body,
                401 for a signature mismatch
        """
        now = now or datetime.utcnow()
        
        if not signature:
            logger.warning("[SECURITY] Webhook rejected: missing signature header")
            raise WebhookRejected("Missing webhook signature", code="MISSING_SIGNATURE")
        
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            logger.warning("[SECURITY] Webhook rejected: invalid signature")
            raise WebhookRejected(
                "Invalid webhook signature",
                status_code=status.HTTP_401_UNAUTHORIZED,
                code="INVALID_SIGNATURE"
            )
        
        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                raise ValueError("Webhook body must be a JSON object")
            event = self.gateway.parse_webhook_event(payload)
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(f"Webhook rejected: malformed payload ({e})")
            raise WebhookRejected(f"Malformed webhook payload: {e}", code="MALFORMED_PAYLOAD")
        
        event_type = event["event_type"]
        event_id = webhook_event_id(event_type, event["created_at"], event["entity_id"])
        
        if self.registry.is_processed(event_id, IdempotencyScope.WEBHOOK):
            logger.info(f"Webhook {event_id} already processed")
            return WebhookOutcome(WebhookStatus.ALREADY_PROCESSED, event_id, event_type)
        
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event type: {event_type}")
            return WebhookOutcome(WebhookStatus.IGNORED, event_id, event_type)
        
        try:
            message = handler(event, event_id, now)
            self.registry.add(event_id, IdempotencyScope.WEBHOOK, {"event_type": event_type, "result": message})
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if self.registry.is_processed(event_id, IdempotencyScope.WEBHOOK):
                logger.info(f"Webhook {event_id} was processed by a concurrent delivery")
                return WebhookOutcome(WebhookStatus.ALREADY_PROCESSED, event_id, event_type)
            logger.error(f"Webhook {event_id} ({event_type}) failed", exc_info=True)
            return WebhookOutcome(WebhookStatus.ERROR_LOGGED, event_id, event_type, "integrity_error")
        except Exception as e:
            # Not recorded: the gateway's redelivery gets another attempt
            self.db.rollback()
            logger.error(f"Webhook {event_id} ({event_type}) failed: {e}", exc_info=True)
            return WebhookOutcome(WebhookStatus.ERROR_LOGGED, event_id, event_type, str(e))
        
        logger.info(f"Webhook {event_id} processed: {message}")
        return WebhookOutcome(WebhookStatus.PROCESSED, event_id, event_type, message)
    
    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    
    def _find_account(self, event: Dict[str, Any]) -> Optional[BillingAccount]:
        notes = event["notes"]
        account_id = notes.get("billing_account_id")
        if account_id:
            try:
                return self.db.query(BillingAccount).filter(BillingAccount.id == int(account_id)).first()
            except (TypeError, ValueError):
                logger.warning(f"Webhook note billing_account_id is not numeric: {account_id!r}")
        customer_id = event["entity"].get("customer_id")
        if customer_id:
            return self.accounts.find_by_gateway_customer(customer_id)
        return None
    
    def _find_invoice(self, event: Dict[str, Any], account: BillingAccount) -> Optional[Invoice]:
        invoice_number = event["notes"].get("invoice_id")
        if invoice_number:
            return self.db.query(Invoice).filter(
                Invoice.invoice_number == invoice_number,
                Invoice.billing_account_id == account.id
            ).first()
        if event["entity_type"] != "payment":
            return None
        payment_id = event["entity"].get("id")
        if payment_id:
            invoice = self.db.query(Invoice).filter(
                Invoice.gateway_payment_id == payment_id,
                Invoice.billing_account_id == account.id
            ).first()
            if invoice is not None:
                return invoice
        order_id = event["entity"].get("order_id")
        if order_id:
            return self.db.query(Invoice).filter(
                Invoice.gateway_order_id == order_id,
                Invoice.billing_account_id == account.id
            ).first()
        return None
    
    def _require_account(self, event: Dict[str, Any]) -> Optional[BillingAccount]:
        account = self._find_account(event)
        if account is None:
            logger.warning(f"No billing account found for webhook {event['event_type']} ({event['entity_id']})")
        return account
    
    # ------------------------------------------------------------------
    # Payment events
    # ------------------------------------------------------------------
    
    def _handle_payment_captured(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        payment = event["entity"]
        
        invoice = self._find_invoice(event, account)
        if invoice is not None and invoice.status != InvoiceStatus.PAID.value:
            invoice.status = InvoiceStatus.PAID.value
            invoice.paid_at = now
            invoice.gateway_payment_id = payment.get("id")
            invoice.failure_reason = None
            self.audit.log(
                BillingAuditEvent.INVOICE_PAID,
                billing_account_id=account.id,
                details={"invoice_id": invoice.invoice_number, "payment_id": payment.get("id")},
                gateway_event_id=event_id,
                commit=False
            )
        
        self.audit.log(
            BillingAuditEvent.PAYMENT_SUCCEEDED,
            billing_account_id=account.id,
            details={
                "payment_id": payment.get("id"),
                "amount": payment.get("amount"),
                "currency": payment.get("currency"),
                "invoice_id": invoice.invoice_number if invoice else None,
            },
            gateway_event_id=event_id,
            commit=False
        )
        
        self.accounts.restore_after_payment(
            account,
            reason="Payment captured",
            now=now,
            gateway_event_id=event_id,
            details={"payment_id": payment.get("id")},
            commit=False
        )
        return "payment_captured"
    
    def _handle_payment_failed(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        payment = event["entity"]
        reason = payment.get("error_description") or payment.get("error_code") or "Payment failed"
        
        invoice = self._find_invoice(event, account)
        if invoice is not None and invoice.status == InvoiceStatus.PAID.value:
            # A later success already settled this invoice
            logger.info(f"Ignoring payment failure for paid invoice {invoice.invoice_number}")
            return "invoice_already_paid"
        
        if invoice is not None:
            invoice.status = InvoiceStatus.FAILED.value
            invoice.retry_count = (invoice.retry_count or 0) + 1
            invoice.last_attempt_at = now
            invoice.failure_reason = reason
            invoice.gateway_payment_id = None
            invoice.gateway_debit_submitted_at = None
            self.audit.log(
                BillingAuditEvent.INVOICE_FAILED,
                billing_account_id=account.id,
                details={
                    "invoice_id": invoice.invoice_number,
                    "retry_count": invoice.retry_count,
                    "reason": reason,
                },
                gateway_event_id=event_id,
                commit=False
            )
        
        self.audit.log(
            BillingAuditEvent.PAYMENT_FAILED,
            billing_account_id=account.id,
            details={
                "payment_id": payment.get("id"),
                "error_code": payment.get("error_code"),
                "error_description": payment.get("error_description"),
                "invoice_id": invoice.invoice_number if invoice else None,
            },
            gateway_event_id=event_id,
            commit=False
        )
        
        self.accounts.mark_payment_failed(
            account,
            reason=f"Payment failed: {reason}",
            now=now,
            gateway_event_id=event_id,
            details={"payment_id": payment.get("id")},
            commit=False
        )
        return "payment_failed"
    
    def _handle_payment_authorized(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        payment = event["entity"]
        self.audit.log(
            BillingAuditEvent.PAYMENT_AUTHORIZED,
            billing_account_id=account.id,
            details={"payment_id": payment.get("id"), "amount": payment.get("amount")},
            gateway_event_id=event_id,
            commit=False
        )
        return "payment_authorized"
    
    # ------------------------------------------------------------------
    # Subscription events
    # ------------------------------------------------------------------
    
    def _handle_subscription_charged(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        subscription = event["entity"]
        
        cycle_start = _from_unix(subscription.get("current_start"))
        cycle_end = _from_unix(subscription.get("current_end"))
        if cycle_start and cycle_end:
            account.billing_cycle_start = cycle_start
            account.billing_cycle_end = cycle_end
        
        self.audit.log(
            BillingAuditEvent.SUBSCRIPTION_CHARGED,
            billing_account_id=account.id,
            details={
                "subscription_id": subscription.get("id"),
                "cycle_start": cycle_start.isoformat() if cycle_start else None,
                "cycle_end": cycle_end.isoformat() if cycle_end else None,
            },
            gateway_event_id=event_id,
            commit=False
        )
        self.accounts.restore_after_payment(
            account,
            reason="Subscription charged",
            now=now,
            gateway_event_id=event_id,
            commit=False
        )
        return "subscription_charged"
    
    def _handle_subscription_halted(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        result = self.accounts.suspend_if_grace_expired(
            account,
            now=now,
            reason=SUBSCRIPTION_HALTED_REASON,
            gateway_event_id=event_id,
            commit=False
        )
        if not result.changed:
            logger.info(f"Subscription halted for account {account.id} but grace period has not expired")
            return "grace_period_active"
        return "account_suspended"
    
    def _handle_subscription_cancelled(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        subscription = event["entity"]
        previous = account.gateway_subscription_id
        account.gateway_subscription_id = None
        self.audit.log(
            BillingAuditEvent.SUBSCRIPTION_CANCELLED,
            billing_account_id=account.id,
            details={"subscription_id": subscription.get("id") or previous},
            gateway_event_id=event_id,
            commit=False
        )
        return "subscription_cancelled"
    
    # ------------------------------------------------------------------
    # Refund events
    # ------------------------------------------------------------------
    
    def _handle_refund_processed(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        return self._audit_refund(event, event_id, BillingAuditEvent.REFUND_PROCESSED, "refund_processed")
    
    def _handle_refund_failed(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        return self._audit_refund(event, event_id, BillingAuditEvent.REFUND_FAILED, "refund_failed")
    
    def _audit_refund(self, event: Dict[str, Any], event_id: str, audit_event: str, result: str) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        refund = event["entity"]
        self.audit.log(
            audit_event,
            billing_account_id=account.id,
            details={
                "refund_id": refund.get("id"),
                "payment_id": refund.get("payment_id"),
                "amount": refund.get("amount"),
                "reason": event["notes"].get("reason") or "Not specified",
            },
            gateway_event_id=event_id,
            commit=False
        )
        return result
    
    # ------------------------------------------------------------------
    # Mandate (token) events
    # ------------------------------------------------------------------
    
    def _handle_token_confirmed(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        token = event["entity"]
        
        account.mandate_id = token.get("id")
        account.mandate_status = MandateStatus.AUTHORIZED.value
        method = token.get("method")
        account.payment_method_type = method
        if method == "card":
            card = token.get("card") or {}
            account.payment_method_brand = card.get("network")
            account.payment_method_last4 = card.get("last4")
        else:
            bank = token.get("bank_details") or token.get("bank") or {}
            if isinstance(bank, dict):
                account.payment_method_brand = bank.get("bank_name") or bank.get("name")
                last4 = str(bank.get("account_number") or "")[-4:]
                account.payment_method_last4 = last4 or None
            else:
                account.payment_method_brand = str(bank)
        
        self.audit.log(
            BillingAuditEvent.PAYMENT_METHOD_ADDED,
            billing_account_id=account.id,
            details={
                "mandate_id": account.mandate_id,
                "method": method,
                "brand": account.payment_method_brand,
                "last4": account.payment_method_last4,
            },
            gateway_event_id=event_id,
            commit=False
        )
        return "mandate_authorized"
    
    def _handle_token_rejected(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        return self._revoke_mandate(event, event_id, MandateStatus.FAILED.value)
    
    def _handle_token_cancelled(self, event: Dict[str, Any], event_id: str, now: datetime) -> str:
        return self._revoke_mandate(event, event_id, MandateStatus.CANCELLED.value)
    
    def _revoke_mandate(self, event: Dict[str, Any], event_id: str, mandate_status: str) -> str:
        account = self._require_account(event)
        if account is None:
            return "account_not_found"
        token = event["entity"]
        if account.mandate_id and token.get("id") and account.mandate_id != token.get("id"):
            logger.info(f"Token {token.get('id')} is not the active mandate for account {account.id}")
            return "mandate_not_current"
        
        account.mandate_status = mandate_status
        self.audit.log(
            BillingAuditEvent.PAYMENT_METHOD_REMOVED,
            billing_account_id=account.id,
            details={"mandate_id": token.get("id"), "mandate_status": mandate_status},
            gateway_event_id=event_id,
            commit=False
        )
        return f"mandate_{mandate_status.lower()}"


def get_webhook_service(db: Session, gateway: Optional[PaymentGateway] = None) -> WebhookService:
    """Get webhook service instance"""
    return WebhookService(db, gateway)
