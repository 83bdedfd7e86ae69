"""
Payment Gateway - Abstract interface for the external payment provider
Supports Razorpay (recurring mandates) and a manual gateway for dev/test
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


class ChargeStatus:
    SUCCEEDED = "succeeded"
    PENDING = "pending"  # Accepted by the gateway; outcome arrives by webhook
    FAILED = "failed"


@dataclass
class ChargeResult:
    status: str
    payment_id: Optional[str] = None
    reason: Optional[str] = None
    
    @property
    def success(self) -> bool:
        return self.status == ChargeStatus.SUCCEEDED


def compute_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw request body"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to the smallest currency unit (paise, cents)"""
    return int((Decimal(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


ENTITY_TYPES = ("payment", "subscription", "refund", "token")


def normalize_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Parse a webhook body into a standardized event
    
    Accepts the engine's envelope ``{eventType, entityPayload, createdAt}`` and
    the gateway-native ``{event, payload: {<entity>: {entity: {...}}}, created_at}``.
    """
    if "eventType" in payload:
        event_type = payload.get("eventType")
        created_at = payload.get("createdAt")
        entity = payload.get("entityPayload") or {}
        entity_type = event_type.split(".", 1)[0] if isinstance(event_type, str) else None
    else:
        event_type = payload.get("event")
        created_at = payload.get("created_at")
        body = payload.get("payload") or {}
        entity_type = None
        entity = {}
        for candidate in ENTITY_TYPES:
            if isinstance(body.get(candidate), dict) and body[candidate].get("entity"):
                entity_type = candidate
                entity = body[candidate]["entity"]
                break
    
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("Webhook payload is missing the event type")
    if not isinstance(entity, dict):
        raise ValueError("Webhook entity payload must be an object")
    
    return {
        "event_type": event_type,
        "created_at": created_at,
        "entity_type": entity_type,
        "entity": entity,
        "entity_id": entity.get("id"),
        "notes": entity.get("notes") or {},
    }


class PaymentGateway(ABC):
    """Abstract base class for payment providers"""
    
    @abstractmethod
    def create_customer(self, email: str, name: str, metadata: Optional[Dict] = None) -> Dict[str, Any]:
        """Create a customer in the payment provider"""
        pass
    
    @abstractmethod
    def create_order(self, amount: Decimal, currency: str, receipt: str, notes: Optional[Dict] = None) -> Dict[str, Any]:
        """Create a payment order"""
        pass
    
    @abstractmethod
    def charge_mandate(
        self,
        customer_id: str,
        token_id: str,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict] = None,
        order_id: Optional[str] = None
    ) -> ChargeResult:
        """
        Auto-debit an authorized mandate
        
        Passing the order_id of an earlier attempt reuses that order instead
        of creating a new one, so the gateway can pay it at most once.
        """
        pass
    
    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify webhook signature"""
        pass
    
    def parse_webhook_event(self, payload: Dict) -> Dict[str, Any]:
        """Parse webhook event into standardized format"""
        return normalize_webhook_payload(payload)


class ManualGateway(PaymentGateway):
    """Manual gateway - no outbound API, payments are confirmed by webhook or operator"""
    
    def __init__(self, webhook_secret: Optional[str]):
        self.webhook_secret = webhook_secret
    
    def create_customer(self, email: str, name: str, metadata: Optional[Dict] = None) -> Dict[str, Any]:
        return {
            "customer_id": f"manual_{email}",
            "provider": "manual",
        }
    
    def create_order(self, amount: Decimal, currency: str, receipt: str, notes: Optional[Dict] = None) -> Dict[str, Any]:
        return {
            "order_id": f"manual_order_{receipt}",
            "amount": to_minor_units(amount),
            "currency": currency,
            "status": "created",
        }
    
    def charge_mandate(
        self,
        customer_id: str,
        token_id: str,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict] = None,
        order_id: Optional[str] = None
    ) -> ChargeResult:
        """Manual gateway cannot auto-debit"""
        return ChargeResult(status=ChargeStatus.FAILED, reason="auto_debit_unavailable")
    
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        if not self.webhook_secret or not signature:
            return False
        return hmac.compare_digest(compute_signature(payload, self.webhook_secret), signature)


class RazorpayGateway(PaymentGateway):
    """Razorpay gateway (orders, recurring e-mandate payments, webhooks)"""
    
    def __init__(self, key_id: str, key_secret: str, webhook_secret: str, base_url: str = "https://api.razorpay.com/v1"):
        """
        Initialize Razorpay gateway
        
        Args:
            key_id: API key id
            key_secret: API key secret
            webhook_secret: Webhook signing secret
            base_url: API base URL
        """
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
    
    def _make_request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Dict[str, Any]:
        """Make an authenticated request to the Razorpay API"""
        import httpx
        
        url = f"{self.base_url}{endpoint}"
        auth = (self.key_id, self.key_secret)
        
        try:
            if method == "GET":
                response = httpx.get(url, auth=auth, timeout=10)
            else:
                response = httpx.post(url, auth=auth, json=data or {}, timeout=10)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Razorpay API error {e.response.status_code} on {endpoint}: {e.response.text}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"Razorpay request failed on {endpoint}: {e}")
            raise
    
    def create_customer(self, email: str, name: str, metadata: Optional[Dict] = None) -> Dict[str, Any]:
        result = self._make_request("POST", "/customers", {
            "email": email,
            "name": name,
            "fail_existing": "0",
            "notes": metadata or {},
        })
        return {
            "customer_id": result["id"],
            "provider": "razorpay",
        }
    
    def create_order(self, amount: Decimal, currency: str, receipt: str, notes: Optional[Dict] = None) -> Dict[str, Any]:
        result = self._make_request("POST", "/orders", {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
            "notes": notes or {},
        })
        return {
            "order_id": result["id"],
            "amount": result.get("amount"),
            "currency": result.get("currency", currency),
            "status": result.get("status"),
        }
    
    def charge_mandate(
        self,
        customer_id: str,
        token_id: str,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict] = None,
        order_id: Optional[str] = None
    ) -> ChargeResult:
        """
        Create a recurring payment against an authorized token
        
        Razorpay confirms recurring debits asynchronously, so an accepted
        request is PENDING until the payment.captured / payment.failed webhook.
        A timeout or 5xx leaves the debit's fate unknown; that is reported as
        PENDING too, never as a decline, so the caller does not charge again.
        """
        import httpx
        
        try:
            if order_id is None:
                order_id = self.create_order(amount, currency, receipt, notes)["order_id"]
        except httpx.HTTPStatusError as e:
            return ChargeResult(status=ChargeStatus.FAILED, reason=self._error_description(e, "order_rejected"))
        
        try:
            result = self._make_request("POST", "/payments/create/recurring", {
                "amount": to_minor_units(amount),
                "currency": currency,
                "order_id": order_id,
                "customer_id": customer_id,
                "token": token_id,
                "recurring": "1",
                "notes": notes or {},
            })
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                logger.warning(f"Recurring debit for {receipt} on order {order_id} unconfirmed (HTTP {e.response.status_code})")
                return ChargeResult(status=ChargeStatus.PENDING, reason="gateway_unconfirmed")
            return ChargeResult(status=ChargeStatus.FAILED, reason=self._error_description(e, "gateway_declined"))
        except httpx.HTTPError as e:
            logger.warning(f"Recurring debit for {receipt} on order {order_id} unconfirmed: {e}")
            return ChargeResult(status=ChargeStatus.PENDING, reason="gateway_unconfirmed")
        
        return ChargeResult(status=ChargeStatus.PENDING, payment_id=result.get("razorpay_payment_id"))
    
    @staticmethod
    def _error_description(error, default: str) -> str:
        try:
            return error.response.json().get("error", {}).get("description") or default
        except ValueError:
            return default
    
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify X-Razorpay-Signature / X-Signature (HMAC-SHA256 hex)"""
        if not self.webhook_secret or not signature:
            return False
        try:
            return hmac.compare_digest(compute_signature(payload, self.webhook_secret), signature)
        except Exception as e:
            logger.error(f"Razorpay signature verification failed: {e}")
            return False


def get_payment_gateway(provider: Optional[str] = None, config=None) -> PaymentGateway:
    """
    Factory function to get the configured payment gateway
    
    Args:
        provider: 'razorpay' or 'manual' (defaults to config.GATEWAY_PROVIDER)
        config: Config object with payment provider settings
    
    Returns:
        PaymentGateway instance
    """
    if config is None:
        from ..config import config
    provider = provider or config.GATEWAY_PROVIDER
    
    if provider == "manual":
        return ManualGateway(config.webhook_secret)
    
    elif provider == "razorpay":
        if not config.RAZORPAY_KEY_ID or not config.RAZORPAY_KEY_SECRET:
            raise ValueError("Razorpay API keys not configured")
        if not config.webhook_secret:
            raise ValueError("Razorpay webhook secret not configured")
        return RazorpayGateway(
            config.RAZORPAY_KEY_ID,
            config.RAZORPAY_KEY_SECRET,
            config.webhook_secret,
            base_url=config.RAZORPAY_API_BASE,
        )
    
    else:
        raise ValueError(f"Unsupported payment provider: {provider}")
