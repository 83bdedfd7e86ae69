"""
Tests for payment gateway adapters
"""
import pytest
import httpx
from decimal import Decimal
from unittest.mock import Mock, patch

from billing_engine.services.payment_gateway import (
    ChargeStatus,
    ManualGateway,
    RazorpayGateway,
    compute_signature,
    get_payment_gateway,
    normalize_webhook_payload,
    to_minor_units,
)


def _response(status_code, payload):
    request = httpx.Request("POST", "https://api.razorpay.com/v1/test")
    return httpx.Response(status_code, json=payload, request=request)


class TestSignatures:
    
    def test_valid_signature(self):
        gateway = ManualGateway("secret")
        body = b'{"eventType":"payment.captured"}'
        
        assert gateway.verify_webhook_signature(body, compute_signature(body, "secret"))
    
    def test_wrong_secret_or_missing_signature(self):
        gateway = ManualGateway("secret")
        body = b"{}"
        
        assert not gateway.verify_webhook_signature(body, compute_signature(body, "other"))
        assert not gateway.verify_webhook_signature(body, "")
        assert not ManualGateway(None).verify_webhook_signature(body, compute_signature(body, "secret"))


class TestPayloadNormalization:
    
    def test_engine_envelope(self):
        event = normalize_webhook_payload({
            "eventType": "token.confirmed",
            "createdAt": "2026-02-01T00:00:00Z",
            "entityPayload": {"id": "token_1", "notes": {"billing_account_id": "4"}},
        })
        
        assert event["event_type"] == "token.confirmed"
        assert event["entity_type"] == "token"
        assert event["entity_id"] == "token_1"
        assert event["notes"] == {"billing_account_id": "4"}
    
    def test_gateway_native_envelope(self):
        event = normalize_webhook_payload({
            "event": "refund.processed",
            "created_at": 1767225600,
            "payload": {"refund": {"entity": {"id": "rfnd_1", "payment_id": "pay_1"}}},
        })
        
        assert event["entity_type"] == "refund"
        assert event["entity_id"] == "rfnd_1"
        assert event["created_at"] == 1767225600
        assert event["notes"] == {}
    
    def test_missing_event_type(self):
        with pytest.raises(ValueError):
            normalize_webhook_payload({"payload": {}})


class TestRazorpayGateway:
    
    def test_minor_units(self):
        assert to_minor_units(Decimal("10.00")) == 1000
        assert to_minor_units(Decimal("0.015")) == 2
    
    def test_charge_mandate_is_pending_until_webhook(self):
        gateway = RazorpayGateway("key", "secret", "hook")
        responses = [
            _response(200, {"id": "order_1", "amount": 1000, "currency": "INR", "status": "created"}),
            _response(200, {"razorpay_payment_id": "pay_1", "razorpay_order_id": "order_1"}),
        ]
        
        with patch("httpx.post", side_effect=responses) as post:
            result = gateway.charge_mandate("cust_1", "token_1", Decimal("10.00"), "INR", "INV-1", {"invoice_id": "INV-1"})
        
        assert result.status == ChargeStatus.PENDING
        assert result.payment_id == "pay_1"
        recurring = post.call_args_list[1]
        assert recurring.args[0].endswith("/payments/create/recurring")
        assert recurring.kwargs["json"]["token"] == "token_1"
        assert recurring.kwargs["json"]["amount"] == 1000
    
    def test_charge_mandate_decline(self):
        gateway = RazorpayGateway("key", "secret", "hook")
        responses = [
            _response(200, {"id": "order_1"}),
            _response(400, {"error": {"description": "Token expired"}}),
        ]
        
        with patch("httpx.post", side_effect=responses):
            result = gateway.charge_mandate("cust_1", "token_1", Decimal("10.00"), "INR", "INV-1")
        
        assert result.status == ChargeStatus.FAILED
        assert result.reason == "Token expired"
    
    def test_charge_mandate_reuses_given_order(self):
        gateway = RazorpayGateway("key", "secret", "hook")
        
        with patch("httpx.post", return_value=_response(200, {"razorpay_payment_id": "pay_2"})) as post:
            result = gateway.charge_mandate("cust_1", "token_1", Decimal("10.00"), "INR", "INV-1", order_id="order_1")
        
        assert result.payment_id == "pay_2"
        post.assert_called_once()
        assert post.call_args.args[0].endswith("/payments/create/recurring")
        assert post.call_args.kwargs["json"]["order_id"] == "order_1"
    
    def test_charge_mandate_timeout_is_unconfirmed(self):
        gateway = RazorpayGateway("key", "secret", "hook")
        
        with patch("httpx.post", side_effect=httpx.ReadTimeout("timed out")):
            result = gateway.charge_mandate("cust_1", "token_1", Decimal("10.00"), "INR", "INV-1", order_id="order_1")
        
        assert result.status == ChargeStatus.PENDING
        assert result.payment_id is None
        assert result.reason == "gateway_unconfirmed"
    
    def test_charge_mandate_server_error_is_unconfirmed(self):
        gateway = RazorpayGateway("key", "secret", "hook")
        responses = [
            _response(200, {"id": "order_1"}),
            _response(502, {"error": {"description": "Bad gateway"}}),
        ]
        
        with patch("httpx.post", side_effect=responses):
            result = gateway.charge_mandate("cust_1", "token_1", Decimal("10.00"), "INR", "INV-1")
        
        assert result.status == ChargeStatus.PENDING
        assert result.reason == "gateway_unconfirmed"


class TestGatewayFactory:
    
    def test_manual_gateway(self):
        config = Mock(GATEWAY_PROVIDER="manual", webhook_secret="s")
        assert isinstance(get_payment_gateway(config=config), ManualGateway)
    
    def test_razorpay_requires_keys(self):
        config = Mock(GATEWAY_PROVIDER="razorpay", RAZORPAY_KEY_ID=None, RAZORPAY_KEY_SECRET=None, webhook_secret="s")
        with pytest.raises(ValueError):
            get_payment_gateway(config=config)
    
    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            get_payment_gateway(provider="paypal", config=Mock())
