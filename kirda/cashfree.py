"""
Cashfree payment gateway client

Covers the parts of the Cashfree APIs the wallet needs:
- Payment Gateway orders (create, verify status, list payments)
- Webhook signature verification
- Payouts (beneficiaries, transfers, transfer status)

Errors from Cashfree are raised as ``PaymentGatewayError`` carrying the
upstream message and HTTP status; nothing here retries.
"""

import base64
import hashlib
import hmac
import time
from decimal import Decimal
from typing import Any, Optional

import requests
from loguru import logger
from pydantic import BaseModel

from . import config
from .models import build_order_id, to_amount


class PaymentGatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PaymentOrder(BaseModel):
    order_id: str
    payment_session_id: str
    amount: Decimal
    currency: str


class PaymentStatus(BaseModel):
    order_id: str
    status: str
    amount: Decimal

    @property
    def is_paid(self) -> bool:
        return self.status == "PAID"


class PayoutTransfer(BaseModel):
    transfer_id: str
    status: str
    reference_id: Optional[str] = None


def _sub_code(data: dict) -> Optional[int]:
    sub_code = str(data.get("subCode", ""))
    return int(sub_code) if sub_code.isdigit() else None


class CashfreeClient:
    def __init__(
        self,
        app_id: str = config.CASHFREE_APP_ID,
        secret_key: str = config.CASHFREE_SECRET_KEY,
        base_url: str = config.CASHFREE_PG_URL,
        payout_client_id: str = config.CASHFREE_PAYOUT_CLIENT_ID,
        payout_client_secret: str = config.CASHFREE_PAYOUT_CLIENT_SECRET,
        payout_url: str = config.CASHFREE_PAYOUT_URL,
        api_version: str = config.CASHFREE_API_VERSION,
        app_base_url: str = config.APP_BASE_URL,
        timeout: float = config.CASHFREE_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.app_id = app_id
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.payout_client_id = payout_client_id
        self.payout_client_secret = payout_client_secret
        self.payout_url = payout_url.rstrip("/")
        self.api_version = api_version
        self.app_base_url = app_base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._payout_token: Optional[str] = None
        self._payout_token_expiry: float = 0.0

        if not self.app_id or not self.secret_key:
            logger.warning("Cashfree credentials are not configured")

    def _get_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-version": self.api_version,
            "x-client-id": self.app_id,
            "x-client-secret": self.secret_key,
        }

    def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Cashfree request {method} {url} failed: {e}")
            raise PaymentGatewayError(f"Cashfree request failed: {e}") from e

        if not response.ok:
            logger.error(f"Cashfree API error {response.status_code} for {method} {url}: {response.text}")
            raise PaymentGatewayError(
                f"Cashfree API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    # Payment gateway

    def create_order(
        self,
        user_id: int,
        amount: Decimal,
        customer_name: str,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> PaymentOrder:
        order_id = build_order_id(user_id, int(time.time() * 1000), prefix=config.ORDER_ID_PREFIX)
        payload = {
            "order_id": order_id,
            "order_amount": float(to_amount(amount)),
            "order_currency": config.CURRENCY,
            "customer_details": {
                "customer_id": str(user_id),
                "customer_name": customer_name,
                "customer_email": customer_email or f"user{user_id}@kirda.com",
                "customer_phone": customer_phone or "9999999999",
            },
            "order_meta": {
                "return_url": f"{self.app_base_url}/payment-success?order_id={order_id}",
                "notify_url": f"{self.app_base_url}/api/payment/webhook",
            },
        }

        data = self._request("POST", f"{self.base_url}/orders", headers=self._get_headers(), json=payload)
        logger.info(f"Created Cashfree order {data.get('order_id', order_id)} for user {user_id}, ₹{amount}")
        return PaymentOrder(
            order_id=data.get("order_id", order_id),
            payment_session_id=data["payment_session_id"],
            amount=to_amount(data.get("order_amount", amount)),
            currency=data.get("order_currency", config.CURRENCY),
        )

    def verify_payment(self, order_id: str) -> PaymentStatus:
        data = self._request("GET", f"{self.base_url}/orders/{order_id}", headers=self._get_headers())
        status = PaymentStatus(
            order_id=data.get("order_id", order_id),
            status=data.get("order_status", "UNKNOWN"),
            amount=to_amount(data.get("order_amount", 0)),
        )
        logger.info(f"Cashfree order {order_id} status: {status.status}")
        return status

    def get_order_payments(self, order_id: str) -> list[dict]:
        return self._request("GET", f"{self.base_url}/orders/{order_id}/payments", headers=self._get_headers())

    def verify_webhook_signature(self, raw_body: bytes, timestamp: Optional[str], signature: Optional[str]) -> bool:
        """Check ``x-webhook-signature``: base64(HMAC-SHA256(timestamp + body))."""
        if not timestamp or not signature or not self.secret_key:
            return False

        message = timestamp.encode() + raw_body
        expected = base64.b64encode(
            hmac.new(self.secret_key.encode(), message, hashlib.sha256).digest()
        ).decode()
        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            logger.warning("Invalid Cashfree webhook signature")
        return is_valid

    # Payouts

    def _payout_headers(self) -> dict[str, str]:
        if not self._payout_token or time.time() >= self._payout_token_expiry:
            data = self._request(
                "POST",
                f"{self.payout_url}/payout/v1/authorize",
                headers={
                    "X-Client-Id": self.payout_client_id,
                    "X-Client-Secret": self.payout_client_secret,
                },
            )
            if data.get("status") != "SUCCESS":
                raise PaymentGatewayError(
                    f"Cashfree payout authorization failed: {data.get('message')}",
                    status_code=_sub_code(data),
                )
            self._payout_token = data["data"]["token"]
            self._payout_token_expiry = float(data["data"].get("expiry", time.time() + 300)) - 30
        return {"Authorization": f"Bearer {self._payout_token}", "Content-Type": "application/json"}

    def _payout_request(self, method: str, path: str, **kwargs) -> dict:
        data = self._request(method, f"{self.payout_url}{path}", headers=self._payout_headers(), **kwargs)
        if data.get("status") not in ("SUCCESS", "PENDING", "ACCEPTED"):
            raise PaymentGatewayError(
                f"Cashfree payout error: {data.get('message')}",
                status_code=_sub_code(data),
            )
        return data

    def add_beneficiary(
        self,
        user_id: int,
        name: str,
        bank_account: str,
        ifsc: str,
        email: Optional[str] = None,
        phone: str = "9999999999",
        address: str = "Mumbai, Maharashtra",
    ) -> str:
        bene_id = f"BENE_{user_id}_{bank_account[-4:]}"
        payload = {
            "beneId": bene_id,
            "name": name,
            "email": email or f"user{user_id}@kirda.com",
            "phone": phone,
            "bankAccount": bank_account,
            "ifsc": ifsc,
            "address1": address,
        }
        try:
            self._payout_request("POST", "/payout/v1/addBeneficiary", json=payload)
        except PaymentGatewayError as e:
            # Cashfree answers 409 when the beneficiary is already registered
            if e.status_code != 409:
                raise
        logger.info(f"Beneficiary {bene_id} ready for user {user_id}")
        return bene_id

    def request_withdrawal(self, user_id: int, amount: Decimal, bene_id: str, remarks: str) -> PayoutTransfer:
        transfer_id = f"WTH_{user_id}_{int(time.time() * 1000)}"
        data = self._payout_request(
            "POST",
            "/payout/v1/requestTransfer",
            json={
                "beneId": bene_id,
                "amount": str(to_amount(amount)),
                "transferId": transfer_id,
                "remarks": remarks,
            },
        )
        payload = data.get("data") or {}
        logger.info(f"Requested payout {transfer_id} of ₹{amount} for user {user_id}: {data.get('status')}")
        return PayoutTransfer(
            transfer_id=transfer_id,
            status=data.get("status", "PENDING"),
            reference_id=payload.get("referenceId"),
        )

    def get_withdrawal_status(self, transfer_id: str) -> dict:
        data = self._payout_request("GET", "/payout/v1/getTransferStatus", params={"transferId": transfer_id})
        return data.get("data") or {}


_cashfree_client: Optional[CashfreeClient] = None


def get_cashfree_client() -> CashfreeClient:
    global _cashfree_client

    if _cashfree_client is None:
        _cashfree_client = CashfreeClient()

    return _cashfree_client
