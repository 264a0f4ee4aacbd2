import json
from typing import Optional

import stripe

from scripture_api.billing_events import CORRELATION_KEY
from scripture_api.errors import BillingUnavailable, WebhookSignatureError

WEBHOOK_TOLERANCE_SEC = 300


class StripeGateway:
    """Thin wrapper over the Stripe SDK.

    Returns plain dicts and ids; any SDK or network failure is raised as
    ``BillingUnavailable``.
    """

    def __init__(self, api_key: str, price_id: str = "", webhook_secret: str = ""):
        self._api_key = api_key
        self._price_id = price_id
        self._webhook_secret = webhook_secret

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            raise BillingUnavailable(str(exc)) from exc

    def create_customer(self, email: str, name: str | None, user_id: str) -> str:
        customer = self._call(
            stripe.Customer.create,
            email=email,
            name=name or "",
            metadata={CORRELATION_KEY: user_id},
        )
        return customer["id"]

    def find_customer_by_email(self, email: str) -> Optional[str]:
        customers = self._call(stripe.Customer.list, email=email, limit=1)
        data = customers.get("data") or []
        return data[0]["id"] if data else None

    def create_checkout_session(
        self, customer_ref: str, user_id: str, success_url: str, cancel_url: str
    ) -> dict:
        session = self._call(
            stripe.checkout.Session.create,
            customer=customer_ref,
            mode="subscription",
            line_items=[{"price": self._price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={CORRELATION_KEY: user_id},
            subscription_data={"metadata": {CORRELATION_KEY: user_id}},
            allow_promotion_codes=True,
            billing_address_collection="auto",
        )
        return {"id": session["id"], "url": session.get("url")}

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        session = self._call(
            stripe.billing_portal.Session.create,
            customer=customer_ref,
            return_url=return_url,
        )
        return session["url"]

    def retrieve_checkout_session(self, session_id: str) -> dict:
        return self._call(
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription"],
        )

    def retrieve_subscription(self, subscription_ref: str) -> dict:
        return self._call(stripe.Subscription.retrieve, subscription_ref)

    def find_subscription(self, customer_ref: str, status: str) -> Optional[dict]:
        subscriptions = self._call(
            stripe.Subscription.list,
            customer=customer_ref,
            status=status,
            limit=1,
        )
        data = subscriptions.get("data") or []
        return data[0] if data else None

    def set_cancel_at_period_end(self, subscription_ref: str, cancel: bool) -> dict:
        return self._call(
            stripe.Subscription.modify,
            subscription_ref,
            cancel_at_period_end=cancel,
        )

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        """Authenticate a raw webhook body, then parse it."""
        if not signature:
            raise WebhookSignatureError("missing signature header")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError("payload is not utf-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                text, signature, self._webhook_secret, WEBHOOK_TOLERANCE_SEC
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as exc:
            raise WebhookSignatureError("payload is not json") from exc
        if not isinstance(envelope, dict):
            raise WebhookSignatureError("payload is not an event envelope")
        return envelope
