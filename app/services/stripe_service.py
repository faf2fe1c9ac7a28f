"""Stripe payment service for subscription management."""

import logging
import uuid as uuid_pkg
from datetime import UTC, datetime
from typing import Any

import stripe
from stripe import InvalidRequestError, SignatureVerificationError, StripeError

from app.config import settings
from app.config.plans import PlanType, price_id_for_plan

logger = logging.getLogger(__name__)

# Initialize Stripe with secret key
stripe.api_key = settings.stripe_secret_key


def _to_dict(obj: Any) -> dict[str, Any]:
    """Plain dict view of a Stripe object."""
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def is_missing_resource(error: Exception) -> bool:
    """True when Stripe reports the referenced object does not exist."""
    return isinstance(error, InvalidRequestError) and getattr(error, "code", None) == "resource_missing"


def subscription_items(stripe_sub: dict[str, Any]) -> list[dict[str, Any]]:
    items = stripe_sub.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    return list(data or [])


def subscription_price_id(stripe_sub: dict[str, Any]) -> str | None:
    """Price of the subscription's (single) line item."""
    items = subscription_items(stripe_sub)
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else None


def subscription_period_end(stripe_sub: dict[str, Any]) -> datetime | None:
    """
    Current period end of a subscription.

    Newer API versions carry the period on the subscription item rather
    than on the subscription itself.
    """
    period_end = stripe_sub.get("current_period_end")
    if not period_end:
        items = subscription_items(stripe_sub)
        period_end = items[0].get("current_period_end") if items else None
    if not period_end:
        return None
    return datetime.fromtimestamp(int(period_end), tz=UTC)


class StripeService:
    """
    Handles all Stripe API interactions.

    All methods are static and stateless. Stripe SDK handles connection pooling.
    Every subscription carries metadata.user_id so webhooks can be mapped
    back to a local user.
    """

    @staticmethod
    def get_price_id(plan_type: PlanType) -> str:
        """Get price ID for a plan."""
        return price_id_for_plan(plan_type)

    @staticmethod
    def resolve_customer(
        user_id: uuid_pkg.UUID,
        email: str | None,
        stored_customer_id: str | None,
    ) -> str | None:
        """
        Find the Stripe customer to attach a checkout to.

        Prefers the customer stored on the subscription record (if it still
        exists in Stripe), otherwise looks one up by email. Stamps user_id
        into the customer's metadata when missing. Returns None when no
        customer exists yet (Checkout will create one).
        """
        if stored_customer_id:
            try:
                customer = _to_dict(stripe.Customer.retrieve(stored_customer_id))
            except StripeError as e:
                if not is_missing_resource(e):
                    logger.error(f"Failed to retrieve customer {stored_customer_id}: {e}")
                    raise
                logger.info(f"Stored customer {stored_customer_id} not found in Stripe")
                return None
            if customer.get("deleted"):
                logger.info(f"Stored customer {stored_customer_id} was deleted in Stripe")
                return None
            StripeService._ensure_user_metadata(customer, user_id)
            return stored_customer_id

        if not email:
            return None

        try:
            customers = stripe.Customer.list(email=email, limit=1)
        except StripeError as e:
            logger.error(f"Failed to look up customer by email: {e}")
            raise
        if not customers.data:
            return None
        customer = _to_dict(customers.data[0])
        StripeService._ensure_user_metadata(customer, user_id)
        logger.info(f"Found existing customer {customer['id']} by email for user {user_id}")
        return customer["id"]

    @staticmethod
    def _ensure_user_metadata(customer: dict[str, Any], user_id: uuid_pkg.UUID) -> None:
        metadata = customer.get("metadata") or {}
        if metadata.get("user_id"):
            return
        try:
            stripe.Customer.modify(customer["id"], metadata={"user_id": str(user_id)})
            logger.info(f"Stamped user_id on customer {customer['id']}")
        except StripeError as e:
            logger.error(f"Failed to update customer metadata: {e}")
            raise

    @staticmethod
    def create_checkout_session(
        user_id: uuid_pkg.UUID,
        email: str | None,
        price_id: str,
        customer_id: str | None,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Create a Stripe Checkout session for a new subscription.

        Returns the checkout session URL.
        """
        params: dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": {"user_id": str(user_id)},
            "subscription_data": {"metadata": {"user_id": str(user_id)}},
            "success_url": success_url,
            "cancel_url": cancel_url,
            "billing_address_collection": "required",
            "allow_promotion_codes": True,
        }
        if customer_id:
            params["customer"] = customer_id
        elif email:
            params["customer_email"] = email

        try:
            session = stripe.checkout.Session.create(**params)
        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise

        if not session.url:
            raise ValueError("Stripe returned a checkout session without a URL")
        logger.info(
            f"Created checkout session {session.id} for user {user_id}, "
            f"customer={customer_id or 'new'}"
        )
        return session.url

    @staticmethod
    def retrieve_subscription(stripe_subscription_id: str) -> dict[str, Any]:
        """Retrieve a Stripe subscription by ID. Raises StripeError."""
        try:
            return _to_dict(stripe.Subscription.retrieve(stripe_subscription_id))
        except StripeError as e:
            logger.error(f"Failed to retrieve subscription {stripe_subscription_id}: {e}")
            raise

    @staticmethod
    def retrieve_customer(stripe_customer_id: str) -> dict[str, Any]:
        """Retrieve a Stripe customer by ID. Raises StripeError."""
        try:
            return _to_dict(stripe.Customer.retrieve(stripe_customer_id))
        except StripeError as e:
            logger.error(f"Failed to retrieve customer {stripe_customer_id}: {e}")
            raise

    @staticmethod
    def change_subscription_price(
        stripe_subscription_id: str,
        new_price_id: str,
        user_id: uuid_pkg.UUID,
        prorate: bool,
    ) -> dict[str, Any]:
        """
        Swap the subscription's line item to a different price.

        Stripe's update API needs the subscription item id, so the current
        subscription is read first.
        """
        try:
            sub = _to_dict(stripe.Subscription.retrieve(stripe_subscription_id))
            items = subscription_items(sub)
            if not items:
                raise ValueError(f"Subscription {stripe_subscription_id} has no items")

            updated = stripe.Subscription.modify(
                stripe_subscription_id,
                items=[{"id": items[0]["id"], "price": new_price_id}],
                proration_behavior="create_prorations" if prorate else "none",
                metadata={"user_id": str(user_id)},
            )
            logger.info(
                f"Changed subscription {stripe_subscription_id} to price {new_price_id} "
                f"(prorate={prorate})"
            )
            return _to_dict(updated)
        except StripeError as e:
            logger.error(f"Failed to change subscription price: {e}")
            raise

    @staticmethod
    def schedule_cancellation(stripe_subscription_id: str) -> dict[str, Any]:
        """Cancel a Stripe subscription at period end."""
        try:
            updated = stripe.Subscription.modify(
                stripe_subscription_id,
                cancel_at_period_end=True,
            )
            logger.info(f"Marked subscription {stripe_subscription_id} for cancellation")
            return _to_dict(updated)
        except StripeError as e:
            logger.error(f"Failed to schedule cancellation: {e}")
            raise

    @staticmethod
    def cancel_now(stripe_subscription_id: str) -> dict[str, Any]:
        """Cancel a Stripe subscription immediately."""
        try:
            canceled = stripe.Subscription.cancel(stripe_subscription_id)
            logger.info(f"Canceled subscription {stripe_subscription_id}")
            return _to_dict(canceled)
        except StripeError as e:
            logger.error(f"Failed to cancel subscription: {e}")
            raise

    @staticmethod
    def construct_webhook_event(payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and construct a webhook event from Stripe.

        Raises ValueError if signature verification fails.
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload,
                signature,
                settings.stripe_webhook_secret,
            )
            return _to_dict(event)
        except SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise ValueError("Invalid webhook signature") from None
        except ValueError as e:
            logger.warning(f"Invalid webhook payload: {e}")
            raise ValueError("Invalid webhook payload") from None


# Singleton instance
stripe_service = StripeService()
