"""HTTP views for the orders app.

Views are kept small: they validate the request body with a Pydantic DTO,
call one engine operation obtained from ``get_engine()``, and map the
outcome to an HTTP response. Domain errors become their status code with a
machine ``detail`` code and a generic user-facing ``message``; provider
outages become 503. No stack detail ever reaches the client.

The payment webhook and the courier push are the exceptions: they read the
raw body, because the signature is computed over the exact bytes received.
"""

import logging

from django.conf import settings
from django.core.paginator import Paginator
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .adapters import signature_matches
from .domain import Order, OrderStatus, TrackingEvent
from .errors import AuthenticityError, DomainError, UpstreamProviderError
from .idempotency import finalize, get_or_create_idempotent
from .lifecycle import PARCEL_WEIGHT_KG
from .models import OrderModel
from .providers import get_engine
from .repository import order_from_model
from .schemas import (
    CheckoutDTO,
    OrderReadDTO,
    QuoteDTO,
    RefundDTO,
    SellerActionDTO,
    TrackingEventDTO,
    VerifyPaymentDTO,
)

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "The action could not be completed."


def _error(code: str, status_code: int) -> Response:
    return Response({"detail": code, "message": GENERIC_MESSAGE}, status=status_code)


def _domain_error(exc: DomainError) -> Response:
    return _error(exc.code, exc.http_status)


def _upstream_error(exc: UpstreamProviderError) -> Response:
    logger.warning("provider unavailable", extra={"provider": exc.provider, "transient": exc.transient})
    return _error("UPSTREAM_UNAVAILABLE", status.HTTP_503_SERVICE_UNAVAILABLE)


def _invalid(exc: PydanticValidationError) -> Response:
    errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
    return Response(
        {"detail": "INVALID_ARGUMENT", "message": GENERIC_MESSAGE, "errors": errors},
        status=status.HTTP_400_BAD_REQUEST,
    )


def order_out(order: Order) -> dict:
    dto = OrderReadDTO.model_validate(
        {
            "id": order.id,
            "status": order.status.value,
            "buyer_id": order.buyer_id,
            "seller_id": order.seller_id,
            "payment_reference": order.payment_reference,
            "currency": order.currency,
            "total_cents": order.total_cents,
            "items": [{"book_id": i.book_id, "title": i.title, "price_cents": i.price_cents} for i in order.items],
            "created_at": order.created_at,
            "expires_at": order.expires_at,
            "committed_at": order.committed_at,
            "delivered_at": order.delivered_at,
            "courier": order.courier or None,
            "tracking_number": order.tracking_number or None,
            "pickup_window": order.pickup_window or None,
            "delivery_fee_cents": order.delivery_fee_cents,
            "platform_commission_cents": order.platform_commission_cents,
            "seller_net_cents": order.seller_net_cents,
        }
    )
    return dto.model_dump(mode="json", exclude_none=True)


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module: ``{"ok": true}``."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """Paginated order listing, filterable by buyer, seller and status."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        qs = OrderModel.objects.order_by("-created_at")
        for field in ("buyer_id", "seller_id"):
            value = request.GET.get(field)
            if value:
                qs = qs.filter(**{field: value})
        wanted = request.GET.get("status")
        if wanted:
            if wanted not in {s.value for s in OrderStatus}:
                return _error("INVALID_STATUS", status.HTTP_400_BAD_REQUEST)
            qs = qs.filter(status=wanted)

        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return _error("INVALID_ARGUMENT", status.HTTP_400_BAD_REQUEST)
        p = Paginator(qs, max(page_size, 1))
        page_obj = p.get_page(page)

        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [order_out(order_from_model(o)) for o in page_obj.object_list],
            },
            status=200,
        )


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        order = get_engine().lifecycle.store.find(str(oid))
        if order is None:
            return _error("NOT_FOUND", status.HTTP_404_NOT_FOUND)
        return Response(order_out(order), status=200)


class CheckoutView(APIView):
    """Start a checkout: reserve the cart and open a hosted payment session.

    Supports the ``Idempotency-Key`` header: the first request is processed
    and its response stored; retries with the same key and body replay the
    stored response with ``Idempotent-Replay: true``. Reusing a key with a
    different body returns 409.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        """Create a checkout session.

        Returns:
            Response: 201 with ``{reference, authorization_url, amount_cents,
            currency, reserved_until, sellers}``; 400 for invalid carts; 403
            for buying one's own book; 409 for idempotency conflicts; 503
            when the payment provider is unavailable.
        """
        idem_key = request.headers.get("Idempotency-Key")
        try:
            dto = CheckoutDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)

        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except DomainError as e:
                return _domain_error(e)
            if existing:
                if not rec.response_status:
                    return _error("IDEMPOTENCY_IN_PROGRESS", status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            session = get_engine().checkout.start(
                buyer_id=dto.buyer_id,
                email=dto.email,
                book_ids=dto.book_ids,
                shipping_address=dto.shipping_address.model_dump(),
                callback_url=dto.callback_url or settings.PAYMENTS_CALLBACK_URL,
            )
        except DomainError as e:
            resp = _domain_error(e)
            if rec:
                finalize(rec, resp.status_code, resp.data)
            return resp
        except UpstreamProviderError as e:
            # not stored: a retry with the same key may succeed
            if rec:
                rec.delete()
            return _upstream_error(e)

        body = {
            "reference": session.reference,
            "authorization_url": session.authorization_url,
            "amount_cents": session.amount_cents,
            "currency": session.currency,
            "reserved_until": session.reserved_until.isoformat(),
            "sellers": [
                {"seller_id": s.seller_id, "item_count": s.item_count, "total_cents": s.total_cents}
                for s in session.sellers
            ],
        }
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, reference=session.reference)
        return Response(body, status=status.HTTP_201_CREATED)


class VerifyPaymentView(APIView):
    """Synchronous payment confirmation used by the provider's callback page."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        try:
            dto = VerifyPaymentDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)
        try:
            orders = get_engine().reconciler.confirm_payment(dto.reference)
        except DomainError as e:
            return _domain_error(e)
        except UpstreamProviderError as e:
            return _upstream_error(e)
        return Response({"reference": dto.reference, "orders": [order_out(o) for o in orders]}, status=200)


class PaymentWebhookView(APIView):
    """Inbound payment provider events.

    200 for every authentic delivery (including unknown, malformed and
    replayed events), 401 for signature failures, 503 when processing hit
    an infrastructure failure and the provider should retry.
    """

    def post(self, request):
        header = getattr(settings, "WEBHOOK_SIGNATURE_HEADER", "X-Signature")
        signature = request.headers.get(header)
        try:
            outcome = get_engine().reconciler.handle(request.body, signature)
        except AuthenticityError:
            logger.warning("webhook signature rejected")
            return Response({"detail": "INVALID_SIGNATURE"}, status=status.HTTP_401_UNAUTHORIZED)
        except Exception:
            logger.exception("webhook processing failed")
            return Response({"detail": "RETRY_LATER"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response({"ok": True, "event": outcome.event, "action": outcome.action}, status=200)


class _OrderActionView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "order_actions"
    dto_class = SellerActionDTO

    def perform(self, engine, oid: str, dto) -> Order:
        raise NotImplementedError

    def post(self, request, oid):
        try:
            dto = self.dto_class.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)
        try:
            order = self.perform(get_engine(), str(oid), dto)
        except DomainError as e:
            return _domain_error(e)
        except UpstreamProviderError as e:
            return _upstream_error(e)
        return Response(order_out(order), status=200)


class CommitOrderView(_OrderActionView):
    def perform(self, engine, oid, dto):
        return engine.lifecycle.commit(oid, dto.seller_id)


class DeclineOrderView(_OrderActionView):
    def perform(self, engine, oid, dto):
        return engine.lifecycle.decline(oid, dto.seller_id, dto.reason)


class RefundOrderView(_OrderActionView):
    dto_class = RefundDTO

    def perform(self, engine, oid, dto):
        return engine.lifecycle.refund(oid, dto.reason)


class DeliveryQuoteView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "delivery"

    def post(self, request):
        try:
            dto = QuoteDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)
        engine = get_engine()
        profile = engine.lifecycle.directory.profile(dto.seller_id)
        if profile is None or not profile.pickup_address:
            return _error("SELLER_ADDRESS_MISSING", status.HTTP_400_BAD_REQUEST)
        try:
            quotes = engine.delivery.quote(
                profile.pickup_address, dto.shipping_address.model_dump(), PARCEL_WEIGHT_KG * dto.item_count
            )
        except UpstreamProviderError as e:
            return _upstream_error(e)
        return Response(
            {
                "quotes": [
                    {"courier": q.courier, "service": q.service, "price_cents": q.price_cents, "eta_days": q.eta_days}
                    for q in quotes
                ]
            },
            status=200,
        )


class DeliveryEventView(APIView):
    """Courier push endpoint for tracking events.

    The body must be signed with ``DELIVERY_WEBHOOK_SECRET``; anything else
    is a 401 and never reaches the lifecycle.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "delivery"

    def post(self, request):
        raw = request.body
        secret = getattr(settings, "DELIVERY_WEBHOOK_SECRET", "")
        signature = request.headers.get(getattr(settings, "DELIVERY_SIGNATURE_HEADER", "X-Courier-Signature"))
        if not secret or not signature or not signature_matches(secret, raw, signature):
            logger.warning("delivery event signature rejected")
            return Response({"detail": "INVALID_SIGNATURE"}, status=status.HTTP_401_UNAUTHORIZED)
        try:
            dto = TrackingEventDTO.model_validate_json(raw)
        except PydanticValidationError as e:
            return _invalid(e)
        event = TrackingEvent(**dto.model_dump())
        order = get_engine().lifecycle.apply_tracking_event(event)
        if order is None:
            return Response({"ok": True, "applied": False}, status=200)
        return Response({"ok": True, "applied": True, "order": order_out(order)}, status=200)
