from django.urls import path

from .views import (
    CheckoutView,
    CommitOrderView,
    DeclineOrderView,
    DeliveryEventView,
    DeliveryQuoteView,
    OrdersCollectionView,
    OrdersPingView,
    PaymentWebhookView,
    RefundOrderView,
    RetrieveOrderView,
    VerifyPaymentView,
)

app_name = "orders"

urlpatterns = [
    path("orders/ping/", OrdersPingView.as_view(), name="ping"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/commit/", CommitOrderView.as_view(), name="orders-commit"),
    path("orders/<uuid:oid>/decline/", DeclineOrderView.as_view(), name="orders-decline"),
    path("orders/<uuid:oid>/refund/", RefundOrderView.as_view(), name="orders-refund"),
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("payments/verify/", VerifyPaymentView.as_view(), name="payments-verify"),
    path("webhooks/payments/", PaymentWebhookView.as_view(), name="payments-webhook"),
    path("delivery/quotes/", DeliveryQuoteView.as_view(), name="delivery-quotes"),
    path("delivery/events/", DeliveryEventView.as_view(), name="delivery-events"),
]
