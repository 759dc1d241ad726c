from django.urls import path

from .views import (
    OrderDetailView,
    OrderMarkPaidView,
    OrdersCollectionView,
    OrdersPingView,
    OrderStatusView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<uuid:oid>/", OrderDetailView.as_view(), name="orders-detail"),
    path("<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
    path("<uuid:oid>/mark-paid/", OrderMarkPaidView.as_view(), name="orders-mark-paid"),
]
