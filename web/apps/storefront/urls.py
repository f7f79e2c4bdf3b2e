from django.urls import path

from .views import (
    CartLinesView,
    CartView,
    CheckoutRetryView,
    CheckoutView,
    CurrencyView,
    PingView,
    PriceFormatView,
    ProductsView,
    RatesView,
)

app_name = "storefront"

urlpatterns = [
    path("ping/", PingView.as_view(), name="ping"),
    path("cart/", CartView.as_view(), name="cart"),  # GET totals / DELETE clear
    path("cart/lines/", CartLinesView.as_view(), name="cart-lines"),
    path("products/", ProductsView.as_view(), name="products"),
    path("prices/format", PriceFormatView.as_view(), name="price-format"),
    path("currency/", CurrencyView.as_view(), name="currency"),
    path("rates", RatesView.as_view(), name="rates"),
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("checkout/<str:attempt_id>/retry/", CheckoutRetryView.as_view(), name="checkout-retry"),
]
