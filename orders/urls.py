from django.urls import path
from . import views
app_name = "orders"
urlpatterns = [
    path("", views.order_list_view, name="list"),
    path("totals", views.totals_view, name="totals"),
    path("checkout", views.checkout_view, name="checkout"),
    path("<str:order_code>", views.order_detail_view, name="detail"),
    path("<str:order_code>/cancel", views.cancel_view, name="cancel"),
    path("<str:order_code>/reorder", views.reorder_view, name="reorder"),
    path("<str:order_code>/advance", views.advance_view, name="advance"),  # staff only
]
