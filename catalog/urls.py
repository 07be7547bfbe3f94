from django.urls import path
from . import views
app_name = "catalog"
urlpatterns = [
    path("cart", views.cart_view, name="cart"),
    path("cart/items", views.cart_add_view, name="cart_add"),
    path("cart/items/<int:book_id>", views.cart_item_view, name="cart_item"),
    path("cart/sync", views.cart_sync_view, name="cart_sync"),
]
