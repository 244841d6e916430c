from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import (
    UserViewSet, ProductViewSet, FavoriteViewSet, OrderViewSet, CustomRequestViewSet,
    ChatViewSet, PortfolioViewSet, HealthCheckView, MarketSettingsView, NotificationView,
)

router = DefaultRouter()

router.register(r'users', UserViewSet, basename='users')
router.register(r'products', ProductViewSet, basename='products')
router.register(r'favorites', FavoriteViewSet, basename='favorites')
router.register(r'orders', OrderViewSet, basename='orders')
router.register(r'custom-requests', CustomRequestViewSet, basename='custom-requests')
router.register(r'chat', ChatViewSet, basename='chat')
router.register(r'portfolio', PortfolioViewSet, basename='portfolio')

urlpatterns = [
    path('', include(router.urls)),
    path('health/', HealthCheckView.as_view(), name='health-check'),
    path('settings/', MarketSettingsView.as_view(), name='settings'),
    path('notifications/', NotificationView.as_view(), name='notifications'),
]
