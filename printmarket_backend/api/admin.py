from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import (
    ChatMessage, CustomRequest, DiscountCondition, DiscountRule, MarketSettings,
    Order, OrderItem, PortfolioImage, PriceOption, Product, User,
)


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ('id', 'username', 'role', 'city', 'date_joined')
    list_filter = ('role',)
    fieldsets = BaseUserAdmin.fieldsets + (
        ('Профиль', {'fields': ('role', 'city', 'birthday', 'notes', 'avatar', 'initial_username')}),
    )


class PriceOptionInline(admin.TabularInline):
    model = PriceOption
    extra = 0


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'is_visible', 'sales_count', 'favorites_count', 'created_at')
    list_filter = ('is_visible',)
    search_fields = ('name', 'description')
    readonly_fields = ('sales_count', 'favorites_count')
    inlines = [PriceOptionInline]


# Заказы меняются через API, здесь только просмотр
class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    can_delete = False
    readonly_fields = ('product', 'name', 'size', 'base_price', 'price', 'quantity', 'resin_ml')


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'status', 'total_price', 'created_at')
    list_filter = ('status',)
    search_fields = ('id', 'user__username')
    readonly_fields = ('subtotal', 'discount_amount', 'total_price', 'status', 'version', 'created_at', 'updated_at')
    inlines = [OrderItemInline]


@admin.register(CustomRequest)
class CustomRequestAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'product_name', 'status', 'created_at')
    list_filter = ('status',)
    search_fields = ('product_name', 'user__username')


class DiscountConditionInline(admin.TabularInline):
    model = DiscountCondition
    extra = 0


@admin.register(DiscountRule)
class DiscountRuleAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'discount_type', 'value', 'position')
    inlines = [DiscountConditionInline]


admin.site.register(MarketSettings)
admin.site.register(ChatMessage)
admin.site.register(PortfolioImage)
