from decimal import Decimal

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.validators import MinValueValidator
from django.db import models


class User(AbstractUser):
    class Role(models.TextChoices):
        BUYER = 'buyer', 'Покупатель'
        EXECUTOR = 'executor', 'Исполнитель'
        ADMIN = 'admin', 'Администратор'

    role = models.CharField(max_length=20, choices=Role.choices, default=Role.BUYER)
    city = models.CharField(max_length=100, blank=True, default='')
    birthday = models.DateField(null=True, blank=True)
    notes = models.TextField(blank=True, default='')
    avatar = models.CharField(max_length=500, blank=True, default='')
    initial_username = models.CharField(max_length=150, blank=True, default='')

    class Meta:
        ordering = ['-date_joined']

    def __str__(self):
        return self.username

    @property
    def is_admin(self):
        return self.role == self.Role.ADMIN

    @property
    def is_executor(self):
        return self.role == self.Role.EXECUTOR


# товар
class Product(models.Model):
    name = models.CharField(max_length=255)
    related_name = models.CharField(max_length=255, blank=True, default='')
    description = models.TextField(blank=True, default='')
    original_height = models.FloatField(null=True, blank=True)
    original_width = models.FloatField(null=True, blank=True)
    original_length = models.FloatField(null=True, blank=True)
    parts_count = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    main_image = models.CharField(max_length=500, blank=True, default='')
    additional_images = models.JSONField(default=list, blank=True)
    is_visible = models.BooleanField(default=True)
    sales_count = models.PositiveIntegerField(default=0)
    favorites_count = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return self.name


# вариант размера и цены товара
class PriceOption(models.Model):
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='price_options')
    position = models.PositiveIntegerField(default=0)
    size = models.CharField(max_length=100)
    # базовая цена, заведённая под эталонный коэффициент 5.25
    price = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    # расход смолы, виден только администратору
    resin_ml = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    class Meta:
        ordering = ['position', 'id']

    def __str__(self):
        return f'{self.product_id}: {self.size} ({self.price})'


class Favorite(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='favorites')
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='favorites')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['user', 'product'], name='unique_favorite')
        ]


class OrderStatus(models.TextChoices):
    CREATED = 'created', 'создан заказ'
    ACCEPTED = 'accepted', 'принят к исполнению'
    UNPAID = 'unpaid', 'не оплачено'
    PRINTING = 'printing', 'печатается'
    COLORING = 'coloring', 'красится'
    PACKAGING = 'packaging', 'упаковывается'
    DELAYED = 'delayed', 'задерживается'
    READY = 'ready', 'готово'
    CANCELLED = 'cancelled', 'отменен'


class Order(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='orders')
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0'))
    total_price = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=20, choices=OrderStatus.choices, default=OrderStatus.CREATED)
    notes = models.TextField(blank=True, default='')
    admin_notes = models.TextField(blank=True, default='')
    assigned_executors = models.ManyToManyField(User, blank=True, related_name='assigned_orders')
    # токен для обнаружения конкурирующих правок
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f'Order #{self.pk} ({self.status})'


# позиция заказа, снимок товара на момент оформления
class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name='items')
    product = models.ForeignKey(Product, on_delete=models.SET_NULL, null=True, blank=True, related_name='order_items')
    name = models.CharField(max_length=255)
    size = models.CharField(max_length=100, blank=True, default='')
    base_price = models.PositiveIntegerField()
    price = models.PositiveIntegerField()
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    resin_ml = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    class Meta:
        ordering = ['id']

    @property
    def line_total(self):
        return self.price * self.quantity


class RequestStatus(models.TextChoices):
    PENDING = 'pending', 'в обработке'
    WAITING = 'waiting', 'ожидает'
    FULFILLED = 'fulfilled', 'выполнен'
    REJECTED = 'rejected', 'отказано'


# заявка на замер
class CustomRequest(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='custom_requests')
    product = models.ForeignKey(Product, on_delete=models.SET_NULL, null=True, blank=True, related_name='custom_requests')
    product_name = models.CharField(max_length=255)
    additional_name = models.CharField(max_length=255, blank=True, default='')
    model_links = models.JSONField(default=list, blank=True)
    required_heights = models.JSONField(default=list, blank=True)
    images = models.JSONField(default=list, blank=True)
    status = models.CharField(max_length=20, choices=RequestStatus.choices, default=RequestStatus.PENDING)
    admin_notes = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']


class ChatMessage(models.Model):
    sender = models.ForeignKey(User, on_delete=models.CASCADE, related_name='sent_messages')
    recipient = models.ForeignKey(User, on_delete=models.CASCADE, related_name='received_messages')
    message = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']


class MarketSettings(models.Model):
    payment_info = models.TextField(blank=True, default='')
    price_coefficient = models.DecimalField(
        max_digits=8, decimal_places=4, default=Decimal('5.25'),
        validators=[MinValueValidator(Decimal('0.0001'))],
    )
    show_discount_on_products = models.BooleanField(default=False)
    version = models.PositiveIntegerField(default=1)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = 'market settings'

    @classmethod
    def load(cls):
        instance = cls.objects.order_by('pk').first()
        if instance is None:
            instance = cls.objects.create(
                payment_info=settings.MARKETPLACE['DEFAULT_PAYMENT_INFO'],
                price_coefficient=Decimal(settings.MARKETPLACE['REFERENCE_COEFFICIENT']),
            )
        return instance


class DiscountRule(models.Model):
    class Type(models.TextChoices):
        PERCENTAGE = 'percentage', 'Процент'
        FIXED = 'fixed', 'Фиксированная сумма'

    settings = models.ForeignKey(MarketSettings, on_delete=models.CASCADE, related_name='discount_rules')
    position = models.PositiveIntegerField(default=0)
    name = models.CharField(max_length=255)
    discount_type = models.CharField(max_length=20, choices=Type.choices, default=Type.PERCENTAGE)
    value = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(Decimal('0'))])

    class Meta:
        ordering = ['position', 'id']

    def __str__(self):
        return self.name


class DiscountCondition(models.Model):
    rule = models.ForeignKey(DiscountRule, on_delete=models.CASCADE, related_name='conditions')
    kind = models.CharField(max_length=40)
    params = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ['id']


def portfolio_upload_to(instance, filename):
    return f'portfolio/{instance.user_id}/{filename}'


class PortfolioImage(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='portfolio')
    image = models.FileField(upload_to=portfolio_upload_to)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
