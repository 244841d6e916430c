from decimal import Decimal

from django.conf import settings
from django.db import transaction
from rest_framework import serializers

from . import discounts
from .fields import LenientListField
from .models import (
    ChatMessage, CustomRequest, Favorite, MarketSettings, Order, OrderItem,
    OrderStatus, PortfolioImage, PriceOption, Product, RequestStatus, User,
)
from .pricing import price_option_payload

LIMITS = settings.MARKETPLACE


def _is_admin(context):
    request = context.get('request')
    user = getattr(request, 'user', None)
    return bool(user and user.is_authenticated and user.is_admin)


class UserSerializer(serializers.ModelSerializer):
    birthday = serializers.DateField(format="%Y-%m-%d", input_formats=["%Y-%m-%d"], required=False, allow_null=True)
    password = serializers.CharField(write_only=True, required=False, min_length=6)

    class Meta:
        model = User
        fields = ['id', 'username', 'role', 'city', 'birthday', 'notes', 'avatar',
                  'initial_username', 'date_joined', 'password']
        read_only_fields = ['id', 'initial_username', 'date_joined']

    def validate_username(self, value):
        value = value.strip()
        if not 3 <= len(value) <= 50:
            raise serializers.ValidationError("Имя пользователя должно содержать от 3 до 50 символов")
        return value

    def validate_role(self, value):
        if not _is_admin(self.context):
            raise serializers.ValidationError("Роль может изменить только администратор")
        return value

    def update(self, instance, validated_data):
        password = validated_data.pop('password', None)
        instance = super().update(instance, validated_data)
        if password:
            instance.set_password(password)
            instance.save(update_fields=['password'])
        return instance


class UserShortSerializer(serializers.ModelSerializer):
    class Meta:
        model = User
        fields = ['id', 'username', 'role']


class UserRegistrationSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, min_length=6)
    role = serializers.CharField(required=False, allow_blank=True)

    class Meta:
        model = User
        fields = ('username', 'password', 'role')

    def validate_username(self, value):
        value = value.strip()
        if not 3 <= len(value) <= 50:
            raise serializers.ValidationError("Имя пользователя должно содержать от 3 до 50 символов")
        if User.objects.filter(username=value).exists():
            raise serializers.ValidationError("Пользователь с таким именем уже существует")
        return value

    @transaction.atomic
    def create(self, validated_data):
        requested = validated_data.pop('role', '')
        # первый зарегистрированный пользователь становится администратором
        if not User.objects.exists():
            role = User.Role.ADMIN
        elif requested in (User.Role.BUYER, User.Role.EXECUTOR):
            role = requested
        else:
            role = User.Role.BUYER
        user = User.objects.create_user(
            username=validated_data['username'],
            password=validated_data['password'],
            role=role,
            initial_username=validated_data['username'],
            is_staff=role == User.Role.ADMIN,
        )
        return user


class PriceOptionSerializer(serializers.ModelSerializer):
    price = serializers.IntegerField(min_value=1)

    class Meta:
        model = PriceOption
        fields = ['id', 'size', 'price', 'resin_ml']
        read_only_fields = ['id']


class ProductSerializer(serializers.ModelSerializer):
    price_options = PriceOptionSerializer(many=True)
    additional_images = LenientListField(child=serializers.CharField(), required=False,
                                         max_length=LIMITS['PRODUCT_ADDITIONAL_IMAGES_LIMIT'])
    is_favorite = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = ['id', 'name', 'related_name', 'description', 'original_height', 'original_width',
                  'original_length', 'parts_count', 'main_image', 'additional_images', 'price_options',
                  'is_visible', 'sales_count', 'favorites_count', 'is_favorite', 'created_at', 'updated_at']
        read_only_fields = ['id', 'sales_count', 'favorites_count', 'is_favorite', 'created_at', 'updated_at']
        extra_kwargs = {
            'name': {'required': True, 'max_length': 255},
            'parts_count': {'min_value': 1},
        }

    def get_is_favorite(self, obj):
        favorite_ids = self.context.get('favorite_ids')
        if favorite_ids is not None:
            return obj.pk in favorite_ids
        request = self.context.get('request')
        if request and request.user.is_authenticated:
            return Favorite.objects.filter(user=request.user, product=obj).exists()
        return False

    def validate_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Название товара обязательно")
        return value

    def validate_price_options(self, value):
        if not value:
            raise serializers.ValidationError("Должен быть хотя бы один вариант цены")
        return value

    def to_representation(self, instance):
        data = super().to_representation(instance)
        coefficient = self.context.get('coefficient')
        if coefficient is None:
            coefficient = MarketSettings.load().price_coefficient
        data['price_options'] = [
            price_option_payload(option, coefficient, _is_admin(self.context))
            for option in instance.price_options.all()
        ]
        return data

    @staticmethod
    def _save_options(product, options):
        product.price_options.all().delete()
        PriceOption.objects.bulk_create([
            PriceOption(product=product, position=position, **option)
            for position, option in enumerate(options)
        ])

    @transaction.atomic
    def create(self, validated_data):
        options = validated_data.pop('price_options')
        product = Product.objects.create(**validated_data)
        self._save_options(product, options)
        return product

    @transaction.atomic
    def update(self, instance, validated_data):
        options = validated_data.pop('price_options', None)
        instance = super().update(instance, validated_data)
        if options is not None:
            self._save_options(instance, options)
        return instance


class LineItemInputSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)
    option_id = serializers.IntegerField(required=False, min_value=1)
    size = serializers.CharField(required=False, allow_blank=True)


class CartSerializer(serializers.Serializer):
    line_items = LineItemInputSerializer(many=True, allow_empty=False)


class OrderCreateSerializer(CartSerializer):
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    # сумма с клиента только для сверки, сервер считает сам
    total_price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)

    def to_internal_value(self, data):
        # старые клиенты присылают позиции в поле products
        if hasattr(data, 'get') and 'line_items' not in data and 'products' in data:
            data = {**data, 'line_items': [
                {
                    'product_id': item.get('product_id', item.get('id')),
                    'quantity': item.get('quantity'),
                    'size': (item.get('selectedSize') or {}).get('size') or item.get('size', ''),
                }
                for item in data['products'] if isinstance(item, dict)
            ]}
        return super().to_internal_value(data)


class OrderItemSerializer(serializers.ModelSerializer):
    line_total = serializers.IntegerField(read_only=True)

    class Meta:
        model = OrderItem
        fields = ['id', 'product', 'name', 'size', 'base_price', 'price', 'quantity', 'line_total', 'resin_ml']

    def to_representation(self, instance):
        data = super().to_representation(instance)
        if not _is_admin(self.context):
            data.pop('base_price')
            data.pop('resin_ml')
        return data


class OrderSerializer(serializers.ModelSerializer):
    user = UserShortSerializer(read_only=True)
    items = OrderItemSerializer(many=True, read_only=True)
    assigned_executors = serializers.PrimaryKeyRelatedField(many=True, read_only=True)
    status_display = serializers.CharField(source='get_status_display', read_only=True)

    class Meta:
        model = Order
        fields = ['id', 'user', 'items', 'subtotal', 'discount_amount', 'total_price', 'status',
                  'status_display', 'notes', 'admin_notes', 'assigned_executors', 'version',
                  'created_at', 'updated_at']
        read_only_fields = fields


class OrderUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OrderStatus.choices, required=False)
    admin_notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    total_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0'), required=False)
    assigned_executors = serializers.ListField(child=serializers.IntegerField(min_value=1), required=False)
    version = serializers.IntegerField(required=False, min_value=1)

    def validate(self, data):
        if not set(data) - {'version'}:
            raise serializers.ValidationError("Нет данных для обновления")
        return data


class AssignExecutorsSerializer(serializers.Serializer):
    executor_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=True)
    version = serializers.IntegerField(required=False, min_value=1)


class StatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OrderStatus.choices)
    version = serializers.IntegerField(required=False, min_value=1)


def _bounded_list(value, limit, label):
    items = [str(item).strip() for item in value if str(item).strip()]
    if len(items) > limit:
        raise serializers.ValidationError(f"Максимум {limit} {label}")
    return items


class CustomRequestSerializer(serializers.ModelSerializer):
    user = UserShortSerializer(read_only=True)
    product_id = serializers.PrimaryKeyRelatedField(
        source='product', queryset=Product.objects.all(), required=False, allow_null=True
    )
    model_links = LenientListField(child=serializers.CharField(allow_blank=True), required=False)
    required_heights = LenientListField(child=serializers.CharField(allow_blank=True), required=False)
    images = LenientListField(child=serializers.CharField(allow_blank=True), required=False)
    status_display = serializers.CharField(source='get_status_display', read_only=True)

    class Meta:
        model = CustomRequest
        fields = ['id', 'user', 'product_id', 'product_name', 'additional_name', 'model_links',
                  'required_heights', 'images', 'status', 'status_display', 'admin_notes',
                  'created_at', 'updated_at']
        read_only_fields = ['id', 'user', 'status', 'status_display', 'admin_notes', 'created_at', 'updated_at']

    def validate_product_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Название товара обязательно")
        return value

    def validate_additional_name(self, value):
        return value.strip()

    def validate_model_links(self, value):
        return _bounded_list(value, LIMITS['CUSTOM_REQUEST_MAX_LINKS'], "ссылок на модели")

    def validate_required_heights(self, value):
        return _bounded_list(value, LIMITS['CUSTOM_REQUEST_MAX_HEIGHTS'], "вариантов высоты")

    def validate_images(self, value):
        return _bounded_list(value, LIMITS['CUSTOM_REQUEST_MAX_IMAGES'], "изображения")


class CustomRequestUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=RequestStatus.choices, required=False)
    admin_notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate(self, data):
        if not data:
            raise serializers.ValidationError("Нет данных для обновления")
        return data


class ChatMessageSerializer(serializers.ModelSerializer):
    from_user_id = serializers.IntegerField(source='sender_id', read_only=True)
    from_username = serializers.CharField(source='sender.username', read_only=True)
    to_user_id = serializers.PrimaryKeyRelatedField(source='recipient', queryset=User.objects.all())

    class Meta:
        model = ChatMessage
        fields = ['id', 'from_user_id', 'from_username', 'to_user_id', 'message', 'created_at']
        read_only_fields = ['id', 'created_at']

    def validate_message(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Сообщение не может быть пустым")
        return value


class BroadcastSerializer(serializers.Serializer):
    message = serializers.CharField(trim_whitespace=True)


class DiscountRuleSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    type = serializers.ChoiceField(choices=discounts.RULE_TYPES, source='discount_type')
    value = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0'))
    conditions = serializers.JSONField(required=False, default=list)

    def validate_name(self, value):
        value = value.strip()
        if not value:
            raise serializers.ValidationError("Название скидки обязательно")
        return value

    def validate_conditions(self, value):
        try:
            return discounts.parse_conditions(value)
        except ValueError as e:
            raise serializers.ValidationError(str(e))

    def validate(self, data):
        if data['discount_type'] == discounts.PERCENTAGE and data['value'] > 100:
            raise serializers.ValidationError("Процент скидки не может превышать 100")
        return {
            'name': data['name'],
            'type': data['discount_type'],
            'value': data['value'],
            'conditions': data.get('conditions', []),
        }

    def to_representation(self, instance):
        return {
            'id': instance.pk,
            'name': instance.name,
            'type': instance.discount_type,
            'value': str(instance.value),
            'conditions': [{'kind': c.kind, **(c.params or {})} for c in instance.conditions.all()],
        }


class MarketSettingsSerializer(serializers.ModelSerializer):
    discount_rules = DiscountRuleSerializer(many=True, required=False)
    price_coefficient = serializers.DecimalField(max_digits=8, decimal_places=4, min_value=Decimal('0.0001'), required=False)
    version = serializers.IntegerField(required=False, min_value=1)

    class Meta:
        model = MarketSettings
        fields = ['payment_info', 'price_coefficient', 'show_discount_on_products', 'discount_rules',
                  'version', 'updated_at']
        read_only_fields = ['updated_at']
        extra_kwargs = {'payment_info': {'required': False, 'allow_blank': True}}


class PortfolioImageSerializer(serializers.ModelSerializer):
    class Meta:
        model = PortfolioImage
        fields = ['id', 'user', 'image', 'created_at']
        read_only_fields = fields


class PortfolioUploadSerializer(serializers.Serializer):
    images = serializers.ListField(child=serializers.FileField(), allow_empty=False)
