import logging

from django.conf import settings
from django.db import transaction
from django.shortcuts import get_object_or_404
from rest_framework import mixins, status, viewsets
from rest_framework.authtoken.models import Token
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from . import discounts, services
from .exceptions import Forbidden, NotFound, ValidationError
from .models import (
    ChatMessage, Favorite, MarketSettings, OrderStatus, PortfolioImage, Product,
    RequestStatus, User,
)
from .permissions import IsAdmin, IsAdminOrReadOnly, IsExecutor, IsOwnerOrAdmin
from .serializers import (
    AssignExecutorsSerializer, BroadcastSerializer, CartSerializer, ChatMessageSerializer,
    CustomRequestSerializer, CustomRequestUpdateSerializer, MarketSettingsSerializer,
    OrderCreateSerializer, OrderSerializer, OrderUpdateSerializer, PortfolioImageSerializer,
    PortfolioUploadSerializer, ProductSerializer, StatusUpdateSerializer, UserRegistrationSerializer,
    UserSerializer, UserShortSerializer,
)
from .workflow import ORDER_TRANSITIONS, REQUEST_TRANSITIONS, transitions_payload

logger = logging.getLogger(__name__)


class HealthCheckView(APIView):
    permission_classes = [AllowAny]

    def get(self, request):
        return Response({"status": "healthy"}, status=status.HTTP_200_OK)


class UserViewSet(mixins.ListModelMixin,
                  mixins.RetrieveModelMixin,
                  mixins.UpdateModelMixin,
                  mixins.DestroyModelMixin,
                  viewsets.GenericViewSet):
    queryset = User.objects.all()
    serializer_class = UserSerializer
    permission_classes = [IsAuthenticated]

    def get_permissions(self):
        if self.action in ['register', 'login']:
            return [AllowAny()]
        if self.action in ['list', 'destroy', 'executors']:
            return [IsAuthenticated(), IsAdmin()]
        return [IsAuthenticated()]

    def get_serializer_class(self):
        if self.action == 'register':
            return UserRegistrationSerializer
        return UserSerializer

    def get_queryset(self):
        queryset = User.objects.order_by('-date_joined', '-id')
        if self.action != 'list':
            return queryset
        search = self.request.query_params.get('search', '').strip()
        role = self.request.query_params.get('role')
        if search:
            if search.isdigit():
                queryset = queryset.filter(pk=int(search)) | queryset.filter(username__icontains=search)
            else:
                queryset = queryset.filter(username__icontains=search)
        if role:
            queryset = queryset.filter(role=role)
        return queryset

    @action(detail=False, methods=['get'])
    def me(self, request):
        serializer = self.get_serializer(request.user)
        return Response(serializer.data)

    @action(detail=False, methods=['get'])
    def executors(self, request):
        executors = User.objects.filter(role=User.Role.EXECUTOR).order_by('username')
        return Response(UserShortSerializer(executors, many=True).data)

    @action(detail=False, methods=['post'])
    def register(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user = serializer.save()
        token = Token.objects.create(user=user)
        logger.info('User registered: id %s, username %s, role %s', user.pk, user.username, user.role)

        message = 'Пользователь успешно зарегистрирован'
        if user.is_admin:
            message += ' как администратор'
        return Response({
            'user': UserSerializer(user, context=self.get_serializer_context()).data,
            'token': token.key,
            'message': message,
        }, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=['post'])
    def login(self, request):
        username = (request.data.get('username') or '').strip()
        password = request.data.get('password')

        if not username or not password:
            return Response(
                {'error': 'Имя пользователя и пароль обязательны'},
                status=status.HTTP_400_BAD_REQUEST
            )

        try:
            user = User.objects.get(username=username)
        except User.DoesNotExist:
            return Response(
                {'error': 'Пользователь не найден'},
                status=status.HTTP_404_NOT_FOUND
            )

        if not user.check_password(password):
            logger.warning('Failed login for %s', username)
            return Response(
                {'error': 'Неверный пароль'},
                status=status.HTTP_401_UNAUTHORIZED
            )

        token, _ = Token.objects.get_or_create(user=user)
        logger.info('User logged in: %s (id %s)', user.username, user.pk)
        return Response({
            'message': 'Вход выполнен успешно',
            'user': UserSerializer(user, context=self.get_serializer_context()).data,
            'token': token.key
        })

    def update(self, request, *args, **kwargs):
        instance = self.get_object()
        if instance.pk != request.user.pk and not request.user.is_admin:
            raise Forbidden('Можно редактировать только свой профиль')
        kwargs['partial'] = True
        response = super().update(request, *args, **kwargs)
        logger.info('User %s updated by %s', instance.pk, request.user.pk)
        return response

    def destroy(self, request, *args, **kwargs):
        instance = self.get_object()
        if instance.is_admin:
            raise Forbidden('Невозможно удалить администратора')
        instance.delete()
        logger.info('User %s deleted by %s', instance.pk, request.user.pk)
        return Response({'message': 'Пользователь успешно удален'}, status=status.HTTP_200_OK)


class CatalogContextMixin:
    """Коэффициент и избранное считаются один раз на запрос."""

    def get_serializer_context(self):
        context = super().get_serializer_context()
        context['coefficient'] = MarketSettings.load().price_coefficient
        user = self.request.user
        if user.is_authenticated:
            context['favorite_ids'] = set(
                Favorite.objects.filter(user=user).values_list('product_id', flat=True)
            )
        else:
            context['favorite_ids'] = set()
        return context


class ProductViewSet(CatalogContextMixin, viewsets.ModelViewSet):
    serializer_class = ProductSerializer
    permission_classes = [IsAdminOrReadOnly]

    def get_permissions(self):
        if self.action == 'toggle_favorite':
            return [IsAuthenticated()]
        return [IsAdminOrReadOnly()]

    def get_queryset(self):
        queryset = Product.objects.prefetch_related('price_options')
        user = self.request.user
        if not (user.is_authenticated and user.is_admin):
            queryset = queryset.filter(is_visible=True)

        search = self.request.query_params.get('search', '').strip()
        if search and self.action == 'list':
            search_filter = self.request.query_params.get('filter', 'name')
            if search_filter == 'description':
                queryset = queryset.filter(description__icontains=search)
            elif search_filter == 'id':
                queryset = queryset.filter(pk=int(search)) if search.isdigit() else queryset.none()
            else:
                queryset = queryset.filter(name__icontains=search)
        return queryset.order_by('-created_at', '-id')

    def list(self, request, *args, **kwargs):
        response = super().list(request, *args, **kwargs)
        market_settings = MarketSettings.load()
        if market_settings.show_discount_on_products and request.user.is_authenticated:
            ctx = services.build_user_context(request.user)
            rules = discounts.applicable_rules(services.load_rules(market_settings), ctx)
            response.data = {
                'products': response.data,
                'discounts': [{'name': r.name, 'type': r.type, 'value': str(r.value)} for r in rules],
            }
        return response

    def perform_create(self, serializer):
        product = serializer.save()
        logger.info('Product created: id %s, name %s', product.pk, product.name)

    def perform_update(self, serializer):
        product = serializer.save()
        logger.info('Product updated: id %s', product.pk)

    def destroy(self, request, *args, **kwargs):
        product = self.get_object()
        product_id = product.pk
        product.delete()
        logger.info('Product deleted: id %s', product_id)
        return Response({
            'success': True,
            'message': 'Товар успешно удален'
        }, status=status.HTTP_200_OK)

    @action(detail=True, methods=['post'])
    def toggle_favorite(self, request, pk=None):
        product = self.get_object()
        is_favorite = services.toggle_favorite(request.user, product)
        product.refresh_from_db(fields=['favorites_count'])
        return Response({
            'is_favorite': is_favorite,
            'favorites_count': product.favorites_count,
            'message': 'Товар добавлен в избранное' if is_favorite else 'Товар удален из избранного',
        })


class FavoriteViewSet(CatalogContextMixin, mixins.ListModelMixin, viewsets.GenericViewSet):
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        return (Product.objects.filter(favorites__user=self.request.user)
                .prefetch_related('price_options')
                .order_by('-favorites__created_at'))


class OrderViewSet(mixins.ListModelMixin,
                   mixins.RetrieveModelMixin,
                   mixins.CreateModelMixin,
                   mixins.UpdateModelMixin,
                   viewsets.GenericViewSet):
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated]

    def get_workflow(self):
        return services.OrderWorkflow(self.request.user)

    def get_queryset(self):
        params = self.request.query_params
        return self.get_workflow().list_orders(
            scope=params.get('scope'),
            status=params.get('status'),
            search=params.get('search'),
            user_id=params.get('user_id'),
        )

    def get_object(self):
        return self.get_workflow().get_order(self.kwargs['pk'])

    def create(self, request, *args, **kwargs):
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = self.get_workflow().create_order(
            serializer.validated_data['line_items'],
            notes=serializer.validated_data.get('notes', ''),
            client_total=serializer.validated_data.get('total_price'),
        )
        order = self.get_workflow().get_order(order.pk)
        return Response(self.get_serializer(order).data, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=['post'])
    def create_from_cart(self, request):
        return self.create(request)

    def update(self, request, *args, **kwargs):
        serializer = OrderUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = self.get_workflow().update_order(kwargs['pk'], serializer.validated_data)
        return Response(self.get_serializer(self.get_workflow().get_order(order.pk)).data)

    @action(detail=True, methods=['post'])
    def update_status(self, request, pk=None):
        serializer = StatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = self.get_workflow().set_status(
            pk, serializer.validated_data['status'], serializer.validated_data.get('version')
        )
        return Response({
            'message': 'Статус заказа успешно обновлен',
            'order': self.get_serializer(self.get_workflow().get_order(order.pk)).data
        }, status=status.HTTP_200_OK)

    @action(detail=True, methods=['post'])
    def assign_executors(self, request, pk=None):
        serializer = AssignExecutorsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = self.get_workflow().assign_executors(
            pk, serializer.validated_data['executor_ids'], serializer.validated_data.get('version')
        )
        return Response({
            'message': 'Исполнители назначены',
            'order': self.get_serializer(self.get_workflow().get_order(order.pk)).data
        }, status=status.HTTP_200_OK)

    @action(detail=False, methods=['post'])
    def quote(self, request):
        serializer = CartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        quote = services.quote_cart(request.user, serializer.validated_data['line_items'])
        subtotal = quote['subtotal']
        return Response({
            'items': [
                {
                    'product_id': item['product'].pk,
                    'name': item['name'],
                    'size': item['size'],
                    'price': item['price'],
                    'quantity': item['quantity'],
                    'line_total': item['line_total'],
                }
                for item in quote['items']
            ],
            'subtotal': str(subtotal),
            'discounts': [
                {'name': rule.name, 'type': rule.type, 'value': str(rule.value)}
                for rule in quote['discounts']
            ],
            'discount_amount': str(quote['discount_amount']),
            'total_price': str(subtotal - quote['discount_amount']),
        })

    @action(detail=False, methods=['get'])
    def statuses(self, request):
        return Response(transitions_payload(ORDER_TRANSITIONS, OrderStatus.choices))


class CustomRequestViewSet(mixins.ListModelMixin,
                           mixins.RetrieveModelMixin,
                           mixins.CreateModelMixin,
                           mixins.UpdateModelMixin,
                           viewsets.GenericViewSet):
    serializer_class = CustomRequestSerializer
    permission_classes = [IsAuthenticated]

    def get_workflow(self):
        return services.CustomRequestWorkflow(self.request.user)

    def get_queryset(self):
        return self.get_workflow().list_requests(status=self.request.query_params.get('status'))

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        custom_request = self.get_workflow().create_request(serializer.validated_data)
        return Response(self.get_serializer(custom_request).data, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        serializer = CustomRequestUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        custom_request = self.get_workflow().update_request(kwargs['pk'], serializer.validated_data)
        return Response(self.get_serializer(custom_request).data)

    @action(detail=False, methods=['get'])
    def statuses(self, request):
        return Response(transitions_payload(REQUEST_TRANSITIONS, RequestStatus.choices))


class ChatViewSet(viewsets.GenericViewSet):
    serializer_class = ChatMessageSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        user = self.request.user
        return (ChatMessage.objects.filter(sender=user) | ChatMessage.objects.filter(recipient=user)) \
            .select_related('sender').order_by('-created_at', '-id')

    def list(self, request):
        serializer = self.get_serializer(self.get_queryset(), many=True)
        return Response(serializer.data)

    def create(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        message = serializer.save(sender=request.user)
        logger.info('Chat message %s from %s to %s', message.pk, request.user.pk, message.recipient_id)
        return Response({'data': serializer.data}, status=status.HTTP_201_CREATED)

    @action(detail=False, methods=['get'])
    def messages(self, request):
        with_user_id = request.query_params.get('with_user_id', '')
        if not with_user_id.isdigit():
            raise ValidationError('Не указан собеседник')
        try:
            limit = int(request.query_params.get('limit', settings.MARKETPLACE['CHAT_HISTORY_LIMIT']))
        except ValueError:
            raise ValidationError('Некорректный limit')
        if limit < 1:
            raise ValidationError('Некорректный limit')

        user = request.user
        other = int(with_user_id)
        latest = list(
            (ChatMessage.objects.filter(sender=user, recipient_id=other)
             | ChatMessage.objects.filter(sender_id=other, recipient=user))
            .select_related('sender').order_by('-created_at', '-id')[:limit]
        )
        # последние сообщения, но в хронологическом порядке
        latest.reverse()
        return Response(self.get_serializer(latest, many=True).data)

    @action(detail=False, methods=['post'], permission_classes=[IsAuthenticated, IsAdmin])
    def broadcast(self, request):
        serializer = BroadcastSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        recipients = list(User.objects.exclude(pk=request.user.pk))
        if not recipients:
            raise NotFound('Нет пользователей для рассылки')

        with transaction.atomic():
            ChatMessage.objects.bulk_create([
                ChatMessage(sender=request.user, recipient=recipient,
                            message=serializer.validated_data['message'])
                for recipient in recipients
            ])
        logger.info('Broadcast from %s to %s users', request.user.pk, len(recipients))
        return Response({
            'message': 'Рассылка отправлена успешно',
            'count': len(recipients),
            'recipients': len(recipients),
        }, status=status.HTTP_201_CREATED)


class NotificationView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        return Response(services.notification_summary(request.user))


class MarketSettingsView(APIView):

    def get_permissions(self):
        if self.request.method == 'GET':
            return [AllowAny()]
        return [IsAuthenticated(), IsAdmin()]

    def get(self, request):
        market_settings = MarketSettings.load()
        return Response(MarketSettingsSerializer(market_settings).data)

    def put(self, request):
        serializer = MarketSettingsSerializer(MarketSettings.load(), data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        version = data.pop('version', None)
        market_settings = services.update_market_settings(data, version)
        return Response({
            'message': 'Настройки обновлены',
            'settings': MarketSettingsSerializer(market_settings).data,
        })

    def patch(self, request):
        return self.put(request)


class PortfolioViewSet(mixins.ListModelMixin,
                       mixins.DestroyModelMixin,
                       viewsets.GenericViewSet):
    serializer_class = PortfolioImageSerializer
    permission_classes = [IsAuthenticated]

    def get_permissions(self):
        if self.action == 'create':
            return [IsAuthenticated(), IsExecutor()]
        if self.action == 'destroy':
            return [IsAuthenticated(), IsOwnerOrAdmin()]
        return [IsAuthenticated()]

    def get_queryset(self):
        if self.action != 'list':
            return PortfolioImage.objects.all()
        user_id = self.request.query_params.get('user_id', str(self.request.user.pk))
        if not user_id.isdigit():
            raise ValidationError('Некорректный ID пользователя')
        owner = get_object_or_404(User, pk=int(user_id))
        if not owner.is_executor:
            raise Forbidden('Портфолио доступно только для исполнителей')
        return PortfolioImage.objects.filter(user=owner).order_by('-created_at', '-id')

    def create(self, request):
        serializer = PortfolioUploadSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        files = serializer.validated_data['images']
        limit = settings.MARKETPLACE['PORTFOLIO_LIMIT']

        with transaction.atomic():
            # блокируем владельца, чтобы параллельные загрузки не обошли лимит
            User.objects.select_for_update().get(pk=request.user.pk)
            if PortfolioImage.objects.filter(user=request.user).count() + len(files) > limit:
                raise ValidationError(f'Максимум {limit} изображений в портфолио')
            images = [PortfolioImage.objects.create(user=request.user, image=f) for f in files]

        logger.info('Portfolio upload: user %s, %s images', request.user.pk, len(images))
        return Response({
            'success': True,
            'message': 'Изображения успешно загружены',
            'uploaded': len(images),
            'images': self.get_serializer(images, many=True).data,
        }, status=status.HTTP_201_CREATED)

    def destroy(self, request, *args, **kwargs):
        image = self.get_object()
        image_id = image.pk
        name = image.image.name
        storage = image.image.storage
        image.delete()
        if name and storage.exists(name):
            storage.delete(name)
        else:
            logger.warning('Portfolio file missing on delete: %s', name)
        logger.info('Portfolio image %s deleted by %s', image_id, request.user.pk)
        return Response({
            'success': True,
            'message': 'Изображение успешно удалено'
        }, status=status.HTTP_200_OK)
