from rest_framework.permissions import SAFE_METHODS, BasePermission


class IsAdmin(BasePermission):
    message = 'Доступ только для администратора'

    def has_permission(self, request, view):
        return request.user.is_authenticated and request.user.is_admin


class IsAdminOrReadOnly(BasePermission):
    message = 'Изменять данные может только администратор'

    def has_permission(self, request, view):
        if request.method in SAFE_METHODS:
            return True
        return request.user.is_authenticated and request.user.is_admin


class IsExecutor(BasePermission):
    message = 'Доступ только для исполнителей'

    def has_permission(self, request, view):
        return request.user.is_authenticated and request.user.is_executor


class IsOwnerOrAdmin(BasePermission):
    message = 'Недостаточно прав'

    def has_object_permission(self, request, view, obj):
        return request.user.is_admin or obj.user_id == request.user.pk
