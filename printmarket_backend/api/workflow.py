from .models import OrderStatus, RequestStatus

# допустимые переходы статусов заказа
ORDER_TRANSITIONS = {
    OrderStatus.CREATED: (OrderStatus.ACCEPTED, OrderStatus.UNPAID, OrderStatus.CANCELLED),
    OrderStatus.UNPAID: (OrderStatus.ACCEPTED, OrderStatus.CANCELLED),
    OrderStatus.ACCEPTED: (OrderStatus.PRINTING, OrderStatus.DELAYED, OrderStatus.CANCELLED),
    OrderStatus.PRINTING: (OrderStatus.COLORING, OrderStatus.DELAYED, OrderStatus.CANCELLED),
    OrderStatus.COLORING: (OrderStatus.PACKAGING, OrderStatus.DELAYED, OrderStatus.CANCELLED),
    OrderStatus.PACKAGING: (OrderStatus.READY, OrderStatus.DELAYED, OrderStatus.CANCELLED),
    OrderStatus.DELAYED: (
        OrderStatus.PRINTING, OrderStatus.COLORING, OrderStatus.PACKAGING, OrderStatus.CANCELLED,
    ),
    OrderStatus.READY: (),
    OrderStatus.CANCELLED: (),
}

REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: (RequestStatus.WAITING, RequestStatus.FULFILLED, RequestStatus.REJECTED),
    RequestStatus.WAITING: (),
    RequestStatus.FULFILLED: (),
    RequestStatus.REJECTED: (),
}


def can_transition(table, current, target):
    """Повтор текущего статуса разрешён и ничего не меняет."""
    if current == target:
        return True
    return target in table.get(current, ())


def is_terminal(table, status):
    return not table.get(status, ())


def transitions_payload(table, choices):
    labels = dict(choices)
    return [
        {
            'value': status,
            'label': labels[status],
            'allowed': [str(target) for target in table[status]],
            'terminal': is_terminal(table, status),
        }
        for status in table
    ]
