class DomainException(Exception):
    pass


class PaymentServiceError(DomainException):
    pass


class ItemNotFoundError(DomainException):
    pass


class InsufficientStockError(DomainException):
    def __init__(self, product_id: str, required: int):
        self.product_id = product_id
        self.required = required
        super().__init__(f"Недостаточно товара {product_id}, требуется: {required}")


class OrderNotFoundError(DomainException):
    pass


class InvalidCartError(DomainException):
    pass


class DiscountIntegrityError(DomainException):
    def __init__(self, total_discount, items_discount):
        self.total_discount = total_discount
        self.items_discount = items_discount
        super().__init__(
            f"Сумма скидок по позициям {items_discount} не совпадает с общей скидкой {total_discount}"
        )


class InvalidStatusTransitionError(DomainException):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(f"Переход статуса {current.value} -> {requested.value} недопустим")


class InvalidSignatureError(DomainException):
    pass


class MalformedWebhookError(DomainException):
    pass


class WebhookNotConfiguredError(DomainException):
    pass
