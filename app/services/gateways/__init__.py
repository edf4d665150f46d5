"""Gateway registry keyed by PaymentMethod; tests swap adapters with set_gateway."""
from app.models import PaymentMethod
from app.services.gateways.bank_transfer import BankTransferGateway
from app.services.gateways.base import PaymentGateway, PaymentHandle, RawWebhook, WebhookEvent
from app.services.gateways.card import StripeCardGateway

_registry: dict[PaymentMethod, PaymentGateway] = {}


def _defaults() -> dict[PaymentMethod, PaymentGateway]:
    return {
        PaymentMethod.CARD: StripeCardGateway(),
        PaymentMethod.BANK_TRANSFER: BankTransferGateway(),
    }


def get_gateway(method: PaymentMethod | str) -> PaymentGateway:
    method = PaymentMethod(method)
    if not _registry:
        _registry.update(_defaults())
    return _registry[method]


def set_gateway(method: PaymentMethod | str, adapter: PaymentGateway) -> None:
    if not _registry:
        _registry.update(_defaults())
    _registry[PaymentMethod(method)] = adapter


def reset_gateways() -> None:
    _registry.clear()


__all__ = [
    "BankTransferGateway",
    "PaymentGateway",
    "PaymentHandle",
    "RawWebhook",
    "StripeCardGateway",
    "WebhookEvent",
    "get_gateway",
    "reset_gateways",
    "set_gateway",
]
