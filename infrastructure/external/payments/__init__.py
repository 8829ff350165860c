"""
Registry of payment gateway clients.

A gateway is addressable by its short name (``payu``), its session provider
id (``pp_payu_payu``) or the webhook route pair (``pp_payu`` + ``payu``).
Instances are created lazily, one per process.
"""
from __future__ import annotations

from typing import Optional

from core.settings import payment_settings
from application.ports.payment_gateway import PaymentGateway
from domain.payment.entity import provider_id_for


_gateways: dict[str, PaymentGateway] = {}


def resolve_provider_name(provider: str, subprovider: Optional[str] = None) -> str:
    """Normalize ``payu`` / ``pp_payu_payu`` / (``pp_payu``, ``payu``) to ``payu``."""
    name = (subprovider or provider or "").strip().lower()
    if name.startswith("pp_"):
        name = name[3:].split("_", 1)[0]
    if name not in payment_settings.providers:
        raise ValueError(f"Unsupported payment provider: {provider}")
    return name


def _build(name: str) -> PaymentGateway:
    if name == "payu":
        from .payu_client import PayUClient
        return PayUClient(payment_settings.payu, timeouts=payment_settings.timeouts)
    if name == "mercadopago":
        from .mercadopago_client import MercadoPagoClient
        return MercadoPagoClient(
            payment_settings.mercadopago,
            timeouts=payment_settings.timeouts,
            webhook_tolerance_seconds=payment_settings.webhook.tolerance_seconds,
        )
    raise ValueError(f"Unsupported payment provider: {name}")


def get_payment_gateway(provider: str, subprovider: Optional[str] = None) -> PaymentGateway:
    name = resolve_provider_name(provider, subprovider)
    gateway = _gateways.get(name)
    if gateway is None:
        gateway = _build(name)
        _gateways[name] = gateway
    return gateway


def register_payment_gateway(name: str, gateway: PaymentGateway) -> None:
    """Install a pre-built gateway (used by tests and custom wiring)."""
    _gateways[name] = gateway


def list_payment_providers() -> list[dict[str, str]]:
    return [{"id": provider_id_for(name), "name": name} for name in payment_settings.providers]


async def close_payment_gateways() -> None:
    gateways = list(_gateways.values())
    _gateways.clear()
    for gateway in gateways:
        await gateway.aclose()
