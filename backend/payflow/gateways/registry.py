"""
Gateway Registry

Builds every provider adapter once at startup and looks them up by payment
method (orchestrator) or by webhook provider name (reconciler).
"""
import logging
import ssl
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ..config import Settings
from ..models.transactions import PaymentMethod
from .apple_pay import ApplePayGateway
from .base import PaymentGateway
from .sandbox import ProviderSandbox
from .visa_direct import VisaDirectGateway
from .wise import WiseGateway

logger = logging.getLogger(__name__)

SANDBOX_PROCESSOR_URL = "https://processor.sandbox.payflow.local"


class GatewayRegistry:
    """Adapters keyed by ``PaymentMethod`` and by provider name."""

    def __init__(self, gateways: Iterable[PaymentGateway], sandbox: Optional[ProviderSandbox] = None):
        self._by_method: Dict[PaymentMethod, PaymentGateway] = {}
        self._by_name: Dict[str, PaymentGateway] = {}
        for gateway in gateways:
            self._by_method[gateway.method] = gateway
            self._by_name[gateway.name] = gateway
        self.sandbox = sandbox

    def for_method(self, method: PaymentMethod) -> Optional[PaymentGateway]:
        return self._by_method.get(method)

    def for_provider(self, name: str) -> Optional[PaymentGateway]:
        return self._by_name.get(name)

    @property
    def providers(self) -> List[str]:
        return sorted(self._by_name)

    async def aclose(self) -> None:
        for gateway in self._by_name.values():
            await gateway.aclose()


def _client_tls(cert_path: Optional[str], key_path: Optional[str]) -> Dict[str, Any]:
    """Mutual-TLS client identity for providers that require one."""
    if not cert_path:
        return {}
    context = ssl.create_default_context()
    context.load_cert_chain(cert_path, key_path)
    return {"verify": context}


def build_gateways(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> GatewayRegistry:
    """
    Construct the adapters for every configured provider.

    In demo mode (or when a transport is supplied) all three providers are
    built and wired to that transport, defaulting to a fresh
    ``ProviderSandbox``. Outside demo mode a provider without credentials is
    skipped with a warning, and its payment method is unavailable.

    Args:
        settings: Application settings
        transport: Optional httpx transport shared by every adapter

    Returns:
        GatewayRegistry
    """
    sandbox = None
    if settings.demo_mode and transport is None:
        sandbox = ProviderSandbox()
        transport = sandbox.transport()
    emulated = transport is not None
    timeout = settings.gateway_timeout_seconds
    gateways: List[PaymentGateway] = []

    if emulated or (settings.wise_api_key and settings.wise_profile_id):
        gateways.append(WiseGateway(
            api_url=settings.wise_api_url,
            api_key=settings.wise_api_key or "sandbox-key",
            profile_id=settings.wise_profile_id or "sandbox-profile",
            webhook_secret=settings.wise_webhook_secret,
            timeout=timeout,
            transport=transport,
        ))
    else:
        logger.warning("Wise credentials missing; bank_transfer payments disabled")

    if emulated or all([
        settings.visa_api_key, settings.visa_shared_secret,
        settings.visa_user_id, settings.visa_password,
    ]):
        gateways.append(VisaDirectGateway(
            api_url=settings.visa_api_url,
            api_key=settings.visa_api_key or "sandbox-key",
            shared_secret=settings.visa_shared_secret or "sandbox-secret",
            user_id=settings.visa_user_id or "sandbox-user",
            password=settings.visa_password or "sandbox-password",
            webhook_secret=settings.visa_webhook_secret,
            merchant_id=settings.visa_merchant_id,
            merchant_name=settings.visa_merchant_name,
            merchant_category_code=settings.visa_merchant_category_code,
            acquiring_bin=settings.visa_acquiring_bin,
            timeout=timeout,
            transport=transport,
            **({} if emulated else _client_tls(settings.visa_client_cert_path, settings.visa_client_key_path)),
        ))
    else:
        logger.warning("Visa Direct credentials missing; card_push payments disabled")

    if emulated or (settings.apple_pay_merchant_id and settings.apple_pay_processor_url):
        gateways.append(ApplePayGateway(
            processor_url=settings.apple_pay_processor_url or SANDBOX_PROCESSOR_URL,
            merchant_id=settings.apple_pay_merchant_id or "merchant.sandbox.payflow",
            webhook_secret=settings.apple_pay_webhook_secret,
            domain=settings.apple_pay_domain or "localhost",
            display_name=settings.apple_pay_display_name,
            timeout=timeout,
            transport=transport,
            **({} if emulated else _client_tls(
                settings.apple_pay_merchant_cert_path, settings.apple_pay_merchant_key_path
            )),
        ))
    else:
        logger.warning("Apple Pay merchant settings missing; wallet_token payments disabled")

    registry = GatewayRegistry(gateways, sandbox=sandbox)
    logger.info(
        f"Payment gateways ready: {', '.join(registry.providers) or 'none'}"
        f"{' (sandbox)' if emulated else ''}"
    )
    return registry
