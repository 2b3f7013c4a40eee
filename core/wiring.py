"""
Construct the billing services and wire event handlers onto the bus.

Everything is built explicitly with its collaborators; nothing is a module
level singleton except the Vault secret cache.
"""

import logging
from dataclasses import dataclass

from clients.email_client import EmailGatewayClient
from clients.payment_gateways import GatewayRegistry, PayPalGateway, StripeGateway
from clients.postgres_client import PostgresClient
from clients.vault_client import (
    get_database_url, get_email_config, get_paypal_config, get_stripe_config,
)
from core.audit import AuditLogger
from core.config import BillingConfig
from core.event_bus import EventBus
from core.handlers.invoice_payment_handler import handle_invoice_paid
from core.handlers.invoice_sent_handler import handle_invoice_sent
from core.handlers.payment_handlers import handle_payment_completed, handle_payment_refunded
from core.handlers.stripe_webhook_handler import StripeWebhookHandler
from core.notifications import BillingMailer
from core.services.billing_scheduler import BillingScheduler
from core.services.booking_service import BookingService
from core.services.campaign_service import CampaignService
from core.services.client_service import ClientService
from core.services.invoice_service import InvoiceService
from core.services.payment_service import PaymentService
from core.services.reconciliation_service import PaymentReconciler
from core.services.refund_service import RefundService
from core.services.studio_service import StudioService

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    """Every billing entry point, ready to call inside a tenant context."""

    event_bus: EventBus
    studios: StudioService
    clients: ClientService
    bookings: BookingService
    invoices: InvoiceService
    reconciler: PaymentReconciler
    payments: PaymentService
    refunds: RefundService
    scheduler: BillingScheduler
    campaigns: CampaignService
    mailer: BillingMailer
    stripe_webhooks: StripeWebhookHandler | None = None


def build_gateway_registry(config: BillingConfig) -> GatewayRegistry:
    """Stripe and PayPal clients from Vault credentials."""
    registry = GatewayRegistry()

    stripe_config = get_stripe_config()
    registry.register(StripeGateway(
        secret_key=stripe_config["secret_key"],
        webhook_secret=stripe_config["webhook_secret"],
    ))

    paypal_config = get_paypal_config()
    registry.register(PayPalGateway(
        client_id=paypal_config["client_id"],
        client_secret=paypal_config["client_secret"],
        return_url=f"{config.app_base_url}/payments/success",
        cancel_url=f"{config.app_base_url}/payments/cancel",
        mode=config.paypal_mode,
        timeout=config.gateway_timeout_seconds,
    ))

    return registry


def build_billing(
    postgres: PostgresClient,
    email_client: EmailGatewayClient,
    gateways: GatewayRegistry,
    config: BillingConfig | None = None,
) -> BillingServices:
    """
    Build all billing services around shared infrastructure clients.

    Handlers are subscribed here, so events published by one service reach
    the mailer without the service knowing about it.
    """
    config = config or BillingConfig()
    event_bus = EventBus()
    audit = AuditLogger(postgres)

    studios = StudioService(postgres)
    clients = ClientService(postgres)
    bookings = BookingService(postgres)
    mailer = BillingMailer(email_client, clients, studios, config)

    invoices = InvoiceService(postgres, audit, event_bus, studios, clients, bookings, config)
    reconciler = PaymentReconciler(postgres, audit, event_bus, bookings)
    payments = PaymentService(postgres, audit, event_bus, gateways, studios, clients, reconciler)
    refunds = RefundService(postgres, audit, event_bus, gateways, reconciler, clients)
    scheduler = BillingScheduler(invoices, bookings, studios, mailer, config)
    campaigns = CampaignService(postgres, audit, email_client, clients, studios, config)

    event_bus.subscribe("InvoiceSent", handle_invoice_sent(mailer))
    event_bus.subscribe("InvoicePaid", handle_invoice_paid(mailer))
    event_bus.subscribe("PaymentCompleted", handle_payment_completed(mailer))
    event_bus.subscribe("PaymentRefunded", handle_payment_refunded(mailer))

    stripe_gateway = gateways.get("stripe")
    stripe_webhooks = None
    if isinstance(stripe_gateway, StripeGateway):
        stripe_webhooks = StripeWebhookHandler(stripe_gateway, payments)

    logger.info(f"Billing services built (gateways: {', '.join(gateways.names()) or 'none'})")

    return BillingServices(
        event_bus=event_bus,
        studios=studios,
        clients=clients,
        bookings=bookings,
        invoices=invoices,
        reconciler=reconciler,
        payments=payments,
        refunds=refunds,
        scheduler=scheduler,
        campaigns=campaigns,
        mailer=mailer,
        stripe_webhooks=stripe_webhooks,
    )


def build_billing_from_vault(config: BillingConfig | None = None) -> BillingServices:
    """Production entry point: all credentials come from Vault."""
    config = config or BillingConfig()
    email_config = get_email_config()

    return build_billing(
        postgres=PostgresClient(get_database_url()),
        email_client=EmailGatewayClient(
            gateway_url=email_config["gateway_url"],
            api_key=email_config["api_key"],
            hmac_secret=email_config["hmac_secret"],
        ),
        gateways=build_gateway_registry(config),
        config=config,
    )
